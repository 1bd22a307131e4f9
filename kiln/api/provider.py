"""Model collaborator -- the opaque completion service the loop talks to.

ModelClient is the interface the agent loop and the compressor depend
on. AnthropicClient implements it with direct httpx calls to the
Anthropic Messages API. Retries are not done here: the client only
classifies failures into ProviderError kinds and the loop decides.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from kiln.api.models import (
    ModelMessage,
    SystemSummary,
    ToolCall,
    ToolResult,
    Turn,
    UserMessage,
    outcome_text,
)
from kiln.api.registry import ToolSpec
from kiln.config import Settings
from kiln.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

SUMMARY_LABEL = "[Summary of earlier conversation -- synthetic and lossy]"


class ModelClient(Protocol):
    """Request/response completion over a turn sequence."""

    async def complete(
        self,
        turns: Sequence[Turn],
        tools: Sequence[ToolSpec],
        *,
        instructions: str | None = None,
        model: str | None = None,
    ) -> ModelMessage: ...


# ---------------------------------------------------------------------------
# Turn <-> Messages API mapping
# ---------------------------------------------------------------------------


def turns_to_messages(turns: Sequence[Turn]) -> list[dict[str, Any]]:
    """Map turns onto alternating user/assistant messages.

    Consecutive same-role turns are merged into one message. A tool
    result whose tool_use was summarized away is sent as plain text,
    since the API rejects tool_result blocks without a matching call.
    """
    messages: list[dict[str, Any]] = []
    known_calls: set[str] = set()

    def _append(role: str, blocks: list[dict[str, Any]]) -> None:
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": list(blocks)})

    for turn in turns:
        if isinstance(turn, UserMessage):
            _append("user", [{"type": "text", "text": turn.text}])
        elif isinstance(turn, SystemSummary):
            _append("user", [{"type": "text", "text": f"{SUMMARY_LABEL}\n\n{turn.text}"}])
        elif isinstance(turn, ModelMessage):
            blocks: list[dict[str, Any]] = []
            if turn.text:
                blocks.append({"type": "text", "text": turn.text})
            for call in turn.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.call_id,
                    "name": call.name,
                    "input": call.arguments,
                })
                known_calls.add(call.call_id)
            if not blocks:
                blocks.append({"type": "text", "text": "(empty response)"})
            _append("assistant", blocks)
        elif isinstance(turn, ToolResult):
            text = outcome_text(turn.outcome)
            if turn.call_id in known_calls:
                _append("user", [{
                    "type": "tool_result",
                    "tool_use_id": turn.call_id,
                    "content": text,
                    "is_error": turn.is_error,
                }])
            else:
                _append("user", [{
                    "type": "text",
                    "text": f"[Result of earlier {turn.tool_name} call {turn.call_id}]\n{text}",
                }])

    if messages and messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": [{"type": "text", "text": "(continuing)"}]})
    return messages


def parse_response(content: list[dict[str, Any]]) -> ModelMessage:
    """Build a ModelMessage from Messages API content blocks."""
    text_parts: list[str] = []
    calls: list[ToolCall] = []
    seen: set[str] = set()
    for block in content:
        block_type = block.get("type")
        if block_type == "text":
            text_parts.append(block.get("text", ""))
        elif block_type == "tool_use":
            call_id = block.get("id", "")
            if not call_id or call_id in seen:
                raise ProviderError(
                    ProviderErrorKind.SERVER_ERROR,
                    f"Malformed tool_use block (missing or duplicate id {call_id!r})",
                )
            seen.add(call_id)
            arguments = block.get("input")
            calls.append(ToolCall(
                name=block.get("name", ""),
                call_id=call_id,
                arguments=arguments if isinstance(arguments, dict) else {},
            ))
    return ModelMessage(text="\n".join(text_parts), tool_calls=tuple(calls))


def tool_definitions(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
    """Tool definitions in Messages API format."""
    return [
        {"name": t.name, "description": t.description, "input_schema": t.input_schema()}
        for t in tools
    ]


# ---------------------------------------------------------------------------
# Anthropic client
# ---------------------------------------------------------------------------


class AnthropicClient:
    """ModelClient backed by the Anthropic Messages API over httpx."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # Explicit auth token always uses Bearer; API keys use x-api-key
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (auth: %s)", "Bearer token" if auth_token else "API key")

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        turns: Sequence[Turn],
        tools: Sequence[ToolSpec],
        instructions: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "messages": turns_to_messages(turns),
        }
        if instructions:
            payload["system"] = [{
                "type": "text",
                "text": instructions,
                "cache_control": {"type": "ephemeral"},
            }]
        if tools:
            payload["tools"] = tool_definitions(tools)
        return payload

    async def complete(
        self,
        turns: Sequence[Turn],
        tools: Sequence[ToolSpec],
        *,
        instructions: str | None = None,
        model: str | None = None,
    ) -> ModelMessage:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self.build_payload(turns, tools, instructions, model)
        try:
            response = await self._http.post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderErrorKind.NETWORK_ERROR, f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderError(ProviderErrorKind.NETWORK_ERROR, f"Transport error: {e}") from e

        if response.status_code != 200:
            raise self._classify(response)

        try:
            data = response.json()
            content = data["content"]
        except (ValueError, KeyError) as e:
            raise ProviderError(ProviderErrorKind.SERVER_ERROR, f"Malformed response body: {e}") from e

        usage = data.get("usage")
        if usage:
            logger.debug(
                "Provider usage: input=%s output=%s",
                usage.get("input_tokens"), usage.get("output_tokens"),
            )
        return parse_response(content)

    @staticmethod
    def _classify(response: httpx.Response) -> ProviderError:
        """Map a non-200 response onto a ProviderError kind."""
        try:
            error_data = response.json()
            error_type = error_data.get("error", {}).get("type", "unknown")
            error_msg = error_data.get("error", {}).get("message", "unknown error")
        except ValueError:
            error_type = "http_error"
            error_msg = response.text[:500]
        message = f"HTTP {response.status_code} ({error_type}): {error_msg}"

        if response.status_code == 429:
            retry_after: float | None = None
            header = response.headers.get("retry-after")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            return ProviderError(ProviderErrorKind.RATE_LIMITED, message, retry_after=retry_after)
        return ProviderError(ProviderErrorKind.SERVER_ERROR, message)
