"""Settings via pydantic-settings with KILN_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) other tooling uses,
so a single .env file drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KILN_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "127.0.0.1"
    port: int = 8000

    # Provider
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    model: str = "claude-sonnet-4-5-20250514"
    summary_model: str = ""  # empty = same as model
    max_tokens: int = 4096

    # Provider retry (rate_limited / network_error only)
    provider_max_retries: int = 4
    provider_backoff_base: float = 1.0  # seconds, doubled per attempt
    provider_backoff_max: float = 30.0

    # Agent loop
    max_iterations: int = 25  # Max model requests per user turn
    turn_timeout: float = 0  # seconds, 0 = no limit

    # Token budget
    token_limit: int = 100_000
    compress_fraction: float = 0.8
    preserve_tail_turns: int = 6
    chars_per_token: int = 4
    turn_overhead_tokens: int = 4
    compaction_enabled: bool = True

    # Tool dispatch
    tool_timeout: float = 60.0  # seconds per call
    max_concurrent_tools: int = 4
    tool_output_max_chars: int = 30_000
    tool_output_head_chars: int = 20_000
    tool_output_tail_chars: int = 5_000

    # Sandbox
    sandbox_backend: Literal["local", "docker"] = "local"
    workspace_dir: str = "/tmp/kiln-workspace"
    allowed_commands: list[str] = Field(default_factory=lambda: ["*"])
    sandbox_timeout: float = 300.0  # wall clock ceiling enforced by the boundary
    sandbox_grace_period: float = 2.0  # SIGTERM -> SIGKILL delay
    sandbox_cpu_seconds: int = 0  # RLIMIT_CPU, 0 = unlimited
    sandbox_memory_mb: int = 0  # RLIMIT_AS, 0 = unlimited
    sandbox_max_output_chars: int = 100_000
    docker_image: str = "python:3.12-slim"
    docker_network: str = "none"
    docker_memory: str = "2g"
    docker_cpus: str = "2"
    docker_pids_limit: int = 512

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        if not 0 < self.compress_fraction <= 1:
            raise ValueError(
                f"compress_fraction must be in (0, 1], got {self.compress_fraction}"
            )
        if self.preserve_tail_turns < 0:
            raise ValueError("preserve_tail_turns must be >= 0")
        if self.chars_per_token < 1:
            raise ValueError("chars_per_token must be >= 1")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.max_concurrent_tools < 1:
            raise ValueError("max_concurrent_tools must be >= 1")
        return self

    @property
    def effective_summary_model(self) -> str:
        return self.summary_model or self.model
