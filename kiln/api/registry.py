"""Tool registry -- catalog of tool specs and their implementations.

Registration happens once while a runner is being assembled; freeze()
then makes the registry read-only so concurrent dispatch can share it
without locking.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from kiln.errors import (
    DuplicateToolError,
    InvalidArgumentsError,
    RegistryFrozenError,
    UnknownToolError,
)

logger = logging.getLogger(__name__)

ParamType = Literal["string", "integer", "number", "boolean", "array", "object"]

# Handlers take validated keyword arguments (plus `sandbox` for tools
# that run behind the boundary) and return text, a Success or a Failure.
ToolHandler = Callable[..., Awaitable[Any]]

_PY_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


@dataclass(frozen=True)
class ParamSpec:
    type: ParamType
    required: bool = False
    description: str = ""
    default: Any = None

    def accepts(self, value: Any) -> bool:
        # bool is an int subclass; never let True pass as a number
        if isinstance(value, bool) and self.type != "boolean":
            return False
        return isinstance(value, _PY_TYPES[self.type])


@dataclass(frozen=True)
class ToolSpec:
    """Static descriptor of a tool, surfaced to the model."""

    name: str
    description: str
    parameters: dict[str, ParamSpec] = field(default_factory=dict)
    requires_sandbox: bool = False
    exclusive: bool = False
    resource_arg: str | None = None  # None + exclusive = whole tool is one resource

    def validate(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Return arguments checked against the schema, defaults filled in.

        Unrecognized keys are dropped rather than rejected. Raises
        InvalidArgumentsError naming the first offending field.
        """
        if not isinstance(arguments, dict):
            raise InvalidArgumentsError("", f"Arguments for {self.name} must be an object")

        validated: dict[str, Any] = {}
        for pname, param in self.parameters.items():
            if pname not in arguments or arguments[pname] is None:
                if param.required:
                    raise InvalidArgumentsError(
                        pname, f"Missing required argument '{pname}' for tool {self.name}"
                    )
                if param.default is not None:
                    validated[pname] = param.default
                continue
            value = arguments[pname]
            if not param.accepts(value):
                raise InvalidArgumentsError(
                    pname,
                    f"Argument '{pname}' for tool {self.name} must be {param.type}, "
                    f"got {type(value).__name__}",
                )
            validated[pname] = value

        extra = set(arguments) - set(self.parameters)
        if extra:
            logger.debug("Ignoring extra arguments for %s: %s", self.name, sorted(extra))
        return validated

    def resource_key(self, arguments: dict[str, Any]) -> str | None:
        """Identify the resource an exclusive call touches, or None."""
        if not self.exclusive:
            return None
        if self.resource_arg is None:
            return f"tool:{self.name}"
        value = arguments.get(self.resource_arg)
        if not isinstance(value, str) or not value:
            return f"tool:{self.name}"
        return posixpath.normpath(value)

    def input_schema(self) -> dict[str, Any]:
        """JSON Schema object for the provider's tool definition."""
        properties: dict[str, Any] = {}
        for pname, param in self.parameters.items():
            prop: dict[str, Any] = {"type": param.type}
            if param.description:
                prop["description"] = param.description
            if param.default is not None:
                prop["default"] = param.default
            properties[pname] = prop
        return {
            "type": "object",
            "properties": properties,
            "required": [p for p, s in self.parameters.items() if s.required],
        }


def resources_overlap(a: str, b: str) -> bool:
    """Two resource keys overlap if equal or one is a path ancestor of the other."""
    if a == b:
        return True
    if a.startswith("tool:") or b.startswith("tool:"):
        return False
    return a.startswith(b.rstrip("/") + "/") or b.startswith(a.rstrip("/") + "/")


@dataclass(frozen=True)
class RegisteredTool:
    spec: ToolSpec
    handler: ToolHandler


class ToolRegistry:
    """Name -> (spec, handler) catalog."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._frozen = False

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {spec.name}: registry is frozen")
        if spec.name in self._tools:
            raise DuplicateToolError(spec.name)
        self._tools[spec.name] = RegisteredTool(spec, handler)
        logger.debug("Registered tool %s (sandbox=%s)", spec.name, spec.requires_sandbox)

    def lookup(self, name: str) -> RegisteredTool:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def specs(self) -> list[ToolSpec]:
        """All specs in registration order."""
        return [t.spec for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
