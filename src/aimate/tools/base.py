"""Tool interface for agent-facing memory operations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


@dataclass
class ToolResult:
    """Result from tool execution."""

    success: bool
    output: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


class Tool(ABC):
    """Base interface for all tools.

    Arguments arrive as an untyped mapping from the model. ``validate_args``
    checks them against ``parameters`` before ``execute`` runs, and each
    tool converts them into its own typed arguments right away.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description for the model."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool with validated arguments."""
        ...

    def get_schema(self) -> dict[str, Any]:
        """Tool schema for function calling."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate_args(self, args: dict[str, Any]) -> tuple[bool, str | None]:
        """Validate arguments against the schema. Returns (valid, error_message)."""
        required = self.parameters.get("required", [])
        properties = self.parameters.get("properties", {})

        for field in required:
            if field not in args:
                return False, f"Missing required argument: {field}"

        for key, value in args.items():
            if key not in properties:
                return False, f"Unknown argument: {key}"
            spec = properties[key]
            expected_type = spec.get("type")
            allowed = _JSON_TYPES.get(expected_type)
            # bool is an int subclass but never a valid integer or number
            if allowed and (not isinstance(value, allowed) or (
                isinstance(value, bool) and expected_type in ("integer", "number")
            )):
                return False, f"Argument '{key}' must be of type {expected_type}"
            if "enum" in spec and value not in spec["enum"]:
                return False, f"Argument '{key}' must be one of: {', '.join(map(str, spec['enum']))}"
            if expected_type in ("integer", "number"):
                if "minimum" in spec and value < spec["minimum"]:
                    return False, f"Argument '{key}' must be >= {spec['minimum']}"
                if "maximum" in spec and value > spec["maximum"]:
                    return False, f"Argument '{key}' must be <= {spec['maximum']}"

        return True, None
