"""
Base classes for tools.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

from .images import ModelImage


@dataclass
class ToolResult:
    """Result of one tool call, as seen by the agent loop.

    ``output`` is the text handed back to the model. ``image`` is an optional
    inline image that rides along with the next request only.
    """

    output: str = ""
    data: Any = None
    success: bool = True
    error: str | None = None
    repaired: bool = False
    image: ModelImage | None = None


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


ToolHandler = Callable[..., Coroutine[Any, Any, Any]]


@dataclass
class Tool:
    """
    A named async handler plus the schema the model sees.

    The handler receives the parsed arguments as keyword arguments. Handlers
    that declare a ``cancel_token`` parameter also get the call's CancelToken.
    """

    name: str
    description: str
    handler: ToolHandler
    parameters: list[ToolParameter] = field(default_factory=list)
    schema: dict[str, Any] | None = None

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        if self.schema is not None:
            return self.schema

        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    @property
    def accepts_cancel_token(self) -> bool:
        try:
            params = inspect.signature(self.handler).parameters
        except (TypeError, ValueError):
            return False
        return "cancel_token" in params or any(
            p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()
        )

    async def execute(self, arguments: dict[str, Any], cancel_token: Any = None) -> Any:
        """Execute the tool handler."""
        kwargs = dict(arguments)
        if cancel_token is not None and self.accepts_cancel_token:
            kwargs["cancel_token"] = cancel_token
        return await self.handler(**kwargs)
