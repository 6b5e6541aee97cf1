"""
Tools module: registry, execution gateway and confirmation handshake.
"""

from .base import Tool, ToolParameter, ToolResult
from .cancel import CancelToken
from .confirmation import ConfirmationBroker, ConfirmationRequest, needs_confirmation
from .gateway import ToolGateway, parse_tool_arguments
from .images import ImageConfig, ModelImage, ToolImageProcessor
from .registry import ToolRegistry

__all__ = [
    "Tool",
    "ToolParameter",
    "ToolResult",
    "CancelToken",
    "ConfirmationBroker",
    "ConfirmationRequest",
    "needs_confirmation",
    "ToolGateway",
    "parse_tool_arguments",
    "ImageConfig",
    "ModelImage",
    "ToolImageProcessor",
    "ToolRegistry",
]
