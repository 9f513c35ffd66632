"""
Tool handlers organized by domain.

All handlers follow the signature: (config, supervisor, arguments) -> ToolResult
"""

from .browser import BROWSER_HANDLERS
from .logs import LOG_HANDLERS

ALL_HANDLERS: dict[str, tuple] = {
    **LOG_HANDLERS,
    **BROWSER_HANDLERS,
}

__all__ = [
    "ALL_HANDLERS",
    "BROWSER_HANDLERS",
    "LOG_HANDLERS",
]
