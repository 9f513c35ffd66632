"""
Tool registry with dispatch table for the MCP server.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..log_capture import INTERNAL_EXTRA
from ..session_cdp import browser_available
from .types import HandlerFunc, ToolResult

if TYPE_CHECKING:
    from ..config import AppcheckConfig
    from ..supervisor import BrowserSupervisor

logger = logging.getLogger("mcp.appcheck.registry")


class ToolRegistry:
    """Registry for tool handlers; browser-backed tools are gated on the control port."""

    def __init__(self) -> None:
        # name -> (handler, requires_browser)
        self._handlers: dict[str, tuple[HandlerFunc, bool]] = {}

    def register(self, name: str, handler: HandlerFunc, requires_browser: bool = False) -> None:
        self._handlers[name] = (handler, requires_browser)

    def has(self, name: str) -> bool:
        return name in self._handlers

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(
        self,
        name: str,
        config: AppcheckConfig,
        supervisor: BrowserSupervisor | None,
        arguments: dict[str, Any],
    ) -> ToolResult:
        """
        Dispatch tool call to the registered handler.

        Raises:
            KeyError: If tool not found
        """
        handler_info = self._handlers.get(name)
        if handler_info is None:
            raise KeyError(f"Unknown tool: {name}")

        handler, requires_browser = handler_info
        if requires_browser and not browser_available(config.cdp_host, config.cdp_port):
            details: dict[str, Any] = {"cdpPort": config.cdp_port}
            if supervisor is not None:
                details["supervisor"] = supervisor.status()
            logger.info("tool=%s refused: browser not reachable", name, extra=INTERNAL_EXTRA)
            return ToolResult.error(
                f"No browser listening on {config.cdp_host}:{config.cdp_port}",
                tool=name,
                suggestion="Install lightpanda on PATH or start a CDP browser on the control port",
                details=details,
            )
        return handler(config, supervisor, arguments)


def create_default_registry() -> ToolRegistry:
    from .handlers import ALL_HANDLERS

    registry = ToolRegistry()
    for name, (handler, requires_browser) in ALL_HANDLERS.items():
        registry.register(name, handler, requires_browser=requires_browser)
    return registry


__all__ = ["ToolRegistry", "create_default_registry"]
