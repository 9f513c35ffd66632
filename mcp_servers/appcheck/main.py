"""
MCP server exposing scoped logs and headless-browser page inspection.

This module provides the main entry point and protocol handling.
Tool dispatch is handled via registry pattern in server/registry.py.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, TextIO

from .config import AppcheckConfig
from .errors import AppcheckError
from .log_buffer import configure_log_store
from .log_capture import INTERNAL_EXTRA, install_log_capture
from .server.contract import initialize_result, select_protocol, tools_list
from .server.registry import create_default_registry
from .server.types import ToolResult
from .session_cdp import browser_available
from .supervisor import BrowserSupervisor

logger = logging.getLogger("mcp.appcheck")


def _write_message(payload: dict[str, Any], out: TextIO | None = None) -> None:
    """Write JSON-RPC message to stdout."""
    stream = out or sys.stdout
    stream.write(json.dumps(payload, ensure_ascii=False) + "\n")
    stream.flush()


def _read_message(inp: TextIO | None = None) -> dict[str, Any] | None:
    """Read one JSON-RPC message. Returns None on EOF, {} for blank or garbled lines."""
    line = (inp or sys.stdin).readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return {}
    try:
        msg = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("dropping unparseable message", extra=INTERNAL_EXTRA)
        return {}
    return msg if isinstance(msg, dict) else {}


class McpServer:
    """MCP Server with registry-based tool dispatch."""

    def __init__(
        self,
        config: AppcheckConfig | None = None,
        *,
        supervisor: BrowserSupervisor | None = None,
        out: TextIO | None = None,
    ) -> None:
        self.config = config or AppcheckConfig.from_env()
        self.supervisor = supervisor
        self.registry = create_default_registry()
        self._out = out

    def _send(self, payload: dict[str, Any]) -> None:
        _write_message(payload, self._out)

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        self._send({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(select_protocol(requested))})

    def handle_list_tools(self, request_id: Any) -> None:
        ready = browser_available(self.config.cdp_host, self.config.cdp_port)
        self._send({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list(browser_ready=ready)}})

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        logger.info("tool=%s args=%s", name, sorted(arguments), extra=INTERNAL_EXTRA)
        try:
            if not name:
                return ToolResult.error("Missing tool name")
            if not self.registry.has(name):
                return ToolResult.error(f"Unknown tool: {name}", tool=name)
            return self.registry.dispatch(name, self.config, self.supervisor, arguments)
        except AppcheckError as exc:
            logger.info("tool_error tool=%s reason=%s", name, exc, extra=INTERNAL_EXTRA)
            return ToolResult.error(str(exc), tool=name, details={"kind": type(exc).__name__})
        except Exception as exc:
            logger.exception("tool_call_failed", extra=INTERNAL_EXTRA)
            return ToolResult.error(str(exc), tool=name)

    def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        result = self.call_tool(name, arguments)
        self._send(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": result.to_content_list(), "isError": result.is_error},
            }
        )

    def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch incoming JSON-RPC message to appropriate handler."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method == "notifications/initialized":
            return
        elif method == "tools/list":
            self.handle_list_tools(request_id)
        elif method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments") or {}
            self.handle_call_tool(request_id, name or "", arguments if isinstance(arguments, dict) else {})
        elif method == "ping":
            self._send({"jsonrpc": "2.0", "id": request_id, "result": {}})
        elif request_id is not None:
            self._send(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )


def main() -> None:
    """Main entry point for MCP server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config = AppcheckConfig.from_env()
    configure_log_store(config.log_capacity)
    install_log_capture()

    supervisor: BrowserSupervisor | None = None
    if config.supervise:
        supervisor = BrowserSupervisor(config).start()

    server = McpServer(config, supervisor=supervisor)
    try:
        while True:
            message = _read_message()
            if message is None:
                break
            server.dispatch(message)
    finally:
        if supervisor is not None:
            supervisor.stop()


if __name__ == "__main__":
    main()
