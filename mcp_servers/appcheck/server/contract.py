"""MCP contract: protocol negotiation and tool definitions."""

from __future__ import annotations

from typing import Any

from ..log_buffer import LogLevel

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

SERVER_INFO: dict[str, Any] = {"name": "appcheck", "version": "0.1.0"}

CAPABILITIES: dict[str, Any] = {
    "tools": {"listChanged": False},
}

GET_LOGS_TOOL: dict[str, Any] = {
    "name": "get_logs",
    "description": (
        "Returns recent log output of the host application, excluding lines produced by this server itself.\n\n"
        "Use it to check for request logs or logged errors. To avoid stale errors from earlier runs, "
        "note the current time before an action and pass it as `since` afterwards."
    ),
    "inputSchema": {
        "type": "object",
        "required": ["tail"],
        "properties": {
            "tail": {"type": "integer", "description": "Number of log entries to return from the end of the log"},
            "grep": {
                "type": "string",
                "description": "Filter logs with the given regular expression (case insensitive)",
            },
            "level": {
                "type": "string",
                "enum": [level.value for level in LogLevel],
                "description": "Only return logs of this exact level",
            },
            "since": {
                "type": "string",
                "description": 'Only return logs strictly after this ISO-8601 timestamp, e.g. "2026-02-14T10:30:00Z"',
            },
        },
    },
}

BROWSER_INSPECT_TOOL: dict[str, Any] = {
    "name": "browser_inspect",
    "description": (
        "Navigates a real headless browser to a route of the running app and returns basic DOM facts: "
        "final url, whether the LiveView root is present, element count, console errors, interactive "
        "elements, and the server logs produced during the visit."
    ),
    "inputSchema": {
        "type": "object",
        "required": ["path"],
        "properties": {
            "path": {"type": "string", "description": 'Route path to inspect, e.g. "/home"'},
            "cookies": {
                "type": "object",
                "additionalProperties": {"type": "string"},
                "description": "Cookies (name -> value) sent as a Cookie header on every request of the visit",
            },
            "wait_ms": {
                "type": "integer",
                "description": "Milliseconds to wait after navigation for JS to settle. Default: 1000.",
            },
        },
    },
}


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
        "instructions": "",
    }


def tools_list(*, browser_ready: bool) -> list[dict[str, Any]]:
    """Browser-backed tools are only offered while the control port answers."""
    tools = [GET_LOGS_TOOL]
    if browser_ready:
        tools.append(BROWSER_INSPECT_TOOL)
    return tools
