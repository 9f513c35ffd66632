"""
Log tool handlers - read back what the host process logged.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from ...errors import InvalidLogFilter
from ...log_buffer import get_log_store
from ..types import ToolResult

if TYPE_CHECKING:
    from ...config import AppcheckConfig
    from ...supervisor import BrowserSupervisor


def parse_since(raw: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; anything unparseable means "no time filter"."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def handle_get_logs(config: AppcheckConfig, supervisor: BrowserSupervisor | None, args: dict[str, Any]) -> ToolResult:
    tail = args.get("tail")
    if not isinstance(tail, int) or isinstance(tail, bool):
        return ToolResult.error("invalid arguments: 'tail' must be an integer", tool="get_logs")

    try:
        lines = get_log_store().query(
            tail,
            level=args.get("level") or None,
            pattern=args.get("grep") or None,
            since=parse_since(args.get("since")),
        )
    except InvalidLogFilter as exc:
        return ToolResult.error(str(exc), tool="get_logs")
    return ToolResult.text("\n".join(lines), data=lines)


LOG_HANDLERS: dict[str, tuple] = {
    "get_logs": (handle_get_logs, False),
}
