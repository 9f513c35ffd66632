"""
Type definitions for MCP server responses and handlers.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..config import AppcheckConfig
    from ..supervisor import BrowserSupervisor


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Raw payload for in-process callers and tests; not part of the MCP wire format.
    data: Any | None = None

    @classmethod
    def text(cls, text: str, *, data: Any | None = None) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=text or "")], data=data)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        tool: str | None = None,
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ToolResult:
        payload: dict[str, Any] = {"ok": False, "error": message}
        if tool:
            payload["tool"] = tool
        if suggestion:
            payload["suggestion"] = suggestion
        if details:
            payload["details"] = details
        lines = [f"error: {message}"]
        if tool:
            lines.append(f"tool: {tool}")
        if suggestion:
            lines.append(f"suggestion: {suggestion}")
        if details:
            lines.append("details: " + json.dumps(details, ensure_ascii=False, default=str))
        return cls(content=[ToolContent(type="text", text="\n".join(lines))], is_error=True, data=payload)

    def to_content_list(self) -> list[dict[str, Any]]:
        """Convert to MCP content list format."""
        return [c.to_dict() for c in self.content]


HandlerFunc = Callable[["AppcheckConfig", "BrowserSupervisor | None", dict[str, Any]], ToolResult]
