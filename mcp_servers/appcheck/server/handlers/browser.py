"""
Browser tool handlers - visit one page in the headless browser and report basic facts.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from ...browser_session import BrowserSession
from ...log_capture import capture_logs, format_scoped_logs
from ..types import ToolResult

if TYPE_CHECKING:
    from ...config import AppcheckConfig
    from ...supervisor import BrowserSupervisor

LIVE_VIEW_JS = "document.querySelector('[data-phx-main]') !== null"
ELEMENT_COUNT_JS = "document.querySelectorAll('*').length"
INTERACTIVE_JS = """
Array.from(document.querySelectorAll('[phx-click],[phx-submit],a[href],button'))
  .slice(0, 30)
  .map(el => ({
    tag: el.tagName.toLowerCase(),
    text: (el.textContent || '').trim().substring(0, 50),
    phxClick: el.getAttribute('phx-click'),
    phxSubmit: el.getAttribute('phx-submit'),
    href: el.getAttribute('href')
  }))
"""


def inspect_page(
    config: AppcheckConfig,
    path: str,
    *,
    cookies: dict[str, str] | None = None,
    wait_ms: int = 1000,
) -> dict[str, Any]:
    """Open one target, let the page settle, collect facts, close it.

    Server-side logs are scoped to the visit: the store is cleared first and
    read back after the session is closed.
    """
    url = config.page_url(path)
    with capture_logs(30) as scoped:
        with BrowserSession.from_config(config) as session:
            session.create_and_attach(url, cookies)
            if wait_ms > 0:
                time.sleep(wait_ms / 1000.0)
            facts: dict[str, Any] = {
                "url": session.evaluate("window.location.href"),
                "live_view_connected": session.evaluate(LIVE_VIEW_JS),
                "element_count": session.evaluate(ELEMENT_COUNT_JS),
                "interactive_elements": session.evaluate_json(INTERACTIVE_JS),
                "console_errors": session.console_errors(),
            }
    facts["server_logs"] = scoped.lines
    return facts


def _format_interactive(elements: Any) -> str:
    if not isinstance(elements, list) or not elements:
        return "  (none)"
    lines = []
    for el in elements:
        if not isinstance(el, dict):
            continue
        if el.get("phxClick"):
            action = f"phx-click={el['phxClick']}"
        elif el.get("phxSubmit"):
            action = f"phx-submit={el['phxSubmit']}"
        elif el.get("href"):
            action = f"href={el['href']}"
        else:
            action = ""
        lines.append(f"  - <{el.get('tag')}> \"{el.get('text') or ''}\" {action}".rstrip())
    return "\n".join(lines) or "  (none)"


def format_inspection(facts: dict[str, Any]) -> str:
    errors = facts.get("console_errors") or []
    lines = [
        "status: ok",
        f"url: {facts.get('url')}",
        f"live_view_connected: {facts.get('live_view_connected')}",
        f"element_count: {facts.get('element_count')}",
        f"console_errors: {'none' if not errors else errors}",
        "interactive_elements:",
        _format_interactive(facts.get("interactive_elements")),
        format_scoped_logs(facts.get("server_logs") or []),
    ]
    return "\n".join(lines)


def handle_browser_inspect(
    config: AppcheckConfig, supervisor: BrowserSupervisor | None, args: dict[str, Any]
) -> ToolResult:
    path = args.get("path")
    if not isinstance(path, str) or not path.strip():
        return ToolResult.error("invalid arguments: 'path' is required", tool="browser_inspect")

    cookies = args.get("cookies")
    if cookies is not None and not isinstance(cookies, dict):
        return ToolResult.error("invalid arguments: 'cookies' must be an object of name -> value", tool="browser_inspect")

    wait_ms = args.get("wait_ms", 1000)
    if not isinstance(wait_ms, int) or isinstance(wait_ms, bool) or wait_ms < 0:
        wait_ms = 1000

    facts = inspect_page(config, path, cookies=cookies, wait_ms=min(wait_ms, 30_000))
    return ToolResult.text(format_inspection(facts), data=facts)


BROWSER_HANDLERS: dict[str, tuple] = {
    "browser_inspect": (handle_browser_inspect, True),
}
