"""One browsing session: create a target, attach, optionally inject cookies, evaluate JS.

The setup order matters. Cookies are sent as an extra ``Cookie`` header set
on a blank target before navigating, because the browser's cookie store API
keeps cookies without sending them on requests.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .errors import CallError, EvalError, SetupError
from .log_capture import INTERNAL_EXTRA
from .session_cdp import CdpSocket

if TYPE_CHECKING:
    from .config import AppcheckConfig

logger = logging.getLogger("mcp.appcheck.browser")

CookieSource = Mapping[str, str] | Iterable[tuple[str, str]] | None


@dataclass(frozen=True, slots=True)
class SettleDelays:
    """Seconds to wait after each setup step before issuing the next one."""

    create: float = 0.5
    attach: float = 0.5
    runtime: float = 0.2
    network: float = 0.1
    headers: float = 0.1
    navigate: float = 0.5

    def scaled(self, factor: float) -> SettleDelays:
        factor = max(0.0, float(factor))
        return replace(
            self,
            create=self.create * factor,
            attach=self.attach * factor,
            runtime=self.runtime * factor,
            network=self.network * factor,
            headers=self.headers * factor,
            navigate=self.navigate * factor,
        )


def cookie_pairs(cookies: CookieSource) -> list[tuple[str, str]]:
    if not cookies:
        return []
    items = cookies.items() if isinstance(cookies, Mapping) else cookies
    return [(str(name), str(value)) for name, value in items]


def cookie_header(cookies: CookieSource) -> str:
    """Render cookies as one header value: ``a=1; b=2``."""
    return "; ".join(f"{name}={value}" for name, value in cookie_pairs(cookies))


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message") or "unknown error"
        code = error.get("code")
        data = error.get("data")
        text = f"{message} (code {code})" if code is not None else str(message)
        return f"{text}: {data}" if data else text
    return str(error)


def _remote_obj_to_str(obj: Any) -> str:
    """Best-effort conversion of a CDP RemoteObject to a short string."""
    if not isinstance(obj, dict):
        return str(obj)
    for key in ("value", "unserializableValue", "description"):
        if obj.get(key) is not None:
            return str(obj.get(key))
    subtype = obj.get("subtype")
    return f"<{obj.get('type')}{('/' + subtype) if subtype else ''}>"


def _exception_text(details: dict[str, Any]) -> str:
    exc = details.get("exception")
    if isinstance(exc, dict) and exc.get("description"):
        return str(exc["description"])
    text = str(details.get("text") or "Uncaught exception")
    url = details.get("url")
    if url:
        return f"{text} ({url}:{details.get('lineNumber', '?')})"
    return text


def extract_value(response: dict[str, Any]) -> Any:
    """Pull the primitive out of a Runtime.evaluate response.

    Accepts both ``{"result": {"result": {"value": v}}}`` and
    ``{"result": {"value": v}}``. Anything else comes back as a diagnostic
    string so the caller still has something to show.
    """
    result = response.get("result")
    if isinstance(result, dict):
        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            raise EvalError(_exception_text(details))
        for candidate in (result.get("result"), result):
            if not isinstance(candidate, dict):
                continue
            if "value" in candidate:
                return candidate["value"]
            if candidate.get("type") == "undefined" or candidate.get("subtype") == "null":
                return None
    return f"eval_error: {json.dumps(response, ensure_ascii=False, default=str)}"


class BrowserSession:
    """High-level wrapper around one CdpSocket and at most one target."""

    def __init__(self, conn: CdpSocket, *, delays: SettleDelays | None = None) -> None:
        self.conn = conn
        self.delays = delays or SettleDelays()
        self.target_id: str | None = None
        self.session_id: str | None = None

    @classmethod
    def open(
        cls,
        host: str = "127.0.0.1",
        port: int = 9222,
        *,
        connect_timeout: float = 5.0,
        call_timeout: float = 2.0,
        delays: SettleDelays | None = None,
    ) -> BrowserSession:
        conn = CdpSocket.connect(host, port, timeout=connect_timeout, call_timeout=call_timeout)
        return cls(conn, delays=delays)

    @classmethod
    def from_config(cls, config: AppcheckConfig) -> BrowserSession:
        return cls.open(
            config.cdp_host,
            config.cdp_port,
            connect_timeout=config.connect_timeout,
            call_timeout=config.call_timeout,
            delays=SettleDelays().scaled(config.settle_scale),
        )

    def __enter__(self) -> BrowserSession:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _settle(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
        self.conn.drain()

    def _step(self, step: str, method: str, params: dict[str, Any], *, on_target: bool = True) -> dict[str, Any]:
        session_id = self.session_id if on_target else None
        try:
            response = self.conn.call(method, params, session_id=session_id)
        except CallError as exc:
            raise SetupError(step, str(exc)) from exc
        if "error" in response:
            raise SetupError(step, _error_text(response["error"]))
        result = response.get("result")
        return result if isinstance(result, dict) else {}

    def create_and_attach(self, url: str, cookies: CookieSource = None) -> str:
        """Create a target for `url`, attach to it and enable Runtime. Returns the target id."""
        pairs = cookie_pairs(cookies)
        delays = self.delays

        created = self._step(
            "create_target",
            "Target.createTarget",
            {"url": url if not pairs else "about:blank"},
            on_target=False,
        )
        target_id = created.get("targetId")
        if not isinstance(target_id, str) or not target_id:
            raise SetupError("create_target", "response carried no targetId")
        self.target_id = target_id
        self._settle(delays.create)

        try:
            attached = self._step(
                "attach",
                "Target.attachToTarget",
                {"targetId": target_id, "flatten": True},
                on_target=False,
            )
            session_id = attached.get("sessionId")
            self.session_id = session_id if isinstance(session_id, str) and session_id else None
            self._settle(delays.attach)

            self._step("runtime", "Runtime.enable", {})
            self._settle(delays.runtime)

            if pairs:
                self._step("network", "Network.enable", {})
                self._settle(delays.network)

                self._step("cookies", "Network.setExtraHTTPHeaders", {"headers": {"Cookie": cookie_header(pairs)}})
                self._settle(delays.headers)

                navigated = self._step("navigate", "Page.navigate", {"url": url})
                if navigated.get("errorText"):
                    raise SetupError("navigate", str(navigated["errorText"]))
                self._settle(delays.navigate)
        except SetupError:
            self.close_target()
            raise

        logger.debug(
            "target %s ready (session=%s, cookies=%d)",
            target_id,
            self.session_id,
            len(pairs),
            extra=INTERNAL_EXTRA,
        )
        return target_id

    # ------------------------------------------------------------------
    # JavaScript
    # ------------------------------------------------------------------

    def evaluate(self, expression: str) -> Any:
        response = self.conn.call(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True},
            session_id=self.session_id,
        )
        if "error" in response:
            raise EvalError(_error_text(response["error"]))
        return extract_value(response)

    def evaluate_json(self, expression: str) -> Any:
        """Evaluate `JSON.stringify(expression)` and parse it; fall back to the raw text."""
        body = expression.strip().rstrip(";").strip()
        raw = self.evaluate(f"JSON.stringify({body})")
        if not isinstance(raw, str):
            return raw
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def console_errors(self, limit: int = 20) -> list[str]:
        """console.error calls and uncaught exceptions seen on this connection so far."""
        self.conn.drain(0.05)
        out: list[str] = []
        for event in self.conn.events():
            if self.session_id and event.get("sessionId") not in (None, self.session_id):
                continue
            method = event.get("method")
            params = event.get("params") if isinstance(event.get("params"), dict) else {}
            if method == "Runtime.consoleAPICalled" and params.get("type") == "error":
                args = params.get("args") if isinstance(params.get("args"), list) else []
                out.append(" ".join(_remote_obj_to_str(arg) for arg in args) or "console.error()")
            elif method == "Runtime.exceptionThrown":
                details = params.get("exceptionDetails")
                out.append(_exception_text(details) if isinstance(details, dict) else "Uncaught exception")
        return out[-max(0, int(limit)) :] if limit else []

    # ------------------------------------------------------------------
    # Cleanup (best-effort, never raises)
    # ------------------------------------------------------------------

    def close_target(self, target_id: str | None = None) -> bool:
        tid = target_id or self.target_id
        if not tid:
            return False
        ok = True
        try:
            response = self.conn.call("Target.closeTarget", {"targetId": tid})
            if "error" in response:
                ok = False
                logger.warning("closeTarget %s failed: %s", tid, _error_text(response["error"]), extra=INTERNAL_EXTRA)
        except Exception as exc:  # noqa: BLE001
            ok = False
            logger.warning("closeTarget %s failed: %s", tid, exc, extra=INTERNAL_EXTRA)
        if tid == self.target_id:
            self.target_id = None
            self.session_id = None
        return ok

    def disconnect(self) -> None:
        try:
            self.conn.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("cdp disconnect failed: %s", exc, extra=INTERNAL_EXTRA)

    def close(self) -> None:
        self.close_target()
        self.disconnect()


__all__ = [
    "BrowserSession",
    "SettleDelays",
    "cookie_header",
    "cookie_pairs",
    "extract_value",
]
