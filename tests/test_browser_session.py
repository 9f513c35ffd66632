from __future__ import annotations

from typing import Any

import pytest

from mcp_servers.appcheck.browser_session import (
    BrowserSession,
    SettleDelays,
    cookie_header,
    extract_value,
)
from mcp_servers.appcheck.errors import CallError, CallTimeout, EvalError, SetupError

NO_DELAYS = SettleDelays().scaled(0)


class DummyConn:
    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, dict[str, Any] | None, str | None]] = []
        self.queued_events: list[dict[str, Any]] = []
        self.closed = False
        self.drains = 0

    def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,  # noqa: ARG002
    ) -> dict[str, Any]:
        self.calls.append((method, params, session_id))
        response = self.responses.get(method, {"result": {}})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response

    def drain(self, timeout: float = 0.3, *, max_reads: int = 50) -> int:  # noqa: ARG002
        self.drains += 1
        return 0

    def events(self, method: str | None = None) -> list[dict[str, Any]]:
        return [e for e in self.queued_events if method is None or e.get("method") == method]

    def close(self) -> None:
        self.closed = True


def _setup_responses(**overrides: Any) -> dict[str, Any]:
    responses: dict[str, Any] = {
        "Target.createTarget": {"id": 1, "result": {"targetId": "T1"}},
        "Target.attachToTarget": {"id": 2, "result": {"sessionId": "S1"}},
        "Page.navigate": {"id": 6, "result": {"frameId": "F1"}},
    }
    responses.update(overrides)
    return responses


def test_cookie_header_joins_pairs_in_order() -> None:
    assert cookie_header({"a": "1", "b": "2"}) == "a=1; b=2"
    assert cookie_header([("x", "y")]) == "x=y"
    assert cookie_header(None) == ""


def test_settle_delays_scale() -> None:
    half = SettleDelays().scaled(0.5)
    assert half.create == 0.25
    assert half.navigate == 0.25
    assert SettleDelays().scaled(-1).runtime == 0.0


def test_setup_without_cookies_opens_url_directly() -> None:
    conn = DummyConn(_setup_responses())
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]

    assert session.create_and_attach("http://localhost:4000/") == "T1"
    assert [c[0] for c in conn.calls] == ["Target.createTarget", "Target.attachToTarget", "Runtime.enable"]
    assert conn.calls[0][1] == {"url": "http://localhost:4000/"}
    assert conn.calls[1][1] == {"targetId": "T1", "flatten": True}
    assert session.session_id == "S1"
    # One settle per step.
    assert conn.drains == 3


def test_cookies_are_sent_as_header_before_navigation() -> None:
    conn = DummyConn(_setup_responses())
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]

    session.create_and_attach("http://localhost:4000/admin", {"_app_key": "abc", "theme": "dark"})

    methods = [c[0] for c in conn.calls]
    assert methods == [
        "Target.createTarget",
        "Target.attachToTarget",
        "Runtime.enable",
        "Network.enable",
        "Network.setExtraHTTPHeaders",
        "Page.navigate",
    ]
    assert conn.calls[0][1] == {"url": "about:blank"}
    assert conn.calls[4][1] == {"headers": {"Cookie": "_app_key=abc; theme=dark"}}
    assert conn.calls[5][1] == {"url": "http://localhost:4000/admin"}
    assert methods.index("Network.setExtraHTTPHeaders") < methods.index("Page.navigate")


def test_target_scoped_commands_carry_session_id() -> None:
    conn = DummyConn(_setup_responses())
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    session.create_and_attach("http://x/", {"k": "v"})

    sessions = {method: sid for method, _, sid in conn.calls}
    assert sessions["Target.createTarget"] is None
    assert sessions["Target.attachToTarget"] is None
    assert sessions["Runtime.enable"] == "S1"
    assert sessions["Page.navigate"] == "S1"


def test_create_without_target_id_is_setup_error() -> None:
    conn = DummyConn(_setup_responses(**{"Target.createTarget": {"id": 1, "result": {}}}))
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    with pytest.raises(SetupError) as excinfo:
        session.create_and_attach("http://x/")
    assert excinfo.value.step == "create_target"


def test_failed_step_closes_target_and_reports_step() -> None:
    conn = DummyConn(
        _setup_responses(**{"Network.setExtraHTTPHeaders": {"id": 5, "error": {"code": -32601, "message": "nope"}}})
    )
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]

    with pytest.raises(SetupError) as excinfo:
        session.create_and_attach("http://x/", {"a": "1"})

    assert excinfo.value.step == "cookies"
    assert "nope" in str(excinfo.value)
    assert ("Target.closeTarget", {"targetId": "T1"}, None) in conn.calls
    assert "Page.navigate" not in [c[0] for c in conn.calls]
    assert session.target_id is None


def test_navigate_error_text_is_setup_error() -> None:
    conn = DummyConn(
        _setup_responses(**{"Page.navigate": {"id": 6, "result": {"errorText": "net::ERR_CONNECTION_REFUSED"}}})
    )
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    with pytest.raises(SetupError) as excinfo:
        session.create_and_attach("http://x/", {"a": "1"})
    assert excinfo.value.step == "navigate"


def test_call_timeout_during_setup_is_setup_error() -> None:
    conn = DummyConn(_setup_responses(**{"Runtime.enable": CallTimeout("Runtime.enable", 3, 2.0)}))
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    with pytest.raises(SetupError) as excinfo:
        session.create_and_attach("http://x/")
    assert excinfo.value.step == "runtime"
    assert isinstance(excinfo.value.__cause__, CallTimeout)


@pytest.mark.parametrize(
    "response,expected",
    [
        ({"id": 1, "result": {"result": {"type": "number", "value": 42}}}, 42),
        ({"id": 1, "result": {"type": "string", "value": "flat"}}, "flat"),
        ({"id": 1, "result": {"result": {"type": "undefined"}}}, None),
        ({"id": 1, "result": {"result": {"type": "object", "subtype": "null"}}}, None),
    ],
)
def test_extract_value_accepts_both_shapes(response: dict[str, Any], expected: Any) -> None:
    assert extract_value(response) == expected


def test_extract_value_unknown_shape_is_diagnostic_string() -> None:
    value = extract_value({"id": 1, "result": {"weird": True}})
    assert isinstance(value, str)
    assert value.startswith("eval_error: ")
    assert "weird" in value


def test_evaluate_sends_return_by_value_with_session() -> None:
    conn = DummyConn({"Runtime.evaluate": {"id": 9, "result": {"result": {"type": "boolean", "value": True}}}})
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    session.session_id = "S1"

    assert session.evaluate("1 === 1") is True
    assert conn.calls == [("Runtime.evaluate", {"expression": "1 === 1", "returnByValue": True}, "S1")]


def test_evaluate_raises_on_exception_details() -> None:
    conn = DummyConn(
        {
            "Runtime.evaluate": {
                "id": 1,
                "result": {
                    "result": {"type": "object", "subtype": "error"},
                    "exceptionDetails": {"text": "Uncaught", "exception": {"description": "ReferenceError: nope"}},
                },
            }
        }
    )
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    with pytest.raises(EvalError, match="ReferenceError"):
        session.evaluate("nope")


def test_evaluate_raises_on_protocol_error() -> None:
    conn = DummyConn({"Runtime.evaluate": {"id": 1, "error": {"code": -32000, "message": "no context"}}})
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    with pytest.raises(EvalError, match="no context"):
        session.evaluate("1")


def test_evaluate_json_parses_stringified_value() -> None:
    conn = DummyConn(
        {"Runtime.evaluate": lambda params: {"result": {"result": {"value": '[{"tag":"a","href":"/x"}]'}}}}
    )
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]

    assert session.evaluate_json("  Array.from(document.links);  ") == [{"tag": "a", "href": "/x"}]
    assert conn.calls[0][1]["expression"] == "JSON.stringify(Array.from(document.links))"


def test_evaluate_json_falls_back_to_raw_text() -> None:
    conn = DummyConn({"Runtime.evaluate": {"result": {"result": {"value": "not json"}}}})
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    assert session.evaluate_json("x") == "not json"


def test_console_errors_collects_errors_for_this_session() -> None:
    conn = DummyConn()
    conn.queued_events = [
        {
            "method": "Runtime.consoleAPICalled",
            "sessionId": "S1",
            "params": {"type": "error", "args": [{"type": "string", "value": "boom"}, {"type": "number", "value": 3}]},
        },
        {"method": "Runtime.consoleAPICalled", "sessionId": "S1", "params": {"type": "log", "args": []}},
        {
            "method": "Runtime.exceptionThrown",
            "sessionId": "S1",
            "params": {"exceptionDetails": {"text": "Uncaught", "exception": {"description": "TypeError: x"}}},
        },
        {
            "method": "Runtime.consoleAPICalled",
            "sessionId": "OTHER",
            "params": {"type": "error", "args": [{"type": "string", "value": "elsewhere"}]},
        },
    ]
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    session.session_id = "S1"

    assert session.console_errors() == ["boom 3", "TypeError: x"]
    assert session.console_errors(limit=1) == ["TypeError: x"]


def test_close_target_swallows_failures() -> None:
    conn = DummyConn({"Target.closeTarget": CallError("socket gone")})
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    session.target_id = "T1"
    session.session_id = "S1"

    assert session.close_target() is False
    assert session.target_id is None
    assert session.session_id is None


def test_close_target_without_target_is_noop() -> None:
    conn = DummyConn()
    session = BrowserSession(conn, delays=NO_DELAYS)  # type: ignore[arg-type]
    assert session.close_target() is False
    assert conn.calls == []


def test_context_manager_closes_target_and_connection() -> None:
    conn = DummyConn(_setup_responses())
    with BrowserSession(conn, delays=NO_DELAYS) as session:  # type: ignore[arg-type]
        session.create_and_attach("http://x/")
    assert conn.calls[-1] == ("Target.closeTarget", {"targetId": "T1"}, None)
    assert conn.closed
