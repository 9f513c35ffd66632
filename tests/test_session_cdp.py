from __future__ import annotations

import json
import socket
import struct
import threading
from typing import Any

import pytest

from mcp_servers.appcheck.errors import CallError, CallTimeout, ConnectError
from mcp_servers.appcheck.session_cdp import CdpSocket, browser_available, expected_accept
from mcp_servers.appcheck.ws_frames import OPCODE_CLOSE, OPCODE_CONTINUATION, OPCODE_PING, OPCODE_PONG, decode_frames


def _server_frame(payload: bytes, *, opcode: int = 0x1, fin: bool = True) -> bytes:
    head = bytes([(0x80 if fin else 0) | opcode])
    if len(payload) < 126:
        return head + bytes([len(payload)]) + payload
    return head + bytes([126]) + struct.pack("!H", len(payload)) + payload


def _msg(obj: dict[str, Any]) -> bytes:
    return _server_frame(json.dumps(obj).encode())


class FakeSocket:
    """Feeds queued chunks to recv(); an empty queue behaves like a poll timeout."""

    def __init__(self, chunks: list[bytes] | None = None) -> None:
        self.chunks = list(chunks or [])
        self.sent: list[bytes] = []
        self.closed = False

    def settimeout(self, value: float) -> None:  # noqa: ARG002
        return None

    def recv(self, size: int) -> bytes:  # noqa: ARG002
        if not self.chunks:
            raise TimeoutError("timed out")
        chunk = self.chunks.pop(0)
        if isinstance(chunk, BaseException):
            raise chunk
        return chunk

    def sendall(self, data: bytes) -> None:
        self.sent.append(bytes(data))

    def shutdown(self, how: int) -> None:  # noqa: ARG002
        return None

    def close(self) -> None:
        self.closed = True


def _sent_messages(sock: FakeSocket) -> list[dict[str, Any]]:
    out = []
    for raw in sock.sent:
        for frame in decode_frames(raw).frames:
            if frame.opcode == 0x1:
                out.append(json.loads(frame.payload))
    return out


def test_send_command_assigns_increasing_ids_and_session() -> None:
    sock = FakeSocket()
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.send_command("Target.createTarget", {"url": "about:blank"}) == 1
    assert conn.send_command("Runtime.enable", session_id="S1") == 2
    assert conn.next_command_id == 3

    sent = _sent_messages(sock)
    assert sent[0] == {"id": 1, "method": "Target.createTarget", "params": {"url": "about:blank"}}
    assert sent[1] == {"id": 2, "method": "Runtime.enable", "params": {}, "sessionId": "S1"}


def test_responses_are_correlated_by_id_out_of_order() -> None:
    sock = FakeSocket()
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    conn._next_id = 5
    first = conn.send_command("A")
    second = conn.send_command("B")
    assert (first, second) == (5, 6)

    sock.chunks = [_msg({"id": 6, "result": {"b": True}}) + _msg({"id": 5, "result": {"a": True}})]
    assert conn.wait_response(5, timeout=1.0) == {"id": 5, "result": {"a": True}}
    # The other response is not lost.
    assert conn.pending_responses() == [6]
    assert conn.wait_response(6, timeout=1.0)["result"] == {"b": True}


def test_call_returns_full_response_and_queues_events() -> None:
    sock = FakeSocket(
        [
            _msg({"method": "Runtime.consoleAPICalled", "params": {"type": "error"}}),
            _msg({"id": 1, "result": {"targetId": "T1"}}),
        ]
    )
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    response = conn.call("Target.createTarget", {"url": "about:blank"}, timeout=1.0)
    assert response == {"id": 1, "result": {"targetId": "T1"}}
    assert [e["method"] for e in conn.events()] == ["Runtime.consoleAPICalled"]
    assert conn.pop_events("Runtime.consoleAPICalled")
    assert conn.events() == []


def test_error_response_is_returned_not_raised() -> None:
    sock = FakeSocket([_msg({"id": 1, "error": {"code": -32000, "message": "nope"}})])
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.call("X", timeout=1.0)["error"]["message"] == "nope"


def test_call_times_out_without_response() -> None:
    conn = CdpSocket(FakeSocket())  # type: ignore[arg-type]
    with pytest.raises(CallTimeout) as excinfo:
        conn.call("Runtime.evaluate", timeout=0.05)
    assert excinfo.value.command_id == 1
    assert isinstance(excinfo.value, CallError)


def test_late_reply_to_timed_out_command_is_dropped() -> None:
    sock = FakeSocket()
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    with pytest.raises(CallTimeout):
        conn.call("Page.navigate", timeout=0.05)

    sock.chunks = [_msg({"id": 1, "result": {"late": True}}), _msg({"id": 2, "result": {"fresh": True}})]
    conn.send_command("Runtime.enable")
    assert conn.wait_response(2, timeout=1.0)["result"] == {"fresh": True}
    assert conn.pending_responses() == []
    assert conn._abandoned == set()


def test_send_on_closed_connection_raises() -> None:
    conn = CdpSocket(FakeSocket())  # type: ignore[arg-type]
    conn.closed = True
    with pytest.raises(CallError):
        conn.send_command("X")


def test_ping_is_answered_with_pong() -> None:
    sock = FakeSocket([_server_frame(b"hb", opcode=OPCODE_PING) + _msg({"id": 1, "result": {}})])
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    conn.call("X", timeout=1.0)

    frames = [f for raw in sock.sent for f in decode_frames(raw).frames]
    pongs = [f for f in frames if f.opcode == OPCODE_PONG]
    assert len(pongs) == 1
    assert pongs[0].payload == b"hb"


def test_fragmented_message_is_reassembled() -> None:
    body = json.dumps({"id": 1, "result": {"value": "long"}}).encode()
    sock = FakeSocket(
        [
            _server_frame(body[:5], fin=False),
            _server_frame(body[5:12], opcode=OPCODE_CONTINUATION, fin=False),
            _server_frame(body[12:], opcode=OPCODE_CONTINUATION),
        ]
    )
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.call("X", timeout=1.0)["result"] == {"value": "long"}


def test_frame_split_across_reads_is_buffered() -> None:
    frame = _msg({"id": 1, "result": {"ok": 1}})
    sock = FakeSocket([frame[:3], frame[3:9], frame[9:]])
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.call("X", timeout=1.0)["result"] == {"ok": 1}
    assert conn.salvaged == 0


def test_corrupt_header_falls_back_to_salvage() -> None:
    sock = FakeSocket([b"\xff\xee" + json.dumps({"id": 1, "result": {"salvaged": True}}).encode()])
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.call("X", timeout=1.0)["result"] == {"salvaged": True}
    assert conn.salvaged == 1
    assert not conn.closed


def test_stale_partial_frame_is_salvaged_after_quiet_window() -> None:
    body = json.dumps({"id": 1, "result": {"partial": True}}).encode()
    # Header claims more bytes than will ever arrive.
    sock = FakeSocket([bytes([0x81, 120]) + body])
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.call("X", timeout=1.0)["result"] == {"partial": True}
    assert conn.salvaged == 1


def test_close_frame_marks_connection_closed() -> None:
    sock = FakeSocket([_server_frame(b"\x03\xe8", opcode=OPCODE_CLOSE)])
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    with pytest.raises(CallTimeout):
        conn.call("X", timeout=5.0)
    assert conn.closed


def test_recv_error_marks_connection_closed() -> None:
    sock = FakeSocket([ConnectionResetError("reset")])  # type: ignore[list-item]
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.drain() == 0
    assert conn.closed


def test_drain_counts_decoded_messages() -> None:
    sock = FakeSocket(
        [
            _msg({"method": "Page.loadEventFired", "params": {}}),
            _msg({"method": "Runtime.exceptionThrown", "params": {}}),
        ]
    )
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    assert conn.drain() == 2
    assert len(conn.events()) == 2


def test_close_sends_close_frame_once_and_never_raises() -> None:
    sock = FakeSocket()
    conn = CdpSocket(sock)  # type: ignore[arg-type]
    conn.close()
    conn.close()
    assert sock.closed
    frames = [f for raw in sock.sent for f in decode_frames(raw).frames]
    assert [f.opcode for f in frames] == [OPCODE_CLOSE]


# ----------------------------------------------------------------------
# Handshake against a loopback listener
# ----------------------------------------------------------------------


def _serve_once(status_line: str, *, extra: bytes = b"", bad_accept: bool = False) -> tuple[int, threading.Thread]:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]

    def run() -> None:
        with listener:
            conn, _ = listener.accept()
            with conn:
                conn.settimeout(2.0)
                raw = b""
                while b"\r\n\r\n" not in raw:
                    chunk = conn.recv(4096)
                    if not chunk:
                        return
                    raw += chunk
                key = ""
                for line in raw.decode("latin-1").split("\r\n"):
                    if line.lower().startswith("sec-websocket-key:"):
                        key = line.split(":", 1)[1].strip()
                accept = "bogus" if bad_accept else expected_accept(key)
                response = (
                    f"{status_line}\r\n"
                    "Upgrade: websocket\r\n"
                    "Connection: Upgrade\r\n"
                    f"Sec-WebSocket-Accept: {accept}\r\n"
                    "\r\n"
                ).encode("ascii")
                conn.sendall(response + extra)
                try:
                    while conn.recv(4096):
                        pass
                except OSError:
                    pass

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return port, thread


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_connect_completes_upgrade_and_keeps_trailing_bytes() -> None:
    event = _msg({"method": "Target.targetCreated", "params": {}})
    port, thread = _serve_once("HTTP/1.1 101 Switching Protocols", extra=event)
    conn = CdpSocket.connect("127.0.0.1", port, timeout=2.0)
    try:
        assert not conn.closed
        assert [e["method"] for e in conn.events()] == ["Target.targetCreated"]
    finally:
        conn.close()
    thread.join(timeout=2.0)


def test_connect_rejects_non_101_status() -> None:
    port, thread = _serve_once("HTTP/1.1 404 Not Found")
    with pytest.raises(ConnectError) as excinfo:
        CdpSocket.connect("127.0.0.1", port, timeout=2.0)
    assert "404" in str(excinfo.value)
    thread.join(timeout=2.0)


def test_connect_rejects_mismatched_accept() -> None:
    port, thread = _serve_once("HTTP/1.1 101 Switching Protocols", bad_accept=True)
    with pytest.raises(ConnectError):
        CdpSocket.connect("127.0.0.1", port, timeout=2.0)
    thread.join(timeout=2.0)


def test_connect_refused_raises_connect_error() -> None:
    with pytest.raises(ConnectError):
        CdpSocket.connect("127.0.0.1", _free_port(), timeout=0.5)


def test_browser_available_probe() -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    try:
        assert browser_available("127.0.0.1", port) is True
    finally:
        listener.close()
    assert browser_available("127.0.0.1", _free_port()) is False


def test_expected_accept_matches_rfc_example() -> None:
    assert expected_accept("dGhlIHNhbXBsZSBub25jZQ==") == "s3pPLMBiTxaQ9kYGzzhZRbK+xOo="
