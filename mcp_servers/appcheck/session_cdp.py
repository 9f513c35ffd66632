"""Raw-socket CDP connection.

The WebSocket upgrade and framing are implemented here directly on top of a
stream socket; see ws_frames.py for the codec. One CdpSocket carries one
command at a time. Separate callers must open separate connections.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import socket
import time
from collections import deque
from contextlib import suppress
from typing import Any

from .errors import CallError, CallTimeout, ConnectError
from .log_capture import INTERNAL_EXTRA
from .ws_frames import (
    OPCODE_BINARY,
    OPCODE_CLOSE,
    OPCODE_CONTINUATION,
    OPCODE_PING,
    OPCODE_PONG,
    OPCODE_TEXT,
    Frame,
    decode_frames,
    encode_frame,
    encode_text_frame,
    parse_json_messages,
    salvage_json_objects,
)

logger = logging.getLogger("mcp.appcheck.cdp")

WS_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
HANDSHAKE_TIMEOUT = 5.0
POLL_TIMEOUT = 0.3
MAX_EVENT_QUEUE = 2000


def browser_available(host: str = "127.0.0.1", port: int = 9222, timeout: float = 0.5) -> bool:
    """Return True if something accepts TCP connections on the control port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def expected_accept(key: str) -> str:
    digest = hashlib.sha1((key + WS_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def _handshake(sock: socket.socket, host: str, port: int, path: str, timeout: float) -> bytes:
    """Perform the HTTP Upgrade. Returns bytes received after the response headers."""
    key = base64.b64encode(os.urandom(16)).decode("ascii")
    request = (
        f"GET {path} HTTP/1.1\r\n"
        f"Host: {host}:{port}\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Key: {key}\r\n"
        "Sec-WebSocket-Version: 13\r\n"
        "\r\n"
    )

    raw = bytearray()
    deadline = time.monotonic() + timeout
    try:
        sock.settimeout(timeout)
        sock.sendall(request.encode("ascii"))
        while b"\r\n\r\n" not in raw:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConnectError("handshake timed out")
            sock.settimeout(remaining)
            chunk = sock.recv(4096)
            if not chunk:
                raise ConnectError("connection closed during handshake")
            raw += chunk
    except TimeoutError as exc:
        raise ConnectError("handshake timed out") from exc
    except OSError as exc:
        raise ConnectError(str(exc)) from exc

    head, _, rest = bytes(raw).partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    status = lines[0].split()
    if len(status) < 2 or status[1] != "101":
        raise ConnectError(f"unexpected handshake response: {lines[0]!r}")

    headers: dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    accept = headers.get("sec-websocket-accept")
    if accept and accept != expected_accept(key):
        raise ConnectError("handshake returned a mismatched Sec-WebSocket-Accept")
    return rest


class CdpSocket:
    """Low-level CDP connection over a hand-framed WebSocket."""

    def __init__(
        self,
        sock: socket.socket,
        *,
        call_timeout: float = 2.0,
        poll_timeout: float = POLL_TIMEOUT,
        initial: bytes = b"",
    ) -> None:
        self.sock = sock
        self.call_timeout = float(call_timeout)
        self.poll_timeout = min(POLL_TIMEOUT, float(poll_timeout))
        self.closed = False
        self.salvaged = 0
        self._next_id = 1
        self._buffer = bytearray(initial)
        self._fragments: list[bytes] = []
        # Responses read while waiting for a different id; claimed by wait_response().
        self._responses: dict[int, dict[str, Any]] = {}
        # Ids whose caller already timed out; their late replies are dropped.
        self._abandoned: set[int] = set()
        self._events: deque[dict[str, Any]] = deque(maxlen=MAX_EVENT_QUEUE)

    @classmethod
    def connect(
        cls,
        host: str = "127.0.0.1",
        port: int = 9222,
        *,
        path: str = "/",
        timeout: float = HANDSHAKE_TIMEOUT,
        call_timeout: float = 2.0,
    ) -> CdpSocket:
        timeout = min(HANDSHAKE_TIMEOUT, float(timeout))
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise ConnectError(str(exc) or exc.__class__.__name__) from exc

        try:
            leftover = _handshake(sock, host, port, path, timeout)
        except ConnectError:
            with suppress(OSError):
                sock.close()
            raise

        conn = cls(sock, call_timeout=call_timeout, initial=leftover)
        if leftover:
            conn._process_buffer()
        logger.debug("cdp connected %s:%s%s", host, port, path, extra=INTERNAL_EXTRA)
        return conn

    def __enter__(self) -> CdpSocket:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def next_command_id(self) -> int:
        return self._next_id

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send_command(self, method: str, params: dict[str, Any] | None = None, *, session_id: str | None = None) -> int:
        """Send a command without waiting. Returns its id."""
        if self.closed:
            raise CallError(f"CDP connection is closed ({method})")
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method, "params": params or {}}
        if session_id:
            msg["sessionId"] = session_id

        try:
            self.sock.settimeout(max(self.call_timeout, 0.5))
            self.sock.sendall(encode_text_frame(json.dumps(msg, separators=(",", ":"))))
        except OSError as exc:
            raise CallError(f"CDP send failed ({method}): {exc}") from exc
        return msg_id

    def wait_response(self, command_id: int, *, timeout: float | None = None, method: str = "?") -> dict[str, Any]:
        """Block until the response for `command_id` arrives or the budget runs out."""
        budget = self.call_timeout if timeout is None else float(timeout)
        deadline = time.monotonic() + budget
        while True:
            found = self._responses.pop(command_id, None)
            if found is not None:
                return found
            remaining = deadline - time.monotonic()
            if remaining <= 0 or self.closed:
                self._abandoned.add(command_id)
                raise CallTimeout(method, command_id, budget)
            self._read_once(min(self.poll_timeout, remaining))

    def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a command and return the full matching response object."""
        command_id = self.send_command(method, params, session_id=session_id)
        return self.wait_response(command_id, timeout=timeout, method=method)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def drain(self, timeout: float = POLL_TIMEOUT, *, max_reads: int = 50) -> int:
        """Read everything already in flight. Returns the number of messages decoded."""
        total = 0
        window = min(POLL_TIMEOUT, max(0.0, float(timeout)))
        for _ in range(max(1, int(max_reads))):
            if self.closed:
                break
            received, decoded = self._read_once(window)
            total += decoded
            if not received:
                break
            window = 0.05
        return total

    def events(self, method: str | None = None) -> list[dict[str, Any]]:
        return [ev for ev in self._events if method is None or ev.get("method") == method]

    def pop_events(self, method: str | None = None) -> list[dict[str, Any]]:
        taken = [ev for ev in self._events if method is None or ev.get("method") == method]
        if taken:
            kept = [ev for ev in self._events if not (method is None or ev.get("method") == method)]
            self._events = deque(kept, maxlen=MAX_EVENT_QUEUE)
        return taken

    def pending_responses(self) -> list[int]:
        return sorted(self._responses)

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    def _read_once(self, timeout: float) -> tuple[int, int]:
        """One bounded recv. Returns (bytes received, messages decoded)."""
        try:
            self.sock.settimeout(max(0.001, timeout))
            chunk = self.sock.recv(65536)
        except TimeoutError:
            # Nothing new during a full window: a pending partial frame will not complete.
            return 0, self._flush_stale()
        except OSError as exc:
            logger.debug("cdp recv failed: %s", exc, extra=INTERNAL_EXTRA)
            self.closed = True
            return 0, self._flush_stale()

        if not chunk:
            self.closed = True
            return 0, self._flush_stale()

        self._buffer += chunk
        return len(chunk), self._process_buffer()

    def _process_buffer(self) -> int:
        decoded = decode_frames(bytes(self._buffer))
        count = 0
        for frame in decoded.frames:
            count += self._handle_frame(frame)
        if decoded.corrupt:
            self._buffer = bytearray()
            count += self._salvage(decoded.corrupt)
        else:
            self._buffer = bytearray(decoded.remainder)
        return count

    def _flush_stale(self) -> int:
        if not self._buffer:
            return 0
        stale = bytes(self._buffer)
        self._buffer = bytearray()
        return self._salvage(stale)

    def _salvage(self, raw: bytes) -> int:
        messages = parse_json_messages(salvage_json_objects(raw))
        logger.debug(
            "cdp degraded decode: %d message(s) recovered from %d bytes",
            len(messages),
            len(raw),
            extra=INTERNAL_EXTRA,
        )
        for message in messages:
            self._dispatch(message)
        self.salvaged += len(messages)
        return len(messages)

    def _handle_frame(self, frame: Frame) -> int:
        if frame.opcode == OPCODE_PING:
            with suppress(OSError):
                self.sock.sendall(encode_frame(frame.payload, opcode=OPCODE_PONG))
            return 0
        if frame.opcode == OPCODE_PONG:
            return 0
        if frame.opcode == OPCODE_CLOSE:
            self.closed = True
            return 0

        if frame.opcode in (OPCODE_TEXT, OPCODE_BINARY):
            if not frame.fin:
                self._fragments = [frame.payload]
                return 0
            payload = frame.payload
        elif frame.opcode == OPCODE_CONTINUATION:
            if not self._fragments:
                return 0
            self._fragments.append(frame.payload)
            if not frame.fin:
                return 0
            payload = b"".join(self._fragments)
            self._fragments = []
        else:
            return 0

        messages = parse_json_messages([payload])
        for message in messages:
            self._dispatch(message)
        return len(messages)

    def _dispatch(self, message: dict[str, Any]) -> None:
        msg_id = message.get("id")
        if isinstance(msg_id, int) and not isinstance(msg_id, bool):
            if msg_id in self._abandoned:
                self._abandoned.discard(msg_id)
                logger.debug("cdp dropped late response id=%d", msg_id, extra=INTERNAL_EXTRA)
                return
            self._responses[msg_id] = message
        elif isinstance(message.get("method"), str):
            self._events.append(message)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Best-effort close. Never raises."""
        sock = self.sock
        if sock is None:
            return
        if not self.closed:
            with suppress(OSError):
                sock.settimeout(0.2)
                sock.sendall(encode_frame((1000).to_bytes(2, "big"), opcode=OPCODE_CLOSE))
        self.closed = True
        try:
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
            sock.close()
        except OSError as exc:
            logger.warning("cdp socket close failed: %s", exc, extra=INTERNAL_EXTRA)
        self.sock = None  # type: ignore[assignment]


__all__ = ["CdpSocket", "browser_available", "expected_accept"]
