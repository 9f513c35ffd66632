"""WebSocket (RFC 6455) frame codec for the CDP client.

Two decoders live here and are kept separate on purpose:
- decode_frames(): the primary, byte-exact frame parser.
- salvage_json_objects(): degraded mode. Pulls balanced-brace JSON texts out of
  raw bytes that could not be parsed as frames (partial delivery, garbage
  headers). Losing one message is acceptable; aborting the session is not.
"""

from __future__ import annotations

import json
import os
import struct
from dataclasses import dataclass, field
from typing import Any

OPCODE_CONTINUATION = 0x0
OPCODE_TEXT = 0x1
OPCODE_BINARY = 0x2
OPCODE_CLOSE = 0x8
OPCODE_PING = 0x9
OPCODE_PONG = 0xA

DATA_OPCODES = frozenset({OPCODE_CONTINUATION, OPCODE_TEXT, OPCODE_BINARY})
CONTROL_OPCODES = frozenset({OPCODE_CLOSE, OPCODE_PING, OPCODE_PONG})

# Anything larger is treated as a corrupt header rather than a real frame.
MAX_FRAME_PAYLOAD = 64 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class Frame:
    fin: bool
    opcode: int
    payload: bytes

    @property
    def is_control(self) -> bool:
        return self.opcode in CONTROL_OPCODES


@dataclass(slots=True)
class DecodeResult:
    frames: list[Frame] = field(default_factory=list)
    # Bytes of an incomplete trailing frame (wait for more data).
    remainder: bytes = b""
    # Bytes starting at the first header that is not a valid frame.
    corrupt: bytes = b""


def mask_payload(payload: bytes, mask: bytes) -> bytes:
    """XOR payload with the 4-byte mask (index mod 4). Masking is its own inverse."""
    if len(mask) != 4:
        raise ValueError("mask must be exactly 4 bytes")
    return bytes(b ^ mask[i % 4] for i, b in enumerate(payload))


def encode_frame(payload: bytes | str, *, opcode: int = OPCODE_TEXT, mask: bytes | None = None) -> bytes:
    """Encode one final (FIN) client frame. Clients must always mask."""
    data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    key = mask if mask is not None else os.urandom(4)
    length = len(data)

    header = bytearray([0x80 | (opcode & 0x0F)])
    if length < 126:
        header.append(0x80 | length)
    elif length <= 0xFFFF:
        header.append(0x80 | 126)
        header += struct.pack("!H", length)
    else:
        header.append(0x80 | 127)
        header += struct.pack("!Q", length)
    return bytes(header) + key + mask_payload(data, key)


def encode_text_frame(text: str, *, mask: bytes | None = None) -> bytes:
    return encode_frame(text, opcode=OPCODE_TEXT, mask=mask)


def decode_frames(data: bytes) -> DecodeResult:
    """Parse as many complete frames as `data` holds.

    Stops at an incomplete trailing frame (returned as `remainder`) or at the
    first header that cannot be a valid frame (returned as `corrupt`).
    """
    data = bytes(data)
    result = DecodeResult()
    pos = 0
    size = len(data)

    while pos < size:
        if size - pos < 2:
            result.remainder = data[pos:]
            return result

        b0 = data[pos]
        b1 = data[pos + 1]
        fin = bool(b0 & 0x80)
        opcode = b0 & 0x0F
        masked = bool(b1 & 0x80)
        length = b1 & 0x7F

        # RSV bits are never negotiated by this client; unknown opcodes are garbage.
        if b0 & 0x70 or (opcode not in DATA_OPCODES and opcode not in CONTROL_OPCODES):
            result.corrupt = data[pos:]
            return result
        if opcode in CONTROL_OPCODES and (not fin or length > 125):
            result.corrupt = data[pos:]
            return result

        offset = pos + 2
        if length == 126:
            if size - offset < 2:
                result.remainder = data[pos:]
                return result
            (length,) = struct.unpack_from("!H", data, offset)
            offset += 2
        elif length == 127:
            if size - offset < 8:
                result.remainder = data[pos:]
                return result
            (length,) = struct.unpack_from("!Q", data, offset)
            offset += 8
            if length > MAX_FRAME_PAYLOAD:
                result.corrupt = data[pos:]
                return result

        key = b""
        if masked:
            if size - offset < 4:
                result.remainder = data[pos:]
                return result
            key = data[offset : offset + 4]
            offset += 4

        if size - offset < length:
            result.remainder = data[pos:]
            return result

        payload = bytes(data[offset : offset + length])
        if masked:
            payload = mask_payload(payload, key)
        result.frames.append(Frame(fin=fin, opcode=opcode, payload=payload))
        pos = offset + length

    return result


def salvage_json_objects(data: bytes) -> list[str]:
    """Degraded mode: extract balanced-brace JSON-looking texts from raw bytes.

    Only candidates containing a double quote are kept (CDP messages always
    have string keys), which filters out stray braces from binary headers.
    """
    found: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for i, byte in enumerate(data):
        if depth == 0:
            if byte == 0x7B:  # {
                depth = 1
                start = i
                in_string = False
                escaped = False
            continue

        if in_string:
            if escaped:
                escaped = False
            elif byte == 0x5C:  # backslash
                escaped = True
            elif byte == 0x22:  # "
                in_string = False
            continue

        if byte == 0x22:
            in_string = True
        elif byte == 0x7B:
            depth += 1
        elif byte == 0x7D:  # }
            depth -= 1
            if depth == 0:
                text = bytes(data[start : i + 1]).decode("utf-8", errors="replace")
                if '"' in text:
                    found.append(text)
                start = -1

    return found


def parse_json_messages(texts: list[str] | list[bytes]) -> list[dict[str, Any]]:
    """Decode JSON payloads, keeping only objects."""
    out: list[dict[str, Any]] = []
    for raw in texts:
        try:
            text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError):
            continue
        if isinstance(data, dict):
            out.append(data)
    return out


__all__ = [
    "CONTROL_OPCODES",
    "DATA_OPCODES",
    "DecodeResult",
    "Frame",
    "OPCODE_BINARY",
    "OPCODE_CLOSE",
    "OPCODE_CONTINUATION",
    "OPCODE_PING",
    "OPCODE_PONG",
    "OPCODE_TEXT",
    "decode_frames",
    "encode_frame",
    "encode_text_frame",
    "mask_payload",
    "parse_json_messages",
    "salvage_json_objects",
]
