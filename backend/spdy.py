# backend/spdy.py
"""
Minimal SPDY/3.1 client session: enough to issue one GET per stream over an
already negotiated TLS socket and drain the response.

Frame layout (all integers big-endian):

  control: |1| version(15) | type(16) | flags(8) | length(24) | payload
  data:    |0| stream id(31)          | flags(8) | length(24) | payload

Request headers are zlib compressed without the SPDY preset dictionary.
Receivers only load the dictionary when the stream asks for it, so a
dictionary-less stream inflates cleanly. Response header blocks are not
decoded; a SYN_REPLY followed by a FIN is a completed response.
"""
from __future__ import annotations

import socket
import struct
import zlib
from typing import Dict, List, Tuple

from errors import ProtocolSessionError

SPDY_VERSION = 3

SYN_STREAM = 1
SYN_REPLY = 2
RST_STREAM = 3
SETTINGS = 4
PING = 6
GOAWAY = 7
HEADERS = 8
WINDOW_UPDATE = 9

FLAG_FIN = 0x01

SETTINGS_INITIAL_WINDOW_SIZE = 7
DEFAULT_WINDOW = 64 * 1024

# RST_STREAM status codes, for messages
RST_STATUS = {
    1: "PROTOCOL_ERROR",
    2: "INVALID_STREAM",
    3: "REFUSED_STREAM",
    4: "UNSUPPORTED_VERSION",
    5: "CANCEL",
    6: "INTERNAL_ERROR",
    7: "FLOW_CONTROL_ERROR",
    8: "STREAM_IN_USE",
    9: "STREAM_ALREADY_CLOSED",
    11: "FRAME_TOO_LARGE",
}

_HEADER = struct.Struct("!II")
_U32 = struct.Struct("!I")


class SpdyError(ProtocolSessionError):
    pass


class Frame(object):
    def __init__(self, control: bool, kind: int, flags: int, payload: bytes, stream_id: int = 0, version: int = SPDY_VERSION):
        self.control = control
        self.kind = kind
        self.flags = flags
        self.payload = payload
        self.stream_id = stream_id
        self.version = version

    @property
    def fin(self) -> bool:
        return bool(self.flags & FLAG_FIN)


class SpdyResponse(object):
    def __init__(self, stream_id: int, body_length: int):
        self.stream_id = stream_id
        self.body_length = body_length


def encode_control(kind: int, flags: int, payload: bytes) -> bytes:
    first = 0x80000000 | (SPDY_VERSION << 16) | kind
    return _HEADER.pack(first, (flags << 24) | len(payload)) + payload


def encode_data(stream_id: int, flags: int, payload: bytes) -> bytes:
    return _HEADER.pack(stream_id & 0x7FFFFFFF, (flags << 24) | len(payload)) + payload


def encode_header_block(headers: List[Tuple[str, str]]) -> bytes:
    out = [_U32.pack(len(headers))]
    for name, value in headers:
        n = name.lower().encode("utf-8")
        v = value.encode("utf-8")
        out.append(_U32.pack(len(n)) + n + _U32.pack(len(v)) + v)
    return b"".join(out)


def decode_header_block(block: bytes) -> Dict[str, str]:
    """Inverse of encode_header_block, for uncompressed blocks."""
    (count,) = _U32.unpack_from(block, 0)
    pos = 4
    out: Dict[str, str] = {}
    for _ in range(count):
        (nlen,) = _U32.unpack_from(block, pos)
        pos += 4
        name = block[pos:pos + nlen].decode("utf-8")
        pos += nlen
        (vlen,) = _U32.unpack_from(block, pos)
        pos += 4
        out[name] = block[pos:pos + vlen].decode("utf-8")
        pos += vlen
    return out


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise SpdyError("connection closed by server")
        buf.extend(chunk)
    return bytes(buf)


def read_frame(sock: socket.socket) -> Frame:
    first, second = _HEADER.unpack(_recv_exact(sock, 8))
    flags = second >> 24
    length = second & 0xFFFFFF
    payload = _recv_exact(sock, length) if length else b""

    if first & 0x80000000:
        version = (first >> 16) & 0x7FFF
        return Frame(True, first & 0xFFFF, flags, payload, version=version)
    return Frame(False, 0, flags, payload, stream_id=first & 0x7FFFFFFF)


class SpdyClientSession(object):
    """
    Client side of a SPDY/3.1 session on a connected socket.

    Creating the session sends the initial SETTINGS frame, so a dead socket
    fails here rather than on the first request.
    """

    def __init__(self, sock: socket.socket, host: str, port: int = 443):
        self._sock = sock
        self._host = host if port == 443 else f"{host}:{port}"
        self._next_stream_id = 1
        self._zout = zlib.compressobj()
        self._closed = False
        self._send(encode_control(SETTINGS, 0, _U32.pack(1) + _U32.pack(SETTINGS_INITIAL_WINDOW_SIZE) + _U32.pack(DEFAULT_WINDOW)))

    def __enter__(self) -> "SpdyClientSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _send(self, data: bytes) -> None:
        self._sock.sendall(data)

    def _compress(self, block: bytes) -> bytes:
        return self._zout.compress(block) + self._zout.flush(zlib.Z_SYNC_FLUSH)

    def _window_update(self, stream_id: int, delta: int) -> None:
        # stream 0 is the session-wide window in 3.1
        payload = _U32.pack(stream_id & 0x7FFFFFFF) + _U32.pack(delta & 0x7FFFFFFF)
        self._send(encode_control(WINDOW_UPDATE, 0, payload))

    def get(self, path: str = "/") -> SpdyResponse:
        stream_id = self._next_stream_id
        self._next_stream_id += 2

        headers = [
            (":method", "GET"),
            (":path", path),
            (":version", "HTTP/1.1"),
            (":host", self._host),
            (":scheme", "https"),
        ]
        # stream id, associated stream id, priority(3) + unused(5), slot
        prefix = _U32.pack(stream_id) + _U32.pack(0) + bytes([0, 0])
        self._send(encode_control(SYN_STREAM, FLAG_FIN, prefix + self._compress(encode_header_block(headers))))

        replied = False
        body_length = 0
        while True:
            frame = read_frame(self._sock)

            if not frame.control:
                if frame.stream_id != stream_id:
                    continue
                if not replied:
                    raise SpdyError("DATA frame before SYN_REPLY")
                body_length += len(frame.payload)
                if frame.payload and not frame.fin:
                    self._window_update(stream_id, len(frame.payload))
                if frame.payload:
                    self._window_update(0, len(frame.payload))
                if frame.fin:
                    return SpdyResponse(stream_id, body_length)
                continue

            if frame.version != SPDY_VERSION:
                raise SpdyError(f"unsupported SPDY version {frame.version}")

            if frame.kind in (SYN_REPLY, HEADERS, RST_STREAM):
                target = _U32.unpack_from(frame.payload, 0)[0] & 0x7FFFFFFF if len(frame.payload) >= 4 else 0
                if target != stream_id:
                    continue
                if frame.kind == RST_STREAM:
                    status = _U32.unpack_from(frame.payload, 4)[0] if len(frame.payload) >= 8 else 0
                    raise SpdyError(f"stream reset by server: {RST_STATUS.get(status, status)}")
                if frame.kind == SYN_REPLY:
                    replied = True
                if frame.fin:
                    if not replied:
                        raise SpdyError("stream finished without SYN_REPLY")
                    return SpdyResponse(stream_id, body_length)
            elif frame.kind == GOAWAY:
                raise SpdyError("session closed by server (GOAWAY)")
            elif frame.kind == PING:
                # server pings carry even ids; echo them back
                if len(frame.payload) >= 4 and _U32.unpack_from(frame.payload, 0)[0] % 2 == 0:
                    self._send(encode_control(PING, 0, frame.payload[:4]))
            # SETTINGS, WINDOW_UPDATE and unknown frames need no action

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        last = max(self._next_stream_id - 2, 0)
        try:
            self._send(encode_control(GOAWAY, 0, _U32.pack(last) + _U32.pack(0)))
        except OSError:
            pass
