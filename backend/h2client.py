# backend/h2client.py
from __future__ import annotations

import socket
from typing import Optional

import h2.config
import h2.connection
import h2.events
import h2.exceptions

from errors import ProtocolSessionError

READ_SIZE = 65535


class H2SessionError(ProtocolSessionError):
    pass


class H2Response(object):
    def __init__(self, stream_id: int, status: Optional[int], body_length: int):
        self.stream_id = stream_id
        self.status = status
        self.body_length = body_length


class H2ClientSession(object):
    """
    HTTP/2 client connection on a socket that already negotiated "h2".

    Creating the session writes the connection preface and SETTINGS; close()
    sends GOAWAY. The socket itself belongs to the caller.
    """

    def __init__(self, sock: socket.socket, host: str, port: int = 443):
        self._sock = sock
        self._authority = host if port == 443 else f"{host}:{port}"
        self._closed = False
        config = h2.config.H2Configuration(client_side=True, header_encoding="utf-8")
        self._conn = h2.connection.H2Connection(config=config)
        self._conn.initiate_connection()
        self._flush()

    def __enter__(self) -> "H2ClientSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _flush(self) -> None:
        data = self._conn.data_to_send()
        if data:
            self._sock.sendall(data)

    def get(self, path: str = "/") -> H2Response:
        try:
            return self._get(path)
        except h2.exceptions.ProtocolError as e:
            raise H2SessionError(f"HTTP/2 protocol error: {e}") from e

    def _get(self, path: str) -> H2Response:
        stream_id = self._conn.get_next_available_stream_id()
        self._conn.send_headers(
            stream_id,
            [
                (":method", "GET"),
                (":path", path),
                (":scheme", "https"),
                (":authority", self._authority),
            ],
            end_stream=True,
        )
        self._flush()

        status: Optional[int] = None
        body_length = 0
        while True:
            data = self._sock.recv(READ_SIZE)
            if not data:
                raise H2SessionError("connection closed before response completed")

            done = False
            for ev in self._conn.receive_data(data):
                if isinstance(ev, h2.events.ResponseReceived) and ev.stream_id == stream_id:
                    for k, v in ev.headers:
                        if k == ":status":
                            try:
                                status = int(v)
                            except ValueError:
                                status = None
                elif isinstance(ev, h2.events.DataReceived):
                    if ev.stream_id == stream_id:
                        body_length += len(ev.data)
                    self._conn.acknowledge_received_data(ev.flow_controlled_length, ev.stream_id)
                elif isinstance(ev, h2.events.StreamReset) and ev.stream_id == stream_id:
                    raise H2SessionError(f"stream reset by server: {ev.error_code!s}")
                elif isinstance(ev, h2.events.ConnectionTerminated):
                    raise H2SessionError(f"connection terminated by server: {ev.error_code!s}")
                elif isinstance(ev, h2.events.StreamEnded) and ev.stream_id == stream_id:
                    done = True

            self._flush()
            if done:
                return H2Response(stream_id, status, body_length)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.close_connection()
            self._flush()
        except (OSError, h2.exceptions.ProtocolError):
            pass
