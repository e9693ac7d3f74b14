"""Minimal RFC 6455 support for the events streaming channel.

Covers the server side only: handshake accept key, unmasked server
frames, reading masked client frames, and the event push loop.
"""

import base64
import hashlib
import json
import logging
import queue
import select
import socket
import ssl
import struct
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WS_MAGIC = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

OP_CONTINUATION = 0x0
OP_TEXT = 0x1
OP_BINARY = 0x2
OP_CLOSE = 0x8
OP_PING = 0x9
OP_PONG = 0xA

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001

# Client frames larger than this are refused
MAX_PAYLOAD = 1 << 20

PING_INTERVAL = 30.0
POLL_INTERVAL = 0.25
# A started client frame must complete within this time
READ_TIMEOUT = 10.0


class WebSocketError(Exception):
    """Protocol violation on the streaming channel."""


@dataclass
class Frame:
    fin: bool
    opcode: int
    payload: bytes


def is_upgrade_request(headers) -> bool:
    """Whether request headers ask for a websocket upgrade."""
    upgrade = (headers.get("Upgrade") or "").lower()
    connection = (headers.get("Connection") or "").lower()
    return upgrade == "websocket" and "upgrade" in connection


def accept_value(client_key: str) -> str:
    """Compute Sec-WebSocket-Accept for a Sec-WebSocket-Key."""
    digest = hashlib.sha1((client_key + WS_MAGIC).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("utf-8")


def encode_frame(opcode: int, payload: bytes = b"", fin: bool = True) -> bytes:
    """Encode a single unmasked server frame."""
    length = len(payload)
    header = bytearray([(0x80 if fin else 0) | opcode])
    if length <= 125:
        header.append(length)
    elif length < 65536:
        header.append(126)
        header.extend(struct.pack("!H", length))
    else:
        header.append(127)
        header.extend(struct.pack("!Q", length))
    return bytes(header) + payload


def text_frame(message: str) -> bytes:
    return encode_frame(OP_TEXT, message.encode("utf-8"))


def close_frame(code: int = CLOSE_NORMAL, reason: str = "") -> bytes:
    return encode_frame(OP_CLOSE, struct.pack("!H", code) + reason.encode("utf-8"))


def _read_exact(rfile, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = rfile.read(n - len(data))
        if not chunk:
            raise EOFError("connection closed")
        data += chunk
    return data


def read_frame(rfile) -> Frame:
    """Read one client frame from a binary file-like object.

    Raises:
        EOFError: If the peer closed the connection
        WebSocketError: If the frame is unmasked or too large
    """
    b1, b2 = _read_exact(rfile, 2)
    fin = bool(b1 & 0x80)
    opcode = b1 & 0x0F
    masked = bool(b2 & 0x80)
    length = b2 & 0x7F

    if length == 126:
        (length,) = struct.unpack("!H", _read_exact(rfile, 2))
    elif length == 127:
        (length,) = struct.unpack("!Q", _read_exact(rfile, 8))

    if length > MAX_PAYLOAD:
        raise WebSocketError(f"frame too large: {length} bytes")
    if not masked:
        raise WebSocketError("client frames must be masked")

    mask = _read_exact(rfile, 4)
    payload = bytearray(_read_exact(rfile, length))
    for i in range(length):
        payload[i] ^= mask[i % 4]

    return Frame(fin=fin, opcode=opcode, payload=bytes(payload))


class EventChannel:
    """Push session events to one websocket client.

    Runs in the connection's handler thread until the peer closes, the
    socket fails, or the quit signal is set. Reads and writes share that
    one thread, since an SSL socket can't be read and written concurrently.
    """

    def __init__(
        self,
        connection: socket.socket,
        events,
        quit: threading.Event,
        ping_interval: float = PING_INTERVAL,
        read_timeout: float = READ_TIMEOUT,
    ):
        self.connection = connection
        self.events = events
        self.quit = quit
        self.ping_interval = ping_interval
        self.read_timeout = read_timeout

    def send(self, data: bytes):
        self.connection.sendall(data)

    def _readable(self, timeout: float) -> bool:
        # Decrypted bytes buffered by ssl are invisible to select()
        if isinstance(self.connection, ssl.SSLSocket) and self.connection.pending():
            return True
        readable, _, _ = select.select([self.connection], [], [], timeout)
        return bool(readable)

    def _handle_frame(self, frame: Frame) -> bool:
        """Answer a client frame. Returns False once the client closed."""
        if frame.opcode == OP_PING:
            self.send(encode_frame(OP_PONG, frame.payload))
        elif frame.opcode == OP_CLOSE:
            logger.debug("Client sent close frame")
            self.send(encode_frame(OP_CLOSE, frame.payload[:2]))
            return False
        # Client data frames are ignored
        return True

    def _flush(self, listener: queue.Queue):
        while True:
            try:
                event = listener.get_nowait()
            except queue.Empty:
                return
            self.send(text_frame(json.dumps(event.to_dict(), default=str)))

    def run(self):
        listener = self.events.subscribe()
        # Clients wait for the 101 before sending, so nothing is left in the
        # handler's buffered reader; frames are read unbuffered from here on
        self.connection.settimeout(self.read_timeout)
        rfile = self.connection.makefile("rb", buffering=0)
        last_ping = time.monotonic()
        try:
            while True:
                if self.quit.is_set():
                    self.send(close_frame(CLOSE_GOING_AWAY, "server shutting down"))
                    break
                if self._readable(POLL_INTERVAL):
                    if not self._handle_frame(read_frame(rfile)):
                        break
                self._flush(listener)
                if time.monotonic() - last_ping >= self.ping_interval:
                    self.send(encode_frame(OP_PING))
                    last_ping = time.monotonic()
        except (EOFError, OSError, ValueError, WebSocketError) as e:
            logger.debug("Websocket channel stopped: %s", e)
        finally:
            self.events.unsubscribe(listener)
            rfile.close()
            try:
                self.connection.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
