"""Client helpers shared by the server tests."""

import base64
import os
import socket
import ssl

import requests
import urllib3

# Suppress SSL warnings for self-signed certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def free_port() -> int:
    """Reserve an unused localhost port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def basic_auth(username: str, password: str) -> dict:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def request(port, method="GET", path="/api/session", headers=None, body=None, tls=False, timeout=10):
    """Issue one request and return (status, headers, body)."""
    scheme = "https" if tls else "http"
    resp = requests.request(
        method,
        f"{scheme}://127.0.0.1:{port}{path}",
        headers=headers or {},
        data=body,
        verify=False,  # Self-signed cert
        timeout=timeout,
    )
    return resp.status_code, dict(resp.headers), resp.content


WS_KEY = "dGhlIHNhbXBsZSBub25jZQ=="


def ws_connect(port, path="/api/events", headers=None, timeout=10, tls=False):
    """Open a raw websocket connection.

    Returns (socket, file, status line, headers dict).
    """
    sock = socket.create_connection(("127.0.0.1", port), timeout=timeout)
    if tls:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        sock = context.wrap_socket(sock)
    lines = [
        f"GET {path} HTTP/1.1",
        f"Host: 127.0.0.1:{port}",
        "Upgrade: websocket",
        "Connection: Upgrade",
        f"Sec-WebSocket-Key: {WS_KEY}",
        "Sec-WebSocket-Version: 13",
    ]
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    sock.sendall(("\r\n".join(lines) + "\r\n\r\n").encode())

    rfile = sock.makefile("rb")
    status = rfile.readline().decode().strip()
    response_headers = {}
    while True:
        line = rfile.readline().decode().strip()
        if not line:
            break
        name, _, value = line.partition(":")
        response_headers[name.strip()] = value.strip()
    return sock, rfile, status, response_headers


def ws_read_frame(rfile):
    """Read one unmasked server frame. Returns (opcode, payload)."""
    header = rfile.read(2)
    if len(header) < 2:
        raise EOFError("connection closed")
    opcode = header[0] & 0x0F
    length = header[1] & 0x7F
    if length == 126:
        length = int.from_bytes(rfile.read(2), "big")
    elif length == 127:
        length = int.from_bytes(rfile.read(8), "big")
    return opcode, rfile.read(length)


def masked_frame(opcode: int, payload: bytes = b"") -> bytes:
    """Build a masked client frame (payload up to 125 bytes)."""
    mask = os.urandom(4)
    masked = bytes(b ^ mask[i % 4] for i, b in enumerate(payload))
    return bytes([0x80 | opcode, 0x80 | len(payload)]) + mask + masked
