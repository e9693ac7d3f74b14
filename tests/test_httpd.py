"""Tests for restapi/httpd.py - the dispatch gate over a live listener."""

import json
import time
from unittest.mock import MagicMock

import pytest
import requests

from restapi.httpd import ALLOW_HEADERS, ALLOW_METHODS
from restapi.resources import Response
from restapi.websocket import OP_CLOSE, OP_PING, OP_PONG, OP_TEXT, accept_value

from helpers import WS_KEY, basic_auth, masked_frame, request, ws_connect, ws_read_frame


def _port(api):
    return api.server_address[1]


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestPreflight:
    """CORS preflight is answered before routing or authentication."""

    @pytest.mark.parametrize("path", ["/api/session", "/api/nope", "/"])
    def test_preflight_any_path(self, make_api, path):
        resources = MagicMock()
        api = make_api(resources=resources, username="admin", password="secret")
        api.start()

        status, headers, body = request(_port(api), "OPTIONS", path)

        assert status == 204
        assert body == b""
        assert headers["Access-Control-Allow-Origin"] == "*"
        assert headers["Access-Control-Allow-Headers"] == ALLOW_HEADERS
        assert headers["Access-Control-Allow-Methods"] == ALLOW_METHODS
        resources.handle.assert_not_called()

    def test_preflight_configured_origin(self, make_api):
        api = make_api(alloworigin="https://ui.example.com")
        api.start()

        _, headers, _ = request(_port(api), "OPTIONS", "/api/session")

        assert headers["Access-Control-Allow-Origin"] == "https://ui.example.com"


class TestHeaders:
    """Security and CORS headers on every response."""

    def test_security_headers(self, make_api):
        api = make_api()
        api.start()

        status, headers, _ = request(_port(api))

        assert status == 200
        assert headers["X-Frame-Options"] == "DENY"
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["X-XSS-Protection"] == "1; mode=block"
        assert headers["Referrer-Policy"] == "same-origin"
        assert headers["Access-Control-Allow-Origin"] == "*"

    def test_headers_on_errors(self, make_api):
        api = make_api()
        api.start()

        status, headers, _ = request(_port(api), path="/api/unknown")

        assert status == 404
        assert headers["X-Frame-Options"] == "DENY"


class TestRouting:
    """Route lookup and resource dispatch."""

    def test_unknown_path(self, make_api):
        api = make_api()
        api.start()

        status, _, body = request(_port(api), path="/api/unknown")

        assert status == 404
        assert json.loads(body)["error"]["code"] == "E100"

    def test_session_snapshot(self, make_api):
        api = make_api()
        api.start()

        status, headers, body = request(_port(api))

        assert status == 200
        assert headers["Content-Type"] == "application/json"
        data = json.loads(body)
        assert data["interface"]["name"] == "eth0"
        assert {"name": "api.rest", "description": "Expose a RESTful API.", "running": True} in data["modules"]

    def test_device_route(self, make_api):
        api = make_api()
        api.start()

        status, _, body = request(_port(api), path="/api/session/lan/aa:aa:aa:aa:aa:01")

        assert status == 200
        assert json.loads(body)["hostname"] == "printer"

    def test_resource_receives_request(self, make_api):
        resources = MagicMock()
        resources.handle.return_value = Response.json({"ok": True})
        api = make_api(resources=resources)
        api.start()

        status, _, _ = request(
            _port(api), "POST", "/api/session/wifi/bb:bb:bb:bb:bb:02?x=1", body=b"payload"
        )

        assert status == 200
        resource, req = resources.handle.call_args[0]
        assert resource == "session"
        assert req.method == "POST"
        assert req.section == "wifi"
        assert req.params == {"mac": "bb:bb:bb:bb:bb:02"}
        assert req.arg("x") == "1"
        assert req.body == b"payload"

    def test_handler_exception_is_500(self, make_api):
        resources = MagicMock()
        resources.handle.side_effect = RuntimeError("boom")
        api = make_api(resources=resources)
        api.start()

        status, _, body = request(_port(api))

        assert status == 500
        assert json.loads(body)["error"]["code"] == "E500"

    def test_head_has_no_body(self, make_api):
        api = make_api()
        api.start()

        status, headers, body = request(_port(api), "HEAD")

        assert status == 200
        assert body == b""
        assert int(headers["Content-Length"]) > 0


class TestAuthentication:
    """Basic authentication when both credentials are configured."""

    def test_missing_credentials(self, make_api):
        resources = MagicMock()
        api = make_api(resources=resources, username="admin", password="secret")
        api.start()

        status, headers, _ = request(_port(api))

        assert status == 401
        assert headers["WWW-Authenticate"] == 'Basic realm="auth"'
        resources.handle.assert_not_called()

    def test_wrong_credentials(self, make_api):
        api = make_api(username="admin", password="secret")
        api.start()

        status, _, _ = request(_port(api), headers=basic_auth("admin", "wrong"))

        assert status == 401

    def test_valid_credentials(self, make_api):
        api = make_api(username="admin", password="secret")
        api.start()

        status, _, _ = request(_port(api), headers=basic_auth("admin", "secret"))

        assert status == 200

    def test_single_credential_is_open(self, make_api):
        api = make_api(username="admin")
        api.start()

        status, _, _ = request(_port(api))

        assert status == 200


class TestEventsRoute:
    """Events route in conventional and streaming mode."""

    def test_conventional_mode(self, make_api, session):
        api = make_api()
        api.start()
        session.events.add("test.event", {"n": 1})

        status, _, body = request(_port(api), path="/api/events?n=1")

        assert status == 200
        assert json.loads(body)[0]["tag"] == "test.event"

    def test_streaming_requires_upgrade(self, make_api):
        api = make_api(websocket="true")
        api.start()

        status, _, _ = request(_port(api), path="/api/events")

        assert status == 400

    def test_streaming_pushes_events(self, make_api, session):
        api = make_api(websocket="true")
        api.start()

        sock, rfile, status, headers = ws_connect(_port(api))
        try:
            assert " 101 " in status
            assert headers["Sec-WebSocket-Accept"] == accept_value(WS_KEY)
            assert _wait_for(lambda: session.events.subscriber_count() == 1)

            session.events.add("test.event", {"n": 1})
            opcode, payload = ws_read_frame(rfile)

            assert opcode == OP_TEXT
            event = json.loads(payload)
            assert event["tag"] == "test.event"
            assert event["data"] == {"n": 1}
        finally:
            rfile.close()
            sock.close()

    def test_streaming_requires_auth(self, make_api, session):
        api = make_api(websocket="true", username="admin", password="secret")
        api.start()

        sock, rfile, status, _ = ws_connect(_port(api))
        try:
            assert " 401 " in status
            assert session.events.subscriber_count() == 0
        finally:
            rfile.close()
            sock.close()

    def test_stop_closes_stream(self, make_api, session):
        api = make_api(websocket="true")
        api.start()
        sock, rfile, _, _ = ws_connect(_port(api))
        try:
            assert _wait_for(lambda: session.events.subscriber_count() == 1)

            started = time.monotonic()
            assert api.stop() is True
            assert time.monotonic() - started < 5.0

            opcode, payload = ws_read_frame(rfile)
            assert opcode == OP_CLOSE
            assert int.from_bytes(payload[:2], "big") == 1001
            assert session.events.subscriber_count() == 0
        finally:
            rfile.close()
            sock.close()


class TestHTTPS:
    """TLS listener."""

    def test_serves_https(self, make_api, tmp_path):
        api = make_api(**{
            "certificate": str(tmp_path / "api.crt"),
            "key": str(tmp_path / "api.key"),
            "certificate.bits": "2048",
        })
        api.start()

        status, _, _ = request(_port(api), tls=True)

        assert status == 200
        assert api.identity.generated is True

    def test_plain_http_to_tls_listener_fails(self, make_api, tmp_path):
        api = make_api(**{
            "certificate": str(tmp_path / "api.crt"),
            "key": str(tmp_path / "api.key"),
            "certificate.bits": "2048",
        })
        api.start()

        with pytest.raises(requests.exceptions.RequestException):
            request(_port(api), timeout=5)

        # The listener keeps serving TLS clients
        status, _, _ = request(_port(api), tls=True)
        assert status == 200

    def test_streaming_over_tls(self, make_api, session, tmp_path):
        """Client pings and pushed events interleave on one TLS connection."""
        api = make_api(**{
            "certificate": str(tmp_path / "api.crt"),
            "key": str(tmp_path / "api.key"),
            "certificate.bits": "2048",
            "websocket": "true",
        })
        api.start()

        sock, rfile, status, _ = ws_connect(_port(api), tls=True)
        try:
            assert " 101 " in status
            assert _wait_for(lambda: session.events.subscriber_count() == 1)

            for i in range(3):
                sock.sendall(masked_frame(OP_PING, b"hb"))
                session.events.add("test.event", {"n": i})
                frames = [ws_read_frame(rfile), ws_read_frame(rfile)]
                assert (OP_PONG, b"hb") in frames
                texts = [json.loads(p) for op, p in frames if op == OP_TEXT]
                assert texts[0]["data"] == {"n": i}
        finally:
            rfile.close()
            sock.close()
