"""Resource handlers behind the route table.

Handlers receive a Request that already passed CORS and authentication
and return a Response. They never see preflight or unauthenticated
traffic.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from restapi.routes import EVENTS, FILE, SESSION
from restapi.session import Session

logger = logging.getLogger(__name__)


@dataclass
class Request:
    """Inbound request as seen by a resource handler."""

    method: str
    path: str
    query: dict = field(default_factory=dict)
    params: dict = field(default_factory=dict)
    section: Optional[str] = None
    headers: dict = field(default_factory=dict)
    body: bytes = b""

    def arg(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.query.get(name)
        return values[0] if values else default


@dataclass
class Response:
    """Outbound response produced by a resource handler."""

    status: int = 200
    body: bytes = b""
    content_type: str = "application/json"
    headers: dict = field(default_factory=dict)

    @classmethod
    def json(cls, payload: Any, status: int = 200) -> "Response":
        body = json.dumps(payload, indent=2, default=str).encode("utf-8")
        return cls(status=status, body=body)

    @classmethod
    def error(cls, code: str, message: str, status: int) -> "Response":
        return cls.json({"error": {"code": code, "message": message}}, status)


def _not_allowed(request: Request) -> Response:
    return Response.error("E102", f"Method {request.method} not allowed", 405)


class SessionResources:
    """Default handlers serving a Session."""

    def __init__(self, session: Session):
        self.session = session

    def handle(self, resource: str, request: Request) -> Response:
        if resource == SESSION:
            return self.session_route(request)
        if resource == EVENTS:
            return self.events_route(request)
        if resource == FILE:
            return self.file_route(request)
        return Response.error("E100", f"Unknown resource: {resource}", 404)

    def session_route(self, request: Request) -> Response:
        if request.method == "POST" and request.section is None:
            return self._run_command(request)
        if request.method not in ("GET", "HEAD"):
            return _not_allowed(request)

        if request.section is None:
            return Response.json(self.session.snapshot())

        if mac := request.params.get("mac"):
            device = self.session.device(request.section, mac)
            if device is None:
                return Response.error("E104", f"No {request.section} device with address {mac}", 404)
            return Response.json(device)

        try:
            return Response.json(self.session.section(request.section))
        except KeyError:
            return Response.error("E100", f"Unknown session section: {request.section}", 404)

    def _run_command(self, request: Request) -> Response:
        try:
            data = json.loads(request.body or b"{}")
            cmd = data["cmd"]
        except (ValueError, KeyError, TypeError):
            return Response.json({"error": "expected a JSON body with a 'cmd' field"}, 400)

        try:
            self.session.run(str(cmd))
        except Exception as e:
            logger.warning("Command '%s' failed: %s", cmd, e)
            return Response.json({"error": str(e)}, 400)
        return Response.json({"error": ""})

    def events_route(self, request: Request) -> Response:
        if request.method == "DELETE":
            self.session.events.clear()
            return Response.json({"error": ""})
        if request.method not in ("GET", "HEAD"):
            return _not_allowed(request)

        n = None
        if (raw := request.arg("n")) is not None:
            try:
                n = int(raw)
            except ValueError:
                return Response.error("E103", f"Invalid event count: {raw}", 400)
        return Response.json([event.to_dict() for event in self.session.events.last(n)])

    def file_route(self, request: Request) -> Response:
        name = request.arg("name")
        if not name:
            return Response.error("E101", "Missing 'name' parameter", 400)
        path = Path(name).expanduser()

        if request.method in ("GET", "HEAD"):
            try:
                content = path.read_bytes()
            except FileNotFoundError:
                return Response.error("E104", f"File not found: {name}", 404)
            except OSError as e:
                return Response.error("E500", str(e), 500)
            return Response(status=200, body=content, content_type="application/octet-stream")

        if request.method == "POST":
            try:
                path.write_bytes(request.body)
            except OSError as e:
                return Response.error("E500", str(e), 500)
            logger.info("Wrote %d bytes to %s", len(request.body), path)
            return Response.json({"error": ""})

        return _not_allowed(request)
