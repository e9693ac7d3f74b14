"""Static route table of the API.

Maps URL paths to the logical resource that serves them. The table holds
no business logic and is rebuilt wholesale on every configure.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

EVENTS = "events"
SESSION = "session"
FILE = "file"

# (pattern, resource); {mac} captures one path segment
ROUTES = (
    ("/api/events", EVENTS),
    ("/api/session", SESSION),
    ("/api/session/ble", SESSION),
    ("/api/session/ble/{mac}", SESSION),
    ("/api/session/hid", SESSION),
    ("/api/session/hid/{mac}", SESSION),
    ("/api/session/env", SESSION),
    ("/api/session/gateway", SESSION),
    ("/api/session/interface", SESSION),
    ("/api/session/modules", SESSION),
    ("/api/session/lan", SESSION),
    ("/api/session/lan/{mac}", SESSION),
    ("/api/session/options", SESSION),
    ("/api/session/packets", SESSION),
    ("/api/session/started-at", SESSION),
    ("/api/session/wifi", SESSION),
    ("/api/session/wifi/{mac}", SESSION),
    ("/api/file", FILE),
)


@dataclass(frozen=True)
class RouteMatch:
    """Result of resolving a path."""

    resource: str
    pattern: str
    section: Optional[str] = None
    params: dict = field(default_factory=dict)


class Route:
    """A compiled URL pattern."""

    def __init__(self, pattern: str, resource: str):
        self.pattern = pattern
        self.resource = resource
        regex = re.sub(r"\{(\w+)\}", r"(?P<\1>[^/]+)", pattern)
        self._regex = re.compile(f"^{regex}$")
        parts = pattern.strip("/").split("/")
        # /api/session/<section>[/{mac}]
        self.section = parts[2] if len(parts) > 2 and parts[1] == SESSION else None

    def match(self, path: str) -> Optional[RouteMatch]:
        m = self._regex.match(path)
        if not m:
            return None
        return RouteMatch(
            resource=self.resource,
            pattern=self.pattern,
            section=self.section,
            params=m.groupdict(),
        )

    def __repr__(self):
        return f"Route({self.pattern!r}, {self.resource!r})"


class RouteTable:
    """Immutable ordered collection of routes."""

    def __init__(self, routes):
        self._routes = tuple(Route(pattern, resource) for pattern, resource in routes)

    @property
    def routes(self) -> tuple:
        return self._routes

    def patterns(self) -> list[str]:
        return [route.pattern for route in self._routes]

    def match(self, path: str) -> Optional[RouteMatch]:
        """Resolve a request path (without query string) to a route."""
        for route in self._routes:
            if match := route.match(path):
                return match
        return None


def build_route_table() -> RouteTable:
    """Build the fixed API route table."""
    return RouteTable(ROUTES)
