"""In-process session state queried by the API.

Holds the options, modules, interface/gateway data, device maps and an
event pool with push subscriptions for the streaming channel.
"""

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_EVENT_HISTORY = 1000
SUBSCRIBER_QUEUE_SIZE = 256

DEVICE_SECTIONS = ("ble", "hid", "lan", "wifi")
SECTIONS = DEVICE_SECTIONS + (
    "env", "gateway", "interface", "modules", "options", "packets", "started-at",
)


@dataclass
class Event:
    """A tagged session event."""

    tag: str
    data: Any = None
    time: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "tag": self.tag,
            "time": datetime.fromtimestamp(self.time, tz=timezone.utc).isoformat(),
            "data": self.data,
        }


class EventPool:
    """Bounded event history with push subscriptions."""

    def __init__(self, history: int = DEFAULT_EVENT_HISTORY):
        self._events: deque = deque(maxlen=history)
        self._listeners: list[queue.Queue] = []
        self._lock = threading.Lock()

    def add(self, tag: str, data: Any = None) -> Event:
        event = Event(tag=tag, data=data)
        with self._lock:
            self._events.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener.put_nowait(event)
            except queue.Full:
                logger.debug("Dropping event %s for slow listener", tag)
        return event

    def last(self, n: Optional[int] = None) -> list[Event]:
        with self._lock:
            events = list(self._events)
        if n is None or n >= len(events):
            return events
        if n <= 0:
            return []
        return events[-n:]

    def clear(self):
        with self._lock:
            self._events.clear()

    def subscribe(self) -> queue.Queue:
        listener: queue.Queue = queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: queue.Queue):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._listeners)


class Session:
    """Session state exposed through /api/session."""

    def __init__(self, interface: Optional[dict] = None, gateway: Optional[dict] = None):
        self.started_at = datetime.now(timezone.utc)
        self.interface = interface or {}
        self.gateway = gateway or {}
        self.env: dict[str, str] = {}
        self.modules: list[dict] = []
        self.packets: dict[str, int] = {"sent": 0, "received": 0, "errors": 0}
        self.devices: dict[str, dict[str, dict]] = {name: {} for name in DEVICE_SECTIONS}
        self.events = EventPool()
        self._commands: dict[str, Callable[[], Any]] = {}
        self._lock = threading.Lock()

    def register_commands(self, commands: dict[str, Callable[[], Any]]):
        """Make module commands available to run()."""
        with self._lock:
            self._commands.update(commands)

    def add_module(self, name: str, description: str = "", running: bool = False):
        with self._lock:
            self.modules.append({"name": name, "description": description, "running": running})

    def set_module_running(self, name: str, running: bool):
        with self._lock:
            for module in self.modules:
                if module["name"] == name:
                    module["running"] = running

    def set_device(self, section: str, mac: str, record: dict):
        if section not in DEVICE_SECTIONS:
            raise KeyError(section)
        with self._lock:
            self.devices[section][mac.lower()] = dict(record, mac=mac.lower())
        self.events.add(f"{section}.device.new", {"mac": mac.lower()})

    def device(self, section: str, mac: str) -> Optional[dict]:
        with self._lock:
            return self.devices.get(section, {}).get(mac.lower())

    def run(self, cmd: str):
        """Run a registered command.

        Raises:
            ValueError: If the command is unknown
        """
        cmd = cmd.strip()
        with self._lock:
            command = self._commands.get(cmd)
        if command is None:
            raise ValueError(f"unknown or unsupported command '{cmd}'")
        logger.debug("Running session command: %s", cmd)
        command()

    def section(self, name: str) -> Any:
        """Return one section of the session snapshot.

        Raises:
            KeyError: If the section doesn't exist
        """
        with self._lock:
            if name in DEVICE_SECTIONS:
                return list(self.devices[name].values())
            if name in ("env", "options"):
                return dict(self.env)
            if name == "gateway":
                return dict(self.gateway)
            if name == "interface":
                return dict(self.interface)
            if name == "modules":
                return [dict(m) for m in self.modules]
            if name == "packets":
                return dict(self.packets)
            if name == "started-at":
                return self.started_at.isoformat()
        raise KeyError(name)

    def snapshot(self) -> dict:
        return {name: self.section(name) for name in SECTIONS}
