"""Typed session parameters.

Parameters are declared once with a default, an optional validator and a
description, and are read back through typed accessors that raise
ParamError on any invalid value. Values can be seeded from a YAML file of
name -> value pairs.
"""

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from restapi.errors import ConfigError, ParamError
from restapi.tls import get_primary_ip

logger = logging.getLogger(__name__)

# Resolved to the primary interface address when read
IFACE_ADDRESS = "<interface address>"

IPV4_VALIDATOR = (
    r"^(?:(?:25[0-5]|2[0-4][0-9]|1[0-9]{2}|[1-9]?[0-9])\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|1[0-9]{2}|[1-9]?[0-9])$"
)

STRING = "string"
INT = "int"
BOOL = "bool"

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class Parameter:
    """A named, typed parameter."""

    name: str
    default: str
    validator: Optional[str] = None
    description: str = ""
    kind: str = STRING

    def parse(self, raw: Any) -> Any:
        """Convert and validate a raw value.

        Raises:
            ParamError: If the value doesn't fit the parameter
        """
        value = "" if raw is None else str(raw).strip()

        if value == IFACE_ADDRESS:
            value = get_primary_ip() or "127.0.0.1"

        if self.kind == INT:
            try:
                return int(value)
            except ValueError:
                raise ParamError(self.name, f"'{value}' is not a valid integer")

        if self.kind == BOOL:
            lowered = value.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ParamError(self.name, f"'{value}' is not a valid boolean")

        if self.validator and not re.match(self.validator, value):
            raise ParamError(
                self.name,
                f"'{value}' does not match validator {self.validator}",
            )
        return value


def string_param(name: str, default: str, validator: Optional[str], description: str) -> Parameter:
    return Parameter(name, default, validator, description, STRING)


def int_param(name: str, default: str, description: str) -> Parameter:
    return Parameter(name, default, None, description, INT)


def bool_param(name: str, default: str, description: str) -> Parameter:
    return Parameter(name, default, None, description, BOOL)


class ParamStore:
    """Thread-safe registry of declared parameters and their current values."""

    def __init__(self, values: Optional[dict] = None):
        self._params: dict[str, Parameter] = {}
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()
        # Values set before the parameter is declared
        self._pending: dict[str, str] = dict(values or {})

    def add(self, param: Parameter) -> Parameter:
        """Declare a parameter. Redeclaring keeps any value already set."""
        with self._lock:
            self._params[param.name] = param
            if param.name in self._pending:
                self._values[param.name] = str(self._pending.pop(param.name))
        return param

    def params(self) -> list[Parameter]:
        with self._lock:
            return sorted(self._params.values(), key=lambda p: p.name)

    def set(self, name: str, value: Any):
        """Set a parameter value.

        Raises:
            ParamError: If the parameter is unknown
        """
        with self._lock:
            if name not in self._params:
                raise ParamError(name, "unknown parameter")
            self._values[name] = "" if value is None else str(value)

    def get(self, name: str) -> str:
        """Return the raw value (or default) of a parameter."""
        with self._lock:
            param = self._params.get(name)
            if param is None:
                raise ParamError(name, "unknown parameter")
            return self._values.get(name, param.default)

    def _read(self, name: str, kind: str) -> Any:
        with self._lock:
            param = self._params.get(name)
            if param is None:
                raise ParamError(name, "unknown parameter")
            raw = self._values.get(name, param.default)
        if param.kind != kind:
            raise ParamError(name, f"is a {param.kind} parameter, not {kind}")
        return param.parse(raw)

    def string(self, name: str) -> str:
        return self._read(name, STRING)

    def integer(self, name: str) -> int:
        return self._read(name, INT)

    def boolean(self, name: str) -> bool:
        return self._read(name, BOOL)

    def load_yaml(self, path: Path):
        """Seed parameter values from a YAML file.

        The document must be a mapping of parameter name to scalar value.

        Raises:
            ConfigError: If the file can't be parsed or isn't a mapping
            ParamError: If it names an unknown parameter
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping of parameter names to values")

        for name, value in data.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            self.set(str(name), value)
        logger.debug("Loaded %d parameters from %s", len(data), path)
