"""REST API module exposing session state and control commands.

A single controller owns the HTTP(S) listener: it resolves its parameters,
bootstraps its TLS identity, and serves the fixed /api route table with
CORS, optional Basic authentication and an optional websocket events
channel.
"""

from restapi.controller import (
    RestAPI,
    SHUTDOWN_TIMEOUT,
)
from restapi.config import (
    ServiceConfig,
    resolve_config,
    register_params,
    DEFAULT_PORT,
)
from restapi.errors import (
    APIError,
    ConfigError,
    ParamError,
    TLSBootstrapError,
    AlreadyStartedError,
    BindError,
    ListenerFault,
)
from restapi.params import ParamStore
from restapi.session import Session
from restapi.tls import TLSIdentity, ensure_identity

__version__ = "0.1.0"

__all__ = [
    # Controller
    "RestAPI",
    "SHUTDOWN_TIMEOUT",
    # Config
    "ServiceConfig",
    "resolve_config",
    "register_params",
    "DEFAULT_PORT",
    "ParamStore",
    # Errors
    "APIError",
    "ConfigError",
    "ParamError",
    "TLSBootstrapError",
    "AlreadyStartedError",
    "BindError",
    "ListenerFault",
    # Session
    "Session",
    # TLS
    "TLSIdentity",
    "ensure_identity",
]
