"""Error taxonomy for the REST API service.

Configuration-time errors are raised synchronously from start(). Listener
faults happen after start() has returned and are delivered through the
controller's fatal callback instead.
"""


class APIError(Exception):
    """Base exception with error code and message."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ConfigError(APIError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, code: str = "E100"):
        super().__init__(code, message)


class ParamError(ConfigError):
    """A parameter failed type conversion or validation."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"{name}: {reason}", code="E101")


class TLSBootstrapError(APIError):
    """TLS material could not be loaded or generated."""

    def __init__(self, message: str):
        super().__init__("E200", message)


class AlreadyStartedError(APIError):
    """Start or configure requested while the service is running."""

    def __init__(self, name: str = "api.rest"):
        super().__init__("E400", f"{name} already started")


class BindError(APIError):
    """The listener could not bind its address."""

    def __init__(self, address: str, reason: str):
        self.address = address
        super().__init__("E401", f"Cannot bind {address}: {reason}")


class ListenerFault(APIError):
    """The accept loop failed for a reason other than a requested shutdown."""

    def __init__(self, reason: str):
        super().__init__("E500", f"Listener failed: {reason}")
