"""Service configuration resolution.

All api.rest.* parameters are read from the parameter store in a fixed
order on every start attempt. The first invalid value aborts resolution
and its ParamError is raised unchanged.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from restapi.errors import AlreadyStartedError, ParamError
from restapi.params import (
    IFACE_ADDRESS,
    IPV4_VALIDATOR,
    ParamStore,
    bool_param,
    int_param,
    string_param,
)
from restapi.tls import DEFAULT_PROFILE, CertProfile

logger = logging.getLogger(__name__)

PREFIX = "api.rest"
DEFAULT_PORT = 8081
DEFAULT_ALLOW_ORIGIN = "*"


@dataclass(frozen=True)
class ServiceConfig:
    """Snapshot of the service parameters for one running period."""

    address: str
    port: int
    allow_origin: str = DEFAULT_ALLOW_ORIGIN
    username: str = ""
    password: str = ""
    cert_file: str = ""
    key_file: str = ""
    use_websocket: bool = False

    @property
    def auth_enabled(self) -> bool:
        return self.username != "" and self.password != ""

    @property
    def is_tls(self) -> bool:
        return self.cert_file != "" and self.key_file != ""

    @property
    def bind_address(self) -> str:
        return f"{self.address}:{self.port}"


def expand_path(path: str) -> str:
    """Expand ~ and environment variables and make the path absolute.

    An empty path stays empty.
    """
    if not path:
        return path
    expanded = os.path.expandvars(os.path.expanduser(path))
    return str(Path(expanded).absolute())


def register_cert_params(store: ParamStore, prefix: str, profile: CertProfile = DEFAULT_PROFILE):
    """Declare the certificate profile parameters under prefix.certificate.*."""
    base = f"{prefix}.certificate"
    store.add(int_param(f"{base}.bits", str(profile.bits),
                        "Number of bits of the RSA private key of the generated HTTPS certificate."))
    store.add(string_param(f"{base}.country", profile.country, ".*",
                           "Country field of the generated HTTPS certificate."))
    store.add(string_param(f"{base}.locality", profile.locality, ".*",
                           "Locality field of the generated HTTPS certificate."))
    store.add(string_param(f"{base}.organization", profile.organization, ".*",
                           "Organization field of the generated HTTPS certificate."))
    store.add(string_param(f"{base}.organizationalunit", profile.organizational_unit, ".*",
                           "Organizational Unit field of the generated HTTPS certificate."))
    store.add(string_param(f"{base}.commonname", profile.common_name, ".*",
                           "Common Name field of the generated HTTPS certificate."))


def cert_profile_from_params(store: ParamStore, prefix: str) -> CertProfile:
    """Read a CertProfile back from the prefix.certificate.* parameters.

    Raises:
        ParamError: If any profile parameter is invalid
    """
    base = f"{prefix}.certificate"
    bits = store.integer(f"{base}.bits")
    if bits < 1024:
        raise ParamError(f"{base}.bits", f"{bits} is too small for an RSA key")
    return CertProfile(
        bits=bits,
        country=store.string(f"{base}.country"),
        locality=store.string(f"{base}.locality"),
        organization=store.string(f"{base}.organization"),
        organizational_unit=store.string(f"{base}.organizationalunit"),
        common_name=store.string(f"{base}.commonname"),
    )


def register_params(store: ParamStore):
    """Declare all api.rest parameters with their defaults."""
    store.add(string_param(f"{PREFIX}.address", IFACE_ADDRESS, IPV4_VALIDATOR,
                           "Address to bind the API REST server to."))
    store.add(int_param(f"{PREFIX}.port", str(DEFAULT_PORT),
                        "Port to bind the API REST server to."))
    store.add(string_param(f"{PREFIX}.alloworigin", DEFAULT_ALLOW_ORIGIN, None,
                           "Value of the Access-Control-Allow-Origin header of the API server."))
    store.add(string_param(f"{PREFIX}.username", "", None,
                           "API authentication username."))
    store.add(string_param(f"{PREFIX}.password", "", None,
                           "API authentication password."))
    store.add(string_param(f"{PREFIX}.certificate", "", None,
                           "API TLS certificate."))
    register_cert_params(store, PREFIX)
    store.add(string_param(f"{PREFIX}.key", "", None,
                           "API TLS key"))
    store.add(bool_param(f"{PREFIX}.websocket", "false",
                         "If true the /api/events route will be available as a websocket endpoint instead of HTTPS."))


def resolve_config(store: ParamStore, running: bool = False) -> ServiceConfig:
    """Resolve the service configuration from the parameter store.

    Args:
        store: Parameter store holding the api.rest parameters
        running: Whether the service is currently running

    Returns:
        Resolved ServiceConfig

    Raises:
        AlreadyStartedError: If the service is running
        ParamError: On the first invalid parameter
    """
    if running:
        raise AlreadyStartedError(PREFIX)

    address = store.string(f"{PREFIX}.address")
    port = store.integer(f"{PREFIX}.port")
    if not 0 <= port <= 65535:
        raise ParamError(f"{PREFIX}.port", f"{port} is not a valid port")
    allow_origin = store.string(f"{PREFIX}.alloworigin")
    cert_file = expand_path(store.string(f"{PREFIX}.certificate"))
    key_file = expand_path(store.string(f"{PREFIX}.key"))
    username = store.string(f"{PREFIX}.username")
    password = store.string(f"{PREFIX}.password")
    use_websocket = store.boolean(f"{PREFIX}.websocket")

    config = ServiceConfig(
        address=address,
        port=port,
        allow_origin=allow_origin,
        username=username,
        password=password,
        cert_file=cert_file,
        key_file=key_file,
        use_websocket=use_websocket,
    )

    if not config.auth_enabled:
        logger.warning(
            "%s.username and/or %s.password parameters are empty, authentication is disabled.",
            PREFIX, PREFIX,
        )

    return config


def resolve_cert_profile(store: ParamStore) -> CertProfile:
    """Profile used for generating the api.rest certificate."""
    return cert_profile_from_params(store, PREFIX)
