"""TLS identity management for the API server.

Loads an existing certificate/key pair when both files are present, and
otherwise generates a fresh self-signed pair with the openssl CLI. Both
files are published together so a failed generation never leaves a new
certificate next to an old key.
"""

import logging
import os
import shutil
import socket
import ssl
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from restapi.errors import TLSBootstrapError

logger = logging.getLogger(__name__)

# Certificate defaults
DEFAULT_CERT_DAYS = 365
DEFAULT_KEY_SIZE = 4096


@dataclass
class CertProfile:
    """Subject and key parameters for a generated certificate."""

    bits: int = DEFAULT_KEY_SIZE
    common_name: str = "restapi"
    country: str = "US"
    locality: str = ""
    organization: str = "restapi"
    organizational_unit: str = ""
    days: int = DEFAULT_CERT_DAYS

    def subject(self) -> str:
        """Render the profile as an openssl -subj string."""
        parts = [
            ("C", self.country),
            ("L", self.locality),
            ("O", self.organization),
            ("OU", self.organizational_unit),
            ("CN", self.common_name),
        ]
        # openssl treats "/" as a field separator
        return "".join(
            f"/{key}={value.replace('/', '_')}" for key, value in parts if value
        )


DEFAULT_PROFILE = CertProfile()


@dataclass
class TLSIdentity:
    """Certificate and key used by the HTTPS listener."""

    cert_path: Path
    key_path: Path
    fingerprint: str
    generated: bool = False

    @classmethod
    def from_paths(cls, cert_path: Path, key_path: Path) -> "TLSIdentity":
        """Create identity from existing certificate files.

        Raises:
            FileNotFoundError: If files don't exist
        """
        if not cert_path.exists():
            raise FileNotFoundError(f"Certificate not found: {cert_path}")
        if not key_path.exists():
            raise FileNotFoundError(f"Key not found: {key_path}")

        fingerprint = get_cert_fingerprint(cert_path)
        return cls(cert_path=cert_path, key_path=key_path, fingerprint=fingerprint)


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get SHA256 fingerprint of a certificate.

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")

    Raises:
        subprocess.CalledProcessError: If openssl command fails
    """
    result = subprocess.run(
        [
            "openssl", "x509",
            "-in", str(cert_path),
            "-noout",
            "-fingerprint",
            "-sha256"
        ],
        capture_output=True,
        text=True,
        check=True,
    )
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    output = result.stdout.strip()
    if "=" in output:
        return output.split("=", 1)[1]
    return output


def get_hostname() -> str:
    """Get the system hostname."""
    return socket.gethostname()


def get_primary_ip() -> Optional[str]:
    """Get the primary IPv4 address.

    Connects a UDP socket to a public address (no packets are sent) and
    reads back the bound local address.

    Returns:
        Primary IP address, or None if cannot be determined
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(0)
        sock.connect(("8.8.8.8", 80))
        ip: str = sock.getsockname()[0]
        sock.close()
        return ip
    except OSError:
        return None


def _temp_path(target: Path) -> Path:
    fd, name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    os.close(fd)
    return Path(name)


def generate_certificate(profile: CertProfile, cert_path: Path, key_path: Path) -> None:
    """Generate a self-signed certificate and RSA key.

    The pair is written to temporary files beside the targets and then
    moved into place. If moving the certificate fails after the key was
    published, the previous key is restored (or the new key removed when
    there was none).

    Raises:
        subprocess.CalledProcessError: If openssl command fails
        OSError: If the files cannot be written
    """
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    tmp_cert = _temp_path(cert_path)
    tmp_key = _temp_path(key_path)
    backup_key: Optional[Path] = None
    try:
        subprocess.run(
            [
                "openssl", "req",
                "-x509",
                "-nodes",
                "-newkey", f"rsa:{profile.bits}",
                "-sha256",
                "-keyout", str(tmp_key),
                "-out", str(tmp_cert),
                "-days", str(profile.days),
                "-subj", profile.subject() or "/CN=localhost",
            ],
            check=True,
            capture_output=True,
        )

        os.chmod(tmp_key, 0o600)
        os.chmod(tmp_cert, 0o644)

        if key_path.exists():
            backup_key = _temp_path(key_path)
            shutil.copy2(key_path, backup_key)

        os.replace(tmp_key, key_path)
        try:
            os.replace(tmp_cert, cert_path)
        except OSError:
            if backup_key is not None:
                os.replace(backup_key, key_path)
            else:
                key_path.unlink(missing_ok=True)
            raise
    finally:
        tmp_cert.unlink(missing_ok=True)
        tmp_key.unlink(missing_ok=True)
        if backup_key is not None:
            backup_key.unlink(missing_ok=True)


def ensure_identity(
    cert_path: Path,
    key_path: Path,
    profile: Union[CertProfile, Callable[[], CertProfile], None] = None,
    generator=generate_certificate,
) -> TLSIdentity:
    """Load the TLS identity, generating it first when incomplete.

    Existing material is never regenerated or validated beyond reading
    its fingerprint.

    Args:
        cert_path: Certificate file path
        key_path: Key file path
        profile: Profile used when a new pair must be generated, or a
            callable returning it (only called on the generation path)
        generator: Callable(profile, cert_path, key_path) writing the pair

    Raises:
        TLSBootstrapError: On any generation or load failure
        ParamError: If a profile callable rejects its parameters
    """
    generated = False

    if cert_path.exists() and key_path.exists():
        logger.info("loading TLS key from %s", key_path)
        logger.info("loading TLS certificate from %s", cert_path)
    else:
        if callable(profile):
            profile = profile()
        profile = profile or DEFAULT_PROFILE
        logger.debug("%r", profile)
        logger.info("generating TLS key to %s", key_path)
        logger.info("generating TLS certificate to %s", cert_path)
        try:
            generator(profile, cert_path, key_path)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
            raise TLSBootstrapError(f"Certificate generation failed: {stderr or e}") from e
        except OSError as e:
            raise TLSBootstrapError(f"Certificate generation failed: {e}") from e
        generated = True

    try:
        identity = TLSIdentity.from_paths(cert_path, key_path)
    except (OSError, subprocess.CalledProcessError) as e:
        raise TLSBootstrapError(f"Cannot load TLS identity: {e}") from e

    identity.generated = generated
    logger.info("Certificate fingerprint (SHA256): %s", identity.fingerprint)
    return identity


def create_server_context(identity: TLSIdentity) -> ssl.SSLContext:
    """Build a server-side SSL context for the identity.

    Raises:
        TLSBootstrapError: If the pair cannot be loaded by ssl
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(
            certfile=str(identity.cert_path),
            keyfile=str(identity.key_path),
        )
    except (OSError, ssl.SSLError) as e:
        raise TLSBootstrapError(f"Cannot load TLS identity: {e}") from e
    return context


def verify_cert_key_match(cert_path: Path, key_path: Path) -> bool:
    """Verify that a certificate and key match."""
    try:
        cert_result = subprocess.run(
            ["openssl", "x509", "-noout", "-modulus", "-in", str(cert_path)],
            capture_output=True,
            text=True,
            check=True,
        )
        key_result = subprocess.run(
            ["openssl", "rsa", "-noout", "-modulus", "-in", str(key_path)],
            capture_output=True,
            text=True,
            check=True,
        )
        return cert_result.stdout.strip() == key_result.stdout.strip()
    except subprocess.CalledProcessError:
        return False
