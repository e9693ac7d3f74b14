"""Authentication for the API server.

HTTP Basic credentials are compared against the configured username and
password. Authentication is disabled when either of the two is empty.
"""

import base64
import binascii
import hmac
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

REALM = "auth"


class AuthError(Exception):
    """Authentication error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


def extract_basic_credentials(auth_header: Optional[str]) -> Optional[Tuple[str, str]]:
    """Extract (username, password) from a Basic Authorization header.

    Returns:
        Credentials tuple, or None if the header is missing or malformed
    """
    if not auth_header or not auth_header.startswith("Basic "):
        return None
    try:
        decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    username, password = decoded.split(":", 1)
    return username, password


def check_credentials(
    auth_header: Optional[str],
    username: str,
    password: str,
) -> Optional[AuthError]:
    """Validate Basic credentials against the configured pair.

    Args:
        auth_header: Authorization header from request
        username: Configured username
        password: Configured password

    Returns:
        None if auth is valid or disabled, or AuthError on failure
    """
    if not username or not password:
        # Auth disabled
        return None

    credentials = extract_basic_credentials(auth_header)
    if credentials is None:
        return AuthError("E300", "Authorization required", 401)

    user, passwd = credentials
    user_ok = hmac.compare_digest(user.encode(), username.encode())
    pass_ok = hmac.compare_digest(passwd.encode(), password.encode())
    if not (user_ok and pass_ok):
        return AuthError("E301", "Invalid credentials", 401)

    return None
