"""Readiness checks against a running API server.

Used by `restapi probe` and by anything that needs to wait for the
listener to come up after `api.rest on`.
"""

import logging
import time

import requests
import urllib3

# Suppress SSL warnings for self-signed certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

AUTH_REQUIRED = "Authentication required. Pass --username and --password."


def check_api(url: str, username: str = "", password: str = "", timeout: float = 10) -> tuple[bool, str]:
    """Check that the API answers a session request.

    Args:
        url: Base URL (e.g., https://198.51.100.10:8081)
        username: Basic auth username (optional)
        password: Basic auth password (optional)
        timeout: Request timeout in seconds

    Returns:
        (success, message) tuple
    """
    auth = (username, password) if username and password else None
    try:
        resp = requests.get(
            f"{url.rstrip('/')}/api/session/started-at",
            auth=auth,
            verify=False,  # Self-signed cert
            timeout=timeout,
        )

        if resp.status_code == 401:
            return False, AUTH_REQUIRED

        if resp.status_code == 200:
            return True, f"API accessible at {url} (session started {resp.json()})"

        return False, f"Unexpected API response: {resp.status_code} - {resp.text[:100]}"

    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {url}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {url}"
    except requests.exceptions.RequestException as e:
        return False, f"Error checking {url}: {e}"
    except ValueError as e:
        return False, f"Invalid response from {url}: {e}"


def wait_for_api(
    url: str,
    username: str = "",
    password: str = "",
    timeout: float = 30.0,
    interval: float = 0.5,
) -> tuple[bool, str]:
    """Poll check_api until it succeeds or the timeout expires.

    An authentication failure ends the wait immediately.
    """
    deadline = time.monotonic() + timeout
    while True:
        success, message = check_api(url, username, password, timeout=min(10.0, max(timeout, 0.1)))
        if success or message == AUTH_REQUIRED:
            return success, message
        if time.monotonic() >= deadline:
            return False, f"API not ready after {timeout:.0f}s: {message}"
        logger.debug("Waiting for %s: %s", url, message)
        time.sleep(interval)
