"""Shared pytest fixtures for restapi tests."""

import sys
from pathlib import Path

import pytest

# Add src and test helpers to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))
sys.path.insert(0, str(Path(__file__).parent))

from restapi.controller import RestAPI
from restapi.params import ParamStore
from restapi.session import Session

from helpers import free_port


@pytest.fixture
def session():
    """Session with a few devices."""
    session = Session(
        interface={"name": "eth0", "ipv4": "198.51.100.10", "mac": "aa:bb:cc:dd:ee:ff"},
        gateway={"ipv4": "198.51.100.1", "mac": "11:22:33:44:55:66"},
    )
    session.env["net.probe"] = "false"
    session.set_device("lan", "AA:AA:AA:AA:AA:01", {"ipv4": "198.51.100.20", "hostname": "printer"})
    session.set_device("wifi", "bb:bb:bb:bb:bb:02", {"essid": "home", "channel": 6})
    return session


@pytest.fixture
def store():
    return ParamStore()


@pytest.fixture
def make_api(session, store):
    """Build a RestAPI bound to 127.0.0.1 on a free port; stopped on teardown.

    Keyword arguments other than the constructor's are set as
    api.rest.<name> parameters.
    """
    created = []

    def factory(shutdown_timeout=60.0, on_fatal=None, resources=None, **params):
        api = RestAPI(
            session,
            store=store,
            resources=resources,
            shutdown_timeout=shutdown_timeout,
            on_fatal=on_fatal,
        )
        store.set("api.rest.address", "127.0.0.1")
        store.set("api.rest.port", str(free_port()))
        for name, value in params.items():
            store.set(f"api.rest.{name}", value)
        created.append(api)
        return api

    yield factory

    for api in created:
        api.stop()
