"""Tests for restapi/cli.py - command line entry point."""

import json
import signal
import threading
import time
from unittest.mock import patch

import pytest
import requests

from restapi.cli import main

from helpers import free_port, request


class TestMain:
    """Tests for main() dispatch."""

    def test_no_args_prints_help(self, capsys):
        assert main([]) == 0
        assert "Usage: restapi <command>" in capsys.readouterr().out

    def test_help_flag(self, capsys):
        assert main(["--help"]) == 0
        assert "serve" in capsys.readouterr().out

    def test_unknown_command(self, capsys):
        assert main(["bogus"]) == 1
        assert "Unknown command 'bogus'" in capsys.readouterr().out

    def test_subcommand_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["serve", "--help"])
        assert exc_info.value.code == 0
        assert "--config" in capsys.readouterr().out


class TestParams:
    """Tests for the params command."""

    def test_lists_defaults(self, capsys):
        assert main(["params"]) == 0
        out = capsys.readouterr().out
        assert "api.rest.port = '8081'" in out
        assert "api.rest.websocket = 'false'" in out

    def test_overrides_applied(self, capsys):
        assert main(["params", "--set", "api.rest.port=9000"]) == 0
        assert "api.rest.port = '9000'" in capsys.readouterr().out

    def test_config_file(self, capsys, tmp_path):
        config = tmp_path / "params.yaml"
        config.write_text("api.rest.username: admin\n")

        assert main(["params", "--config", str(config)]) == 0
        assert "api.rest.username = 'admin'" in capsys.readouterr().out

    def test_unknown_override(self, capsys):
        assert main(["params", "--set", "api.rest.bogus=1"]) == 1
        assert "unknown parameter" in capsys.readouterr().err

    def test_malformed_override(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["params", "--set", "no-equals-sign"])
        assert exc_info.value.code == 2


class TestServe:
    """Tests for the serve command."""

    def test_invalid_config_fails(self):
        assert main(["serve", "--set", "api.rest.port=http"]) == 1

    def test_missing_config_file_fails(self, tmp_path):
        assert main(["serve", "--config", str(tmp_path / "nope.yaml")]) == 1

    def test_serves_until_signal(self, capsys):
        port = free_port()
        handlers = {}
        result = {}

        def run():
            result["code"] = main([
                "serve", "--json",
                "--set", "api.rest.address=127.0.0.1",
                "--set", f"api.rest.port={port}",
            ])

        with patch("restapi.cli.signal.signal", side_effect=lambda sig, h: handlers.setdefault(sig, h)):
            thread = threading.Thread(target=run)
            thread.start()

            deadline = time.monotonic() + 10
            while signal.SIGTERM not in handlers and time.monotonic() < deadline:
                time.sleep(0.05)

            assert request(port)[0] == 200

            handlers[signal.SIGTERM](signal.SIGTERM, None)
            thread.join(10)

        assert result["code"] == 0
        info = json.loads(capsys.readouterr().out)
        assert info["url"] == f"http://127.0.0.1:{port}"
        assert info["auth"] is False
        with pytest.raises(requests.exceptions.ConnectionError):
            request(port, timeout=2)


class TestProbe:
    """Tests for the probe command."""

    def test_probe_running_api(self, make_api, capsys):
        api = make_api()
        api.start()
        host, port = api.server_address

        assert main(["probe", f"http://{host}:{port}"]) == 0
        assert "API accessible" in capsys.readouterr().out

    def test_probe_requires_auth(self, make_api, capsys):
        api = make_api(username="admin", password="secret")
        api.start()
        host, port = api.server_address

        assert main(["probe", f"http://{host}:{port}"]) == 1
        assert main(["probe", f"http://{host}:{port}", "-u", "admin", "-p", "secret"]) == 0

    def test_probe_unreachable(self, capsys):
        assert main(["probe", f"http://127.0.0.1:{free_port()}"]) == 1
        assert "Cannot connect" in capsys.readouterr().out
