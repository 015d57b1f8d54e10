"""Tests for the CLI-backed TailscaleClient with subprocess patched out."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from conftest import ALPHA_ID, two_exit_nodes
from tailscale_tui.config import ConfigError
from tailscale_tui.models import ErrorKind
from tailscale_tui.services.tailscale import TailscaleClient


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def client():
    return TailscaleClient("tailscale", timeout=15.0)


class TestGetStatus:
    def test_parses_json(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   return_value=completed(stdout=json.dumps(two_exit_nodes()))) as run:
            status = client.get_status()
        assert status.self_device.host_name == "laptop"
        args, kwargs = run.call_args
        assert args[0] == ["tailscale", "status", "--json"]
        assert kwargs["timeout"] == 15.0
        assert kwargs["check"] is False

    def test_nonzero_exit_returns_none(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   return_value=completed(returncode=1, stderr="failed to connect to local tailscaled")):
            assert client.get_status() is None

    def test_bad_json_returns_none(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   return_value=completed(stdout="{not json")):
            assert client.get_status() is None

    def test_missing_binary_returns_none(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   side_effect=FileNotFoundError("tailscale")):
            assert client.get_status() is None

    def test_exit_nodes_include_capable_self(self, client):
        payload = two_exit_nodes()
        payload["Self"]["ExitNodeOption"] = True
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   return_value=completed(stdout=json.dumps(payload))):
            nodes = client.get_exit_nodes()
        assert "nSelf" in [node.id for node in nodes]


class TestExitNodeCommands:
    def test_set(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run", return_value=completed()) as run:
            result = client.set_exit_node(ALPHA_ID)
        assert result.success is True
        assert run.call_args[0][0] == ["tailscale", "exit-node", "set", ALPHA_ID]

    def test_unset(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run", return_value=completed()) as run:
            assert client.unset_exit_node().success is True
        assert run.call_args[0][0] == ["tailscale", "exit-node", "unset"]

    def test_failure_carries_stderr_and_code(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   return_value=completed(returncode=1, stderr="invalid exit node\n")):
            result = client.set_exit_node("nGhost")
        assert result.success is False
        assert result.error == "invalid exit node"
        assert result.exit_code == 1

    def test_timeout(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(cmd="tailscale", timeout=15.0)):
            result = client.set_exit_node(ALPHA_ID)
        assert result.error == "Command timed out"
        assert result.kind is ErrorKind.TIMEOUT

    def test_permission_denied_retries_with_sudo(self, client):
        responses = [
            completed(returncode=1, stderr="Access denied: prefs write access denied"),
            completed(),
        ]
        with patch("tailscale_tui.services.tailscale.subprocess.run", side_effect=responses) as run:
            result = client.set_exit_node(ALPHA_ID)
        assert result.success is True
        assert run.call_count == 2
        assert run.call_args_list[1][0][0] == ["sudo", "-n", "tailscale", "exit-node", "set", ALPHA_ID]

    def test_failed_sudo_retry_stays_a_permission_error(self, client):
        responses = [
            completed(returncode=1, stderr="Access denied: prefs write access denied"),
            completed(returncode=1, stderr="sudo: a password is required"),
        ]
        with patch("tailscale_tui.services.tailscale.subprocess.run", side_effect=responses):
            result = client.set_exit_node(ALPHA_ID)
        assert result.success is False
        assert result.kind is ErrorKind.PERMISSION_DENIED
        assert "a password is required" in result.error
        assert result.exit_code == 1

    def test_sudo_retry_timeout_is_reported_as_timeout(self, client):
        responses = [
            completed(returncode=1, stderr="permission denied"),
            subprocess.TimeoutExpired(cmd="sudo", timeout=15.0),
        ]
        with patch("tailscale_tui.services.tailscale.subprocess.run", side_effect=responses):
            result = client.unset_exit_node()
        assert result.kind is ErrorKind.TIMEOUT

    def test_other_failures_are_not_retried(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   return_value=completed(returncode=1, stderr="no such node")) as run:
            client.unset_exit_node()
        assert run.call_count == 1

    def test_ping(self, client):
        with patch("tailscale_tui.services.tailscale.subprocess.run",
                   return_value=completed(stdout="pong from alpha")) as run:
            result = client.ping("alpha")
        assert result.output == "pong from alpha"
        assert run.call_args[0][0] == ["tailscale", "ping", "--c", "1", "alpha"]


class TestCheckInstalled:
    def test_found(self, client):
        with patch("tailscale_tui.services.tailscale.shutil.which", return_value="/usr/bin/tailscale"):
            assert client.check_installed() == "/usr/bin/tailscale"

    def test_missing(self, client):
        with patch("tailscale_tui.services.tailscale.shutil.which", return_value=None):
            with pytest.raises(ConfigError):
                client.check_installed()
