"""In-memory tailnet used by --mock and the test suite."""

import copy
import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tailscale_tui.models import CommandResult, ExitNodeCandidate, StatusSnapshot
from tailscale_tui.services.exit_nodes import derive_exit_nodes


def _iso(delta: timedelta = timedelta()) -> str:
    return (datetime.now(timezone.utc) - delta).strftime("%Y-%m-%dT%H:%M:%SZ")


def mock_status_payload() -> dict[str, Any]:
    """A `tailscale status --json` shaped payload for a small demo tailnet."""
    return {
        "Version": "1.72.1-dev-mock",
        "TUN": True,
        "BackendState": "Running",
        "AuthURL": "",
        "TailscaleIPs": ["100.64.1.100", "fd7a:115c:a1e0::ab12:4843"],
        "Self": {
            "ID": "n1234567890abcdef",
            "PublicKey": "nodekey:mock1234567890abcdef",
            "HostName": "mock-local-node",
            "DNSName": "mock-local.example.ts.net.",
            "OS": "linux",
            "UserID": 1,
            "TailscaleIPs": ["100.64.1.100", "fd7a:115c:a1e0::ab12:4843"],
            "Created": _iso(timedelta(days=1)),
            "LastSeen": _iso(),
            "Online": True,
            "ExitNode": False,
            "ExitNodeOption": False,
            "Active": True,
        },
        "Peer": {
            "nodekey:peer1": {
                "ID": "nPeer1234567",
                "PublicKey": "nodekey:peer1",
                "HostName": "exit-node-us-west",
                "DNSName": "exit-us-west.example.ts.net.",
                "OS": "linux",
                "UserID": 2,
                "TailscaleIPs": ["100.64.1.101"],
                "Created": _iso(timedelta(days=2)),
                "LastSeen": _iso(),
                "Online": True,
                "ExitNode": False,
                "ExitNodeOption": True,
                "Active": True,
                "Location": {
                    "Country": "United States",
                    "CountryCode": "US",
                    "City": "San Francisco",
                    "CityCode": "SFO",
                    "Priority": 1,
                },
            },
            "nodekey:peer2": {
                "ID": "nPeer2345678",
                "PublicKey": "nodekey:peer2",
                "HostName": "server-eu-central",
                "DNSName": "server-eu.example.ts.net.",
                "OS": "linux",
                "UserID": 2,
                "TailscaleIPs": ["100.64.1.102"],
                "Created": _iso(timedelta(days=3)),
                "LastSeen": _iso(timedelta(hours=1)),
                "Online": True,
                "ExitNode": False,
                "ExitNodeOption": True,
                "Active": False,
                "Location": {
                    "Country": "Germany",
                    "CountryCode": "DE",
                    "City": "Frankfurt",
                    "CityCode": "FRA",
                    "Priority": 2,
                },
            },
            "nodekey:peer3": {
                "ID": "nPeer3456789",
                "PublicKey": "nodekey:peer3",
                "HostName": "mobile-device",
                "DNSName": "phone.example.ts.net.",
                "OS": "iOS",
                "UserID": 1,
                "TailscaleIPs": ["100.64.1.103"],
                "Created": _iso(timedelta(days=1)),
                "LastSeen": _iso(timedelta(hours=2)),
                "Online": False,
                "ExitNode": False,
                "ExitNodeOption": False,
                "Active": False,
            },
        },
        "User": {
            "1": {
                "ID": 1,
                "LoginName": "user@example.com",
                "DisplayName": "Test User",
                "ProfilePicURL": "https://example.com/avatar.jpg",
            },
            "2": {
                "ID": 2,
                "LoginName": "admin@example.com",
                "DisplayName": "Admin User",
                "ProfilePicURL": "https://example.com/admin.jpg",
            },
        },
        "CurrentTailnet": {
            "Name": "example.ts.net",
            "MagicDNSSuffix": ".example.ts.net.",
            "MagicDNSEnabled": True,
        },
        "MagicDNSSuffix": ".example.ts.net.",
        "MagicDNSEnabled": True,
    }


class MockTailscaleClient:
    includes_self = False

    def __init__(self, command_delay: float = 0.5, payload: Optional[dict[str, Any]] = None) -> None:
        self.command_delay = command_delay
        self._payload = payload if payload is not None else mock_status_payload()
        self._active_exit_node: Optional[str] = None
        self._network_error = False
        self._lock = threading.Lock()

    def _delay(self) -> None:
        if self.command_delay > 0:
            time.sleep(self.command_delay)

    def _peer_by_id(self, node_id: str) -> Optional[dict[str, Any]]:
        for peer in self._payload.get("Peer", {}).values():
            if peer.get("ID") == node_id:
                return peer
        return None

    def get_status(self) -> Optional[StatusSnapshot]:
        self._delay()
        with self._lock:
            if self._network_error:
                return None
            payload = copy.deepcopy(self._payload)
            active = self._active_exit_node
        peers = payload.get("Peer", {})
        for peer in peers.values():
            peer["ExitNode"] = active is not None and peer.get("ID") == active
        payload["Self"]["ExitNode"] = active is not None
        if active is not None:
            payload["ExitNodeStatus"] = {"ID": active, "Online": True}
        return StatusSnapshot.from_json(payload)

    def get_exit_nodes(self) -> list[ExitNodeCandidate]:
        status = self.get_status()
        if status is None:
            return []
        return derive_exit_nodes(status, status.active_exit_node_id(), include_self=self.includes_self)

    def set_exit_node(self, node_id: str) -> CommandResult:
        self._delay()
        with self._lock:
            peer = self._peer_by_id(node_id)
            if peer is None or not peer.get("ExitNodeOption"):
                return CommandResult.failure("Exit node not found or not available")
            self._active_exit_node = node_id
            return CommandResult(success=True, output=f"Exit node set to {peer.get('HostName')}")

    def unset_exit_node(self) -> CommandResult:
        self._delay()
        with self._lock:
            self._active_exit_node = None
        return CommandResult(success=True, output="Exit node unset")

    def ping(self, target: str) -> CommandResult:
        self._delay()
        responses = [
            f"pong from {target} via DERP(lax) in 45ms",
            f"pong from {target} direct in 12ms",
            f"pong from {target} via relay in 78ms",
        ]
        return CommandResult(success=True, output=random.choice(responses))

    def set_command_delay(self, seconds: float) -> None:
        self.command_delay = seconds

    def simulate_offline_node(self, node_id: str) -> None:
        with self._lock:
            peer = self._peer_by_id(node_id)
            if peer is not None:
                peer["Online"] = False
                peer["LastSeen"] = _iso(timedelta(days=1))

    def simulate_network_error(self, enabled: bool = True) -> None:
        """While enabled, get_status behaves like an unreachable daemon."""
        with self._lock:
            self._network_error = enabled
