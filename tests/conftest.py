"""Shared fixtures: status payloads, a scripted provider and hand-driven timers."""

import asyncio
import copy
import threading
from typing import Any, Callable, Optional

import pytest

from tailscale_tui.models import CommandResult, StatusSnapshot

ALPHA_ID = "nAlpha"
BRAVO_ID = "nBravo"


def make_peer(node_id: str, hostname: str, *, user_id: int = 2, exit_option: bool = True, online=True, **extra) -> dict:
    peer = {
        "ID": node_id,
        "PublicKey": f"nodekey:{node_id}",
        "HostName": hostname,
        "DNSName": f"{hostname}.example.ts.net.",
        "OS": "linux",
        "UserID": user_id,
        "TailscaleIPs": ["100.64.0.10"],
        "Created": "2024-01-01T00:00:00Z",
        "LastSeen": "2024-01-02T00:00:00Z",
        "ExitNode": False,
        "ExitNodeOption": exit_option,
    }
    if online is not None:
        peer["Online"] = online
    peer.update(extra)
    return peer


def make_payload(*peers: dict, self_option: bool = False) -> dict:
    return {
        "Version": "1.72.1",
        "BackendState": "Running",
        "TailscaleIPs": ["100.64.0.1"],
        "Self": {
            "ID": "nSelf",
            "HostName": "laptop",
            "OS": "linux",
            "UserID": 1,
            "TailscaleIPs": ["100.64.0.1"],
            "Online": True,
            "ExitNodeOption": self_option,
        },
        "Peer": {f"nodekey:{peer['ID']}": peer for peer in peers},
        "User": {
            "1": {"ID": 1, "LoginName": "me@example.com", "DisplayName": "Me"},
            "2": {"ID": 2, "LoginName": "ops@example.com", "DisplayName": "Ops"},
        },
        "CurrentTailnet": {"Name": "example.ts.net", "MagicDNSSuffix": "example.ts.net", "MagicDNSEnabled": True},
        "MagicDNSEnabled": True,
    }


def two_exit_nodes() -> dict:
    return make_payload(make_peer(ALPHA_ID, "alpha"), make_peer(BRAVO_ID, "bravo"))


class FakeProvider:
    """Records calls; answers from a payload the test can swap at any time.

    Set `gate` to a threading.Event to hold every call until the test releases it.
    With `apply_changes` off the daemon accepts commands but keeps its old selection.
    """

    includes_self = True

    def __init__(self, payload: Optional[dict] = None) -> None:
        self.payload = payload
        self.active: Optional[str] = None
        self.apply_changes = True
        self.results: dict[str, CommandResult] = {}
        self.ping_result = CommandResult(success=True, output="pong from alpha (100.64.0.10) via DERP(fra) in 42ms")
        self.gate: Optional[threading.Event] = None
        self.calls: list[tuple[Any, ...]] = []

    def _wait(self) -> None:
        if self.gate is not None:
            self.gate.wait(timeout=5)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def get_status(self) -> Optional[StatusSnapshot]:
        self.calls.append(("status",))
        self._wait()
        if self.payload is None:
            return None
        payload = copy.deepcopy(self.payload)
        if self.active is not None:
            payload["ExitNodeStatus"] = {"ID": self.active, "Online": True}
        return StatusSnapshot.from_json(payload)

    def set_exit_node(self, node_id: str) -> CommandResult:
        self.calls.append(("set", node_id))
        self._wait()
        result = self.results.get(node_id, CommandResult(success=True))
        if result.success and self.apply_changes:
            self.active = node_id
        return result

    def unset_exit_node(self) -> CommandResult:
        self.calls.append(("unset",))
        self._wait()
        result = self.results.get("unset", CommandResult(success=True))
        if result.success and self.apply_changes:
            self.active = None
        return result

    def ping(self, target: str) -> CommandResult:
        self.calls.append(("ping", target))
        self._wait()
        return self.ping_result


class ManualTimer:
    def __init__(self, interval: float, callback: Callable[[], None], repeating: bool) -> None:
        self.interval = interval
        self.callback = callback
        self.repeating = repeating
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True

    def fire(self) -> None:
        if self.stopped:
            return
        if not self.repeating:
            self.stopped = True
        self.callback()


class ManualScheduler:
    """Timers that only fire when a test says so."""

    def __init__(self) -> None:
        self.timers: list[ManualTimer] = []

    def every(self, interval: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(interval, callback, repeating=True)
        self.timers.append(timer)
        return timer

    def after(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(delay, callback, repeating=False)
        self.timers.append(timer)
        return timer

    def pending(self, repeating: bool) -> list[ManualTimer]:
        return [timer for timer in self.timers if not timer.stopped and timer.repeating is repeating]


async def pump(machine, timeout: float = 3.0) -> None:
    """Feed queued actions to the machine until it has nothing left to do."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        while not machine._queue.empty():
            machine.handle(machine._queue.get_nowait())
        if not machine.is_busy:
            return
        if loop.time() > deadline:
            raise AssertionError(f"machine still busy in phase {machine.phase}")
        await asyncio.sleep(0.005)


async def pump_until(machine, predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        while not machine._queue.empty():
            machine.handle(machine._queue.get_nowait())
        if predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def provider():
    return FakeProvider(two_exit_nodes())


@pytest.fixture
def scheduler():
    return ManualScheduler()
