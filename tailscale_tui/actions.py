"""Typed messages consumed by the state machine's control loop.

The renderer emits the user-facing actions; the machine posts the completion
actions to itself when a provider call returns.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tailscale_tui.models import CommandResult, EgressInfo, StatusSnapshot, View


class ExitNodeIntent(str, Enum):
    """Whether a mutation selects a node or clears the selection."""

    SET = "set"
    UNSET = "unset"


@dataclass(frozen=True)
class TimerTick:
    """Periodic refresh timer fired."""


@dataclass(frozen=True)
class RefreshRequested:
    """Operator asked for a refresh (R or F5)."""


@dataclass(frozen=True)
class SelectCandidate:
    """Operator confirmed a candidate in the exit node view."""

    node_id: str


@dataclass(frozen=True)
class SwitchView:
    """Show another view."""

    view: View


@dataclass(frozen=True)
class PingRequested:
    """Ping a peer by hostname or IP."""

    target: str


@dataclass(frozen=True)
class EgressCheckRequested:
    """Look up the public IP traffic currently leaves from."""


@dataclass(frozen=True)
class QuitRequested:
    """Stop timers and exit."""


@dataclass(frozen=True)
class RefreshCompleted:
    """Status fetch finished; status is None when the daemon was unreachable."""

    status: Optional[StatusSnapshot]
    settle: bool = False


@dataclass(frozen=True)
class MutationCompleted:
    """A set or unset command finished."""

    intent: ExitNodeIntent
    node_id: str
    hostname: str
    result: CommandResult


@dataclass(frozen=True)
class PingCompleted:
    """A ping finished."""

    target: str
    result: CommandResult


@dataclass(frozen=True)
class EgressCheckCompleted:
    """Public IP lookup finished; info is None on failure."""

    info: Optional[EgressInfo]


@dataclass(frozen=True)
class SettleElapsed:
    """Settle delay after an exit node change has passed."""
