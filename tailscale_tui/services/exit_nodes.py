import locale
import unicodedata
from typing import Optional

from tailscale_tui.models import Device, ExitNodeCandidate, StatusSnapshot


def _owner(device: Device, status: StatusSnapshot) -> str:
    user = status.users.get(device.user_id)
    if user is None:
        return "Unknown"
    return user.display_name or user.login_name or "Unknown"


def hostname_key(hostname: str) -> str:
    """Collation key: accents and case are ignored, then the process locale orders the rest."""
    decomposed = unicodedata.normalize("NFKD", hostname)
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()
    return locale.strxfrm(folded)


def _sort_key(candidate: ExitNodeCandidate) -> str:
    return hostname_key(candidate.hostname)


def to_candidate(device: Device, status: StatusSnapshot, active_id: Optional[str]) -> ExitNodeCandidate:
    return ExitNodeCandidate(
        id=device.id,
        hostname=device.host_name,
        owner=_owner(device, status),
        os=device.os or "Unknown",
        location=device.location,
        online=device.is_online,
        can_route=device.exit_node_option,
        is_active=active_id is not None and device.id == active_id,
        last_seen=device.last_seen or device.created,
    )


def derive_exit_nodes(
    status: StatusSnapshot,
    active_id: Optional[str] = None,
    include_self: bool = True,
) -> list[ExitNodeCandidate]:
    """Return exit-node capable devices sorted by hostname.

    `active_id` is the node the caller considers selected; it is the only input
    that decides `is_active`, the snapshot's own ExitNode flags are ignored here.
    """
    devices: list[Device] = []
    if include_self and status.self_device.exit_node_option:
        devices.append(status.self_device)
    devices.extend(peer for peer in status.peers.values() if peer.exit_node_option)
    candidates = [to_candidate(device, status, active_id) for device in devices]
    # sorted() is stable, equal hostnames keep iteration order
    return sorted(candidates, key=_sort_key)
