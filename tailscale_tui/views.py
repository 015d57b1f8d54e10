"""Turn AppState into the rows and lines each view displays."""

from datetime import datetime
from typing import Optional

from tailscale_tui.models import ZERO_TIME, AppState, View
from tailscale_tui.services.exit_nodes import hostname_key

VIEW_TITLES = {
    View.LOCAL: "Local Node",
    View.PEERS: "Peers",
    View.EXIT_NODES: "Exit Nodes",
    View.DIAGNOSTICS: "Diagnostics",
}

LOCAL_COLUMNS = ("Property", "Value")
PEER_COLUMNS = ("Hostname", "OS", "Tailscale IPs", "Online", "Last Seen")
EXIT_NODE_COLUMNS = ("Hostname", "Owner", "OS", "Online", "Location", "Status")

ACTIVE_MARK = "● ACTIVE"
AVAILABLE_MARK = "○ Available"
OFFLINE_MARK = "× Offline"

HELP_TEXT = """Tailscale TUI Help

Navigation
  1, L       Local Node view
  2, P       Peers view
  3, E       Exit Nodes view
  4, D       Diagnostics view
  Tab        Next view
  Shift+Tab  Previous view

Actions
  R, F5      Manual refresh
  Enter      Select/Toggle exit node (Exit Nodes view)
  Space      Toggle exit node (Exit Nodes view)
  G          Ping exit node under cursor (Exit Nodes view)
  I          Check public IP (any view, result in Diagnostics)
  ↑ ↓        Navigate in tables

Other
  H, ?       Show this help
  Esc        Close help
  Q, Ctrl+C  Quit

Press Esc to close this help"""


def parse_timestamp(value: str) -> Optional[datetime]:
    if not value or value == ZERO_TIME:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_last_seen(value: str) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        return "Never"
    return parsed.astimezone().strftime("%Y-%m-%d %I:%M:%S %p")


def format_clock(value: Optional[datetime]) -> str:
    return value.strftime("%I:%M:%S %p") if value else "Never"


def yes_no(value: bool) -> str:
    return "Yes" if value else "No"


def header_text(state: AppState) -> str:
    status = state.status
    if status is None:
        title = "Tailscale TUI - No connection"
        if state.is_loading:
            title += "  |  [REFRESHING...]"
        return title
    stale = "[STALE] " if state.is_stale else ""
    loading = "[REFRESHING...] " if state.is_loading else ""
    tailnet = status.tailnet.name if status.tailnet and status.tailnet.name else "Unknown Tailnet"
    device = status.self_device.host_name or "Unknown Device"
    backend = status.backend_state or "Unknown"
    return (
        f"{tailnet} - {device}  |  State: {backend}  |  "
        f"{stale}{loading}Last: {format_clock(state.last_refresh)}"
    )


def banner_text(state: AppState) -> str:
    """Persistent error line shown while the daemon is unreachable."""
    if not state.error:
        return ""
    if state.status is None:
        return f"{state.error}. Is tailscaled running?"
    return f"{state.error}. Showing last known data."


def footer_text(view: View) -> str:
    name = VIEW_TITLES.get(view, "Unknown")
    if view is View.EXIT_NODES:
        keys = "[↑↓] Navigate  [Enter/Space] Toggle Exit Node  [G] Ping  [Tab] Switch View  [R/F5] Refresh  [H/?] Help  [Q] Quit"
    elif view is View.DIAGNOSTICS:
        keys = "[I] Public IP  [1-4/L,P,E,D] Views  [Tab] Navigate  [R/F5] Refresh  [H/?] Help  [Q] Quit"
    else:
        keys = "[1-4/L,P,E,D] Views  [Tab] Navigate  [R/F5] Refresh  [H/?] Help  [Q] Quit"
    return f"{name}  |  {keys}"


def local_rows(state: AppState) -> list[tuple[str, str]]:
    status = state.status
    if status is None:
        return [("Status", "Not connected")]
    me = status.self_device
    return [
        ("Hostname", me.host_name or "Unknown"),
        ("Tailscale IPs", ", ".join(me.tailscale_ips)),
        ("OS", me.os or "Unknown"),
        ("Backend State", status.backend_state or "Unknown"),
        ("Magic DNS", "Enabled" if status.magic_dns_enabled else "Disabled"),
        ("Exit Node", "Active" if me.exit_node or status.exit_node_status else "None"),
        ("Can Route", yes_no(me.exit_node_option)),
        ("Online", yes_no(me.is_online)),
        ("Version", status.version or "Unknown"),
    ]


def peer_rows(state: AppState) -> list[tuple[str, str, str, str, str]]:
    status = state.status
    if status is None:
        return []
    peers = sorted(status.peers.values(), key=lambda peer: hostname_key(peer.host_name))
    return [
        (
            peer.host_name or "Unknown",
            peer.os or "Unknown",
            ", ".join(peer.tailscale_ips[:2]),
            yes_no(peer.is_online),
            format_last_seen(peer.last_seen),
        )
        for peer in peers
    ]


def exit_node_rows(state: AppState) -> list[tuple[str, tuple[str, str, str, str, str, str]]]:
    """(candidate id, cells) pairs, in display order."""
    rows = []
    for node in state.exit_nodes:
        location = node.location.describe() if node.location else "Unknown"
        if node.is_active:
            mark = ACTIVE_MARK
        elif node.online:
            mark = AVAILABLE_MARK
        else:
            mark = OFFLINE_MARK
        rows.append((node.id, (node.hostname, node.owner, node.os, yes_no(node.online), location, mark)))
    return rows


def diagnostics_lines(state: AppState) -> list[str]:
    lines: list[str] = []
    if state.error:
        lines.append(f"ERROR: {state.error}")
    if state.egress is not None:
        lines.append(f"Public IP: {state.egress.describe()}")
    if lines:
        lines.append("")
    lines.extend(state.notifications)
    return lines
