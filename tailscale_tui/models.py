"""Typed records decoded from `tailscale status --json` plus the dashboard's own state."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

MAX_NOTIFICATIONS = 50
TIMEOUT_MESSAGE = "Command timed out"
NOT_CONNECTED_MESSAGE = "Failed to connect to Tailscale"
ZERO_TIME = "0001-01-01T00:00:00Z"

PERMISSION_MARKERS = ("permission denied", "access denied")


class View(str, Enum):
    LOCAL = "local"
    PEERS = "peers"
    EXIT_NODES = "exitnodes"
    DIAGNOSTICS = "diagnostics"


VIEW_ORDER = [View.LOCAL, View.PEERS, View.EXIT_NODES, View.DIAGNOSTICS]


class ErrorKind(str, Enum):
    COMMAND_FAILED = "command_failed"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"


def _as_str(value: object, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _as_bool(value: object) -> bool:
    return value is True


def _as_optional_bool(value: object) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    return None


def _as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _as_str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


@dataclass(frozen=True)
class Location:
    country: str = ""
    country_code: str = ""
    city: str = ""
    city_code: str = ""
    priority: int = 0

    @classmethod
    def from_json(cls, data: object) -> Optional["Location"]:
        if not isinstance(data, dict):
            return None
        return cls(
            country=_as_str(data.get("Country")),
            country_code=_as_str(data.get("CountryCode")),
            city=_as_str(data.get("City")),
            city_code=_as_str(data.get("CityCode")),
            priority=_as_int(data.get("Priority")),
        )

    def describe(self) -> str:
        parts = [part for part in (self.city, self.country) if part]
        return ", ".join(parts) if parts else "Unknown"


@dataclass(frozen=True)
class User:
    id: int
    login_name: str = ""
    display_name: str = ""
    profile_pic_url: str = ""

    @classmethod
    def from_json(cls, data: object, fallback_id: int = 0) -> Optional["User"]:
        if not isinstance(data, dict):
            return None
        return cls(
            id=_as_int(data.get("ID"), fallback_id),
            login_name=_as_str(data.get("LoginName")),
            display_name=_as_str(data.get("DisplayName")),
            profile_pic_url=_as_str(data.get("ProfilePicURL")),
        )


@dataclass(frozen=True)
class Device:
    id: str
    public_key: str = ""
    host_name: str = ""
    dns_name: str = ""
    os: str = ""
    user_id: int = 0
    tailscale_ips: tuple[str, ...] = ()
    online: Optional[bool] = None
    exit_node: bool = False
    exit_node_option: bool = False
    active: bool = False
    location: Optional[Location] = None
    relay: str = ""
    rx_bytes: int = 0
    tx_bytes: int = 0
    created: str = ""
    last_seen: str = ""

    @classmethod
    def from_json(cls, data: object) -> Optional["Device"]:
        if not isinstance(data, dict):
            return None
        return cls(
            id=_as_str(data.get("ID")),
            public_key=_as_str(data.get("PublicKey")),
            host_name=_as_str(data.get("HostName")),
            dns_name=_as_str(data.get("DNSName")),
            os=_as_str(data.get("OS")),
            user_id=_as_int(data.get("UserID")),
            tailscale_ips=tuple(_as_str_list(data.get("TailscaleIPs"))),
            online=_as_optional_bool(data.get("Online")),
            exit_node=_as_bool(data.get("ExitNode")),
            exit_node_option=_as_bool(data.get("ExitNodeOption")),
            active=_as_bool(data.get("Active")),
            location=Location.from_json(data.get("Location")),
            relay=_as_str(data.get("Relay")),
            rx_bytes=_as_int(data.get("RxBytes")),
            tx_bytes=_as_int(data.get("TxBytes")),
            created=_as_str(data.get("Created")),
            last_seen=_as_str(data.get("LastSeen")),
        )

    @property
    def is_online(self) -> bool:
        # A missing Online field is not the same as offline.
        return self.online is not False


@dataclass(frozen=True)
class Tailnet:
    name: str = ""
    magic_dns_suffix: str = ""
    magic_dns_enabled: bool = False

    @classmethod
    def from_json(cls, data: object) -> Optional["Tailnet"]:
        if not isinstance(data, dict):
            return None
        return cls(
            name=_as_str(data.get("Name")),
            magic_dns_suffix=_as_str(data.get("MagicDNSSuffix")),
            magic_dns_enabled=_as_bool(data.get("MagicDNSEnabled")),
        )


@dataclass(frozen=True)
class StatusSnapshot:
    self_device: Device
    peers: dict[str, Device] = field(default_factory=dict)
    users: dict[int, User] = field(default_factory=dict)
    tailnet: Optional[Tailnet] = None
    backend_state: str = ""
    version: str = ""
    tun: bool = False
    tailscale_ips: tuple[str, ...] = ()
    magic_dns_suffix: str = ""
    magic_dns_enabled: bool = False
    exit_node_status: Optional[str] = None

    @classmethod
    def from_json(cls, data: Any) -> "StatusSnapshot":
        """Decode a `tailscale status --json` payload.

        Raises ValueError when the payload is not an object or has no Self device.
        """
        if not isinstance(data, dict):
            raise ValueError("status payload is not a JSON object")
        self_device = Device.from_json(data.get("Self"))
        if self_device is None:
            raise ValueError("status payload has no Self device")

        peers: dict[str, Device] = {}
        raw_peers = data.get("Peer")
        if isinstance(raw_peers, dict):
            for key, raw in raw_peers.items():
                device = Device.from_json(raw)
                if device is not None:
                    peers[str(key)] = device

        users: dict[int, User] = {}
        raw_users = data.get("User")
        if isinstance(raw_users, dict):
            for key, raw in raw_users.items():
                user_id = _as_int(key, -1)
                user = User.from_json(raw, fallback_id=user_id)
                if user is None:
                    continue
                users[user_id if user_id >= 0 else user.id] = user

        exit_node_status = None
        raw_exit = data.get("ExitNodeStatus")
        if isinstance(raw_exit, dict) and raw_exit.get("ID"):
            exit_node_status = str(raw_exit["ID"])

        return cls(
            self_device=self_device,
            peers=peers,
            users=users,
            tailnet=Tailnet.from_json(data.get("CurrentTailnet")),
            backend_state=_as_str(data.get("BackendState")),
            version=_as_str(data.get("Version")),
            tun=_as_bool(data.get("TUN")),
            tailscale_ips=tuple(_as_str_list(data.get("TailscaleIPs"))),
            magic_dns_suffix=_as_str(data.get("MagicDNSSuffix")),
            magic_dns_enabled=_as_bool(data.get("MagicDNSEnabled")),
            exit_node_status=exit_node_status,
        )

    def active_exit_node_id(self) -> Optional[str]:
        """The exit node the daemon reports as selected, if any."""
        if self.exit_node_status:
            return self.exit_node_status
        for peer in self.peers.values():
            if peer.exit_node:
                return peer.id
        return None


@dataclass(frozen=True)
class ExitNodeCandidate:
    id: str
    hostname: str
    owner: str
    os: str
    location: Optional[Location]
    online: bool
    can_route: bool
    is_active: bool
    last_seen: str


@dataclass(frozen=True)
class CommandResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: int = 0

    @classmethod
    def failure(cls, error: str, exit_code: int = 1) -> "CommandResult":
        return cls(success=False, output="", error=error, exit_code=exit_code)

    @classmethod
    def timed_out(cls) -> "CommandResult":
        return cls.failure(TIMEOUT_MESSAGE)

    @property
    def kind(self) -> Optional[ErrorKind]:
        if self.success:
            return None
        message = (self.error or "").lower()
        if message == TIMEOUT_MESSAGE.lower():
            return ErrorKind.TIMEOUT
        if any(marker in message for marker in PERMISSION_MARKERS):
            return ErrorKind.PERMISSION_DENIED
        return ErrorKind.COMMAND_FAILED


@dataclass(frozen=True)
class EgressInfo:
    ip: str
    country: str = ""
    city: str = ""
    organization: str = ""

    def describe(self) -> str:
        where = ", ".join(part for part in (self.city, self.country) if part)
        details = " ".join(part for part in (where and f"({where})", self.organization) if part)
        return f"{self.ip} {details}".strip()


class NotificationLog:
    """Timestamped message log holding at most MAX_NOTIFICATIONS entries."""

    def __init__(self, entries: Iterable[str] = (), limit: int = MAX_NOTIFICATIONS) -> None:
        self._entries: deque[str] = deque(entries, maxlen=limit)

    def append(self, message: str, when: Optional[datetime] = None) -> str:
        stamp = (when or datetime.now()).strftime("%I:%M:%S %p")
        entry = f"[{stamp}] {message}"
        self._entries.append(entry)
        return entry

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def entries(self) -> list[str]:
        return list(self._entries)


@dataclass
class AppState:
    status: Optional[StatusSnapshot] = None
    exit_nodes: list[ExitNodeCandidate] = field(default_factory=list)
    last_refresh: Optional[datetime] = None
    is_stale: bool = False
    is_loading: bool = False
    error: Optional[str] = None
    current_view: View = View.LOCAL
    notifications: NotificationLog = field(default_factory=NotificationLog)
    egress: Optional[EgressInfo] = None

    def copy(self) -> "AppState":
        """Detached copy handed to the renderer."""
        return AppState(
            status=self.status,
            exit_nodes=list(self.exit_nodes),
            last_refresh=self.last_refresh,
            is_stale=self.is_stale,
            is_loading=self.is_loading,
            error=self.error,
            current_view=self.current_view,
            notifications=NotificationLog(self.notifications),
            egress=self.egress,
        )
