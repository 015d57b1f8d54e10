"""Refresh loop and reconciliation of exit node changes.

All AppState mutations happen in `AppStateMachine.handle`, which is only ever
called from the single control loop in `run`. Provider calls execute in the
default thread pool and report back by posting a completion action, so the
loop itself never blocks on the daemon.
"""

import asyncio
import functools
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from tailscale_tui.actions import (
    EgressCheckCompleted,
    EgressCheckRequested,
    ExitNodeIntent,
    MutationCompleted,
    PingCompleted,
    PingRequested,
    QuitRequested,
    RefreshCompleted,
    RefreshRequested,
    SelectCandidate,
    SettleElapsed,
    SwitchView,
    TimerTick,
)
from tailscale_tui.config import DEFAULT_CALL_DEADLINE, DEFAULT_REFRESH_INTERVAL, DEFAULT_SETTLE_DELAY
from tailscale_tui.models import (
    NOT_CONNECTED_MESSAGE,
    AppState,
    CommandResult,
    ErrorKind,
    ExitNodeCandidate,
    View,
)
from tailscale_tui.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from tailscale_tui.services.exit_nodes import derive_exit_nodes

logger = logging.getLogger(__name__)

OPERATOR_HINT = "Hint: run 'sudo tailscale set --operator=$USER' to manage Tailscale without sudo"


class Phase(str, Enum):
    """What currently holds the single provider slot."""

    IDLE = "idle"
    REFRESHING = "refreshing"
    MUTATING = "mutating"
    PINGING = "pinging"


class AppStateMachine:
    """Single writer of AppState, driven by actions posted to one queue."""

    def __init__(
        self,
        provider: Any,
        scheduler: Optional[Scheduler] = None,
        *,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        call_deadline: float = DEFAULT_CALL_DEADLINE,
        egress: Any = None,
        on_change: Optional[Callable[[AppState], None]] = None,
        on_quit: Optional[Callable[[], None]] = None,
    ) -> None:
        self.provider = provider
        self.scheduler = scheduler or AsyncioScheduler()
        self.refresh_interval = refresh_interval
        self.settle_delay = settle_delay
        self.call_deadline = call_deadline
        self.egress = egress
        self.on_change = on_change
        self.on_quit = on_quit

        self.state = AppState()
        self.phase = Phase.IDLE
        self.active_exit_node_id: Optional[str] = None
        self.closed = False

        self._queue: asyncio.Queue = asyncio.Queue()
        self._deferred: deque = deque()
        self._tasks: set[asyncio.Task] = set()
        self._timer: Optional[TimerHandle] = None
        self._settle_timer: Optional[TimerHandle] = None
        self._awaiting_settle = False
        self._settle_due = False
        self._requested_id: Optional[str] = None
        self._inflight_id: Optional[str] = None
        self._egress_pending = False
        self._connected = False

    # -- lifecycle -------------------------------------------------------

    def start(self, banner: str = "Starting Tailscale TUI...") -> None:
        """Log the banner, request the first refresh and start the refresh timer."""
        self._notify(banner)
        self.post(RefreshRequested())
        self._timer = self.scheduler.every(self.refresh_interval, lambda: self.post(TimerTick()))
        self._emit()

    def stop(self) -> None:
        """Stop timers and ignore any further actions."""
        self.closed = True
        for handle in (self._timer, self._settle_timer):
            if handle is not None:
                handle.stop()
        self._timer = None
        self._settle_timer = None

    def post(self, action: object) -> None:
        """Queue an action for the control loop."""
        self._queue.put_nowait(action)

    async def run(self) -> None:
        """Consume actions until QuitRequested."""
        while True:
            action = await self._queue.get()
            try:
                self.handle(action)
            except Exception:
                logger.exception("Failed to handle %r", action)
            if isinstance(action, QuitRequested):
                return

    @property
    def is_busy(self) -> bool:
        """True while any provider work is running, queued or deferred."""
        return (
            self.phase is not Phase.IDLE
            or bool(self._tasks)
            or bool(self._deferred)
            or not self._queue.empty()
        )

    # -- dispatch --------------------------------------------------------

    def handle(self, action: object) -> None:
        """Apply one action to the state and notify the renderer."""
        if isinstance(action, QuitRequested):
            self.stop()
            if self.on_quit is not None:
                self.on_quit()
            return
        if self.closed:
            logger.debug("Ignoring %r after shutdown", action)
            return

        if isinstance(action, (TimerTick, RefreshRequested)):
            self._on_refresh_requested(action)
        elif isinstance(action, RefreshCompleted):
            self._on_refresh_completed(action)
        elif isinstance(action, SelectCandidate):
            self._on_select(action)
        elif isinstance(action, MutationCompleted):
            self._on_mutation_completed(action)
        elif isinstance(action, SettleElapsed):
            self._on_settle_elapsed()
        elif isinstance(action, SwitchView):
            self.state.current_view = View(action.view)
        elif isinstance(action, PingRequested):
            self._on_ping(action)
        elif isinstance(action, PingCompleted):
            self._on_ping_completed(action)
        elif isinstance(action, EgressCheckRequested):
            self._on_egress_requested()
        elif isinstance(action, EgressCheckCompleted):
            self._on_egress_completed(action)
        else:
            raise TypeError(f"unknown action: {action!r}")
        self._emit()

    # -- refresh ---------------------------------------------------------

    def _on_refresh_requested(self, action: object) -> None:
        """Start a refresh when idle; otherwise skip it."""
        if self.phase is not Phase.IDLE:
            # never pipeline refreshes, the next tick will try again
            logger.debug("Skipping %s, %s in progress", type(action).__name__, self.phase.value)
            return
        self._begin_refresh()

    def _begin_refresh(self, settle: bool = False) -> None:
        """Mark loading and start a status fetch."""
        self.phase = Phase.REFRESHING
        self.state.is_loading = True
        self._spawn(self._fetch_status(settle))

    async def _fetch_status(self, settle: bool) -> None:
        """Fetch status off the event loop and post the result."""
        try:
            status = await self._call(self.provider.get_status)
        except asyncio.TimeoutError:
            logger.warning("Status refresh exceeded %ss", self.call_deadline)
            status = None
        except Exception:
            logger.exception("Status provider raised")
            status = None
        self.post(RefreshCompleted(status=status, settle=settle))

    def _on_refresh_completed(self, action: RefreshCompleted) -> None:
        """Apply a finished refresh, reconciling the active exit node."""
        self.phase = Phase.IDLE
        self.state.is_loading = False
        if action.settle:
            self._awaiting_settle = False

        status = action.status
        if status is None:
            self.state.error = NOT_CONNECTED_MESSAGE
            self.state.is_stale = True
            if self._connected:
                self._notify("Lost connection to Tailscale, showing last known data")
            self._connected = False
        else:
            if not self._awaiting_settle:
                reported = status.active_exit_node_id()
                if action.settle and reported != self._requested_id:
                    self._notify(
                        f"Daemon reports exit node {self._name_for(reported)}, "
                        f"requested {self._name_for(self._requested_id)}"
                    )
                self.active_exit_node_id = reported
            self.state.status = status
            self.state.exit_nodes = self._derive()
            self.state.last_refresh = datetime.now()
            self.state.is_stale = False
            self.state.error = None
            self._connected = True
            self._notify(f"Refreshed at {self.state.last_refresh.strftime('%I:%M:%S %p')}")
        self._resume()

    def _on_settle_elapsed(self) -> None:
        """Refresh now, or as soon as the provider slot frees up."""
        self._settle_timer = None
        if self.phase is Phase.IDLE:
            self._begin_refresh(settle=True)
        else:
            self._settle_due = True

    # -- exit node changes -----------------------------------------------

    def _on_select(self, action: SelectCandidate) -> None:
        """Start, queue or coalesce an exit node selection."""
        node_id = action.node_id
        name = self._name_for(node_id)
        queued = any(isinstance(item, SelectCandidate) and item.node_id == node_id for item in self._deferred)
        if queued or (self.phase is Phase.MUTATING and self._inflight_id == node_id):
            self._notify(f"Exit node change for {name} already pending")
            return
        if self.phase is not Phase.IDLE:
            self._deferred.append(action)
            self._notify(f"Queued exit node change for {name}")
            return
        self._begin_mutation(node_id)

    def _begin_mutation(self, node_id: str) -> None:
        """Decide set or unset and start the command."""
        hostname = self._name_for(node_id)
        if self.active_exit_node_id is not None and node_id == self.active_exit_node_id:
            intent = ExitNodeIntent.UNSET
            self._notify(f"Unsetting exit node {hostname}...")
        else:
            intent = ExitNodeIntent.SET
            self._notify(f"Setting exit node to {hostname}...")
        self.phase = Phase.MUTATING
        self.state.is_loading = True
        self._inflight_id = node_id
        self._spawn(self._mutate(intent, node_id, hostname))

    async def _mutate(self, intent: ExitNodeIntent, node_id: str, hostname: str) -> None:
        """Run set or unset off the event loop."""
        if intent is ExitNodeIntent.UNSET:
            call = self.provider.unset_exit_node
        else:
            call = functools.partial(self.provider.set_exit_node, node_id)
        try:
            result = await self._call(call)
        except asyncio.TimeoutError:
            logger.warning("Exit node %s for %s exceeded %ss", intent.value, node_id, self.call_deadline)
            result = CommandResult.timed_out()
        except Exception as exc:
            logger.exception("Exit node %s raised", intent.value)
            result = CommandResult.failure(str(exc) or type(exc).__name__)
        self.post(MutationCompleted(intent=intent, node_id=node_id, hostname=hostname, result=result))

    def _on_mutation_completed(self, action: MutationCompleted) -> None:
        """Apply a finished set/unset and report it."""
        self.phase = Phase.IDLE
        self.state.is_loading = False
        self._inflight_id = None
        result = action.result

        if result.success:
            self.active_exit_node_id = action.node_id if action.intent is ExitNodeIntent.SET else None
            self._requested_id = self.active_exit_node_id
            if self.state.status is not None:
                self.state.exit_nodes = self._derive()
            if action.intent is ExitNodeIntent.UNSET:
                self._notify("Exit node unset successfully")
            else:
                self._notify(f"Exit node set to {action.hostname} successfully")
            self.state.egress = None
            if self.egress is not None:
                self.egress.invalidate()
            self._schedule_settle()
        else:
            logger.warning("Exit node %s failed (%s): %s", action.intent.value, result.exit_code, result.error)
            self._notify(f"Failed to change exit node: {result.error or 'Unknown error'}")
            if result.kind is ErrorKind.PERMISSION_DENIED:
                self._notify(OPERATOR_HINT)
            if self.state.status is not None:
                self.state.is_stale = True
        self._resume()

    def _schedule_settle(self) -> None:
        """(Re)arm the settle timer for a follow-up refresh."""
        # one follow-up refresh per burst of changes
        if self._settle_timer is not None:
            self._settle_timer.stop()
        self._settle_due = False
        self._awaiting_settle = True
        self._settle_timer = self.scheduler.after(self.settle_delay, lambda: self.post(SettleElapsed()))

    # -- diagnostics -----------------------------------------------------

    def _on_ping(self, action: PingRequested) -> None:
        """Ping now, or queue it behind the current work."""
        if any(isinstance(item, PingRequested) and item.target == action.target for item in self._deferred):
            return
        if self.phase is not Phase.IDLE:
            self._deferred.append(action)
            self._notify(f"Queued ping to {action.target}")
            return
        self._begin_ping(action.target)

    def _begin_ping(self, target: str) -> None:
        """Occupy the provider slot with a ping."""
        self.phase = Phase.PINGING
        self.state.is_loading = True
        self._notify(f"Pinging {target}...")
        self._spawn(self._run_ping(target))

    async def _run_ping(self, target: str) -> None:
        """Run the ping off the event loop."""
        try:
            result = await self._call(self.provider.ping, target)
        except asyncio.TimeoutError:
            result = CommandResult.timed_out()
        except Exception as exc:
            logger.exception("Ping raised")
            result = CommandResult.failure(str(exc) or type(exc).__name__)
        self.post(PingCompleted(target=target, result=result))

    def _on_ping_completed(self, action: PingCompleted) -> None:
        """Report the ping result and return to IDLE."""
        self.phase = Phase.IDLE
        self.state.is_loading = False
        result = action.result
        if result.success:
            lines = [line for line in result.output.splitlines() if line.strip()]
            self._notify(lines[0] if lines else f"Ping {action.target} succeeded")
        else:
            self._notify(f"Ping {action.target} failed: {result.error or 'Unknown error'}")
        self._resume()

    def _on_egress_requested(self) -> None:
        """Start a public IP lookup unless one is already running."""
        if self.egress is None:
            self._notify("Egress check is not available")
            return
        if self._egress_pending:
            return
        self._egress_pending = True
        self._notify("Checking public IP...")
        self._spawn(self._lookup_egress())

    async def _lookup_egress(self) -> None:
        """Look up the public IP off the event loop."""
        try:
            info = await self._call(self.egress.lookup)
        except asyncio.TimeoutError:
            info = None
        except Exception:
            logger.exception("Egress lookup raised")
            info = None
        self.post(EgressCheckCompleted(info=info))

    def _on_egress_completed(self, action: EgressCheckCompleted) -> None:
        """Store the lookup result and report it."""
        self._egress_pending = False
        self.state.egress = action.info
        if action.info is None:
            self._notify("Public IP lookup failed")
        else:
            self._notify(f"Public IP: {action.info.describe()}")

    # -- helpers ---------------------------------------------------------

    def _resume(self) -> None:
        """Start deferred work once the provider slot is free again."""
        if self.phase is not Phase.IDLE or self.closed:
            return
        if self._deferred:
            action = self._deferred.popleft()
            if isinstance(action, SelectCandidate):
                self._begin_mutation(action.node_id)
            else:
                self._begin_ping(action.target)
            return
        if self._settle_due:
            self._settle_due = False
            self._begin_refresh(settle=True)

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking provider call in the executor, bounded by the call deadline."""
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, func, *args), timeout=self.call_deadline)

    def _spawn(self, coro) -> None:
        """Run a coroutine in the background, tracked until it finishes."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _derive(self) -> list[ExitNodeCandidate]:
        """Recompute candidates against the snapshot and the active id."""
        if self.state.status is None:
            return []
        include_self = getattr(self.provider, "includes_self", True)
        return derive_exit_nodes(self.state.status, self.active_exit_node_id, include_self=include_self)

    def _candidate(self, node_id: Optional[str]) -> Optional[ExitNodeCandidate]:
        """Look up a candidate in the current exit node list."""
        for candidate in self.state.exit_nodes:
            if candidate.id == node_id:
                return candidate
        return None

    def _name_for(self, node_id: Optional[str]) -> str:
        """Hostname for a node id, falling back to the id itself."""
        if node_id is None:
            return "none"
        candidate = self._candidate(node_id)
        return candidate.hostname if candidate and candidate.hostname else node_id

    def _notify(self, message: str) -> None:
        """Append a timestamped entry to the notification log."""
        self.state.notifications.append(message)

    def _emit(self) -> None:
        """Hand a detached copy of the state to the renderer."""
        if self.on_change is not None:
            self.on_change(self.state.copy())
