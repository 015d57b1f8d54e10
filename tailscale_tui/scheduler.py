import asyncio
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def stop(self) -> None: ...


class Scheduler(Protocol):
    """Source of repeating and one-shot timers for the state machine."""

    def every(self, interval: float, callback: Callable[[], None]) -> TimerHandle: ...

    def after(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class _Repeating:
    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback: Callable[[], None]) -> None:
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = loop.call_later(interval, self._fire)

    def _fire(self) -> None:
        """Run the callback and reschedule."""
        if self._handle is None:
            return
        self._handle = self._loop.call_later(self._interval, self._fire)
        self._callback()

    def stop(self) -> None:
        """Cancel the next call; safe to repeat."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class _Once:
    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def stop(self) -> None:
        """Cancel the pending call."""
        self._handle.cancel()


class AsyncioScheduler:
    """Timers on the running asyncio loop; used outside of a Textual app."""

    def every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Call `callback` every `interval` seconds until stopped."""
        return _Repeating(asyncio.get_running_loop(), interval, callback)

    def after(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Call `callback` once after `delay` seconds."""
        return _Once(asyncio.get_running_loop().call_later(delay, callback))


class TextualScheduler:
    """Timers owned by a Textual message pump (App or Widget)."""

    def __init__(self, pump) -> None:
        self.pump = pump

    def every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Repeating timer on the pump."""
        return self.pump.set_interval(interval, callback)

    def after(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """One-shot timer on the pump."""
        return self.pump.set_timer(delay, callback)
