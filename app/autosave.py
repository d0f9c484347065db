from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from errors import WriteError


logger = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_SAVING = "saving"
STATUS_SAVED = "saved"


class AsyncioTimerFactory:
    """Schedules callbacks on an asyncio loop; handles expose `cancel()`."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.loop = loop

    def __call__(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self.loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


class AutosaveScheduler:
    """Debounces edits into infrequent flushes.

    Each edit cancels the pending timer and arms a new one, so only the state
    after the last edit in a burst is written. A `WriteError` is logged and
    never reaches the editing caller. Any failure returns the status to idle,
    so the next edit can flush again.
    """

    def __init__(
        self,
        flush: Callable[[], None],
        timer_factory: Callable[[float, Callable[[], None]], Any],
        *,
        has_pending_work: Callable[[], bool] = lambda: True,
        quiescence_seconds: float = 1.0,
        saved_display_seconds: float = 2.0,
    ) -> None:
        self.flush = flush
        self.timer_factory = timer_factory
        self.has_pending_work = has_pending_work
        self.quiescence_seconds = quiescence_seconds
        self.saved_display_seconds = saved_display_seconds
        self._status = STATUS_IDLE
        self._timer = None
        self._revert_timer = None
        self._listeners: List[Callable[[str], None]] = []

    @property
    def status(self) -> str:
        return self._status

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        for listener in list(self._listeners):
            listener(status)

    def notify_edit(self) -> None:
        self.cancel()
        self._arm()

    def _arm(self) -> None:
        self._timer = self.timer_factory(self.quiescence_seconds, self._on_timer)
        logger.debug("Autosave armed for %.2fs", self.quiescence_seconds)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self.run_flush()

    def run_flush(self) -> bool:
        """Flush once if there is work; returns True when a write succeeded."""
        if self._status == STATUS_SAVING:
            # Never overlap flushes; retry after another quiet period.
            logger.debug("Flush already in flight; re-arming")
            if self._timer is None:
                self._arm()
            return False
        if not self.has_pending_work():
            return False
        self._cancel_revert()
        self._set_status(STATUS_SAVING)
        succeeded = False
        try:
            self.flush()
            succeeded = True
        except WriteError as exc:
            logger.warning("Autosave failed: %s", exc)
            return False
        finally:
            if not succeeded:
                self._set_status(STATUS_IDLE)
        self._set_status(STATUS_SAVED)
        self._revert_timer = self.timer_factory(self.saved_display_seconds, self._revert_to_idle)
        return True

    def flush_now(self) -> bool:
        self.cancel()
        return self.run_flush()

    def shutdown(self) -> bool:
        """Session-end hook: drop the pending timer and flush once, best effort."""
        self.cancel()
        flushed = self.run_flush()
        self._cancel_revert()
        return flushed

    def _cancel_revert(self) -> None:
        if self._revert_timer is not None:
            self._revert_timer.cancel()
            self._revert_timer = None

    def _revert_to_idle(self) -> None:
        self._revert_timer = None
        if self._status == STATUS_SAVED:
            self._set_status(STATUS_IDLE)
