from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from autosave import STATUS_IDLE, STATUS_SAVED, STATUS_SAVING, AsyncioTimerFactory, AutosaveScheduler  # noqa: E402
from errors import WriteError  # noqa: E402


class FlushRecorder:
    def __init__(self) -> None:
        self.calls = 0
        self.fail_with = None

    def __call__(self) -> None:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with


@pytest.fixture()
def flush() -> FlushRecorder:
    return FlushRecorder()


@pytest.fixture()
def scheduler(flush, timers) -> AutosaveScheduler:
    return AutosaveScheduler(flush, timers)


def test_burst_of_edits_flushes_once(scheduler, flush, timers) -> None:
    for _ in range(5):
        scheduler.notify_edit()
        timers.advance(0.5)

    assert flush.calls == 0
    assert scheduler.pending

    timers.advance(0.5)

    assert flush.calls == 1
    assert scheduler.status == STATUS_SAVED
    assert not scheduler.pending


def test_saved_status_reverts_to_idle(scheduler, timers) -> None:
    scheduler.notify_edit()
    timers.advance(1.0)
    assert scheduler.status == STATUS_SAVED

    timers.advance(1.5)
    assert scheduler.status == STATUS_SAVED
    timers.advance(0.5)
    assert scheduler.status == STATUS_IDLE


def test_listeners_see_every_transition(scheduler, timers) -> None:
    seen = []
    scheduler.add_listener(seen.append)

    scheduler.notify_edit()
    timers.advance(3.0)

    assert seen == [STATUS_SAVING, STATUS_SAVED, STATUS_IDLE]


def test_failed_flush_returns_to_idle_without_raising(scheduler, flush, timers, caplog) -> None:
    flush.fail_with = WriteError("store unavailable")

    scheduler.notify_edit()
    with caplog.at_level("WARNING"):
        timers.advance(1.0)

    assert flush.calls == 1
    assert scheduler.status == STATUS_IDLE
    assert "Autosave failed" in caplog.text


def test_unexpected_errors_propagate(scheduler, flush) -> None:
    flush.fail_with = RuntimeError("bug")

    with pytest.raises(RuntimeError):
        scheduler.flush_now()

    assert scheduler.status == STATUS_IDLE


def test_autosave_resumes_after_unexpected_error(scheduler, flush, timers) -> None:
    flush.fail_with = RuntimeError("bug")
    with pytest.raises(RuntimeError):
        scheduler.flush_now()

    flush.fail_with = None
    scheduler.notify_edit()
    timers.advance(1.0)

    assert flush.calls == 2
    assert scheduler.status == STATUS_SAVED
    assert not scheduler.pending


def test_no_pending_work_skips_flush(flush, timers) -> None:
    scheduler = AutosaveScheduler(flush, timers, has_pending_work=lambda: False)

    scheduler.notify_edit()
    timers.advance(5)

    assert flush.calls == 0
    assert scheduler.status == STATUS_IDLE


def test_cancel_drops_pending_timer(scheduler, flush, timers) -> None:
    scheduler.notify_edit()
    scheduler.cancel()
    timers.advance(5)

    assert flush.calls == 0
    assert not scheduler.pending


def test_flush_requested_while_saving_is_deferred(timers) -> None:
    calls = []
    scheduler = None

    def flush() -> None:
        calls.append(scheduler.status)
        if len(calls) == 1:
            assert scheduler.run_flush() is False

    scheduler = AutosaveScheduler(flush, timers)

    assert scheduler.flush_now() is True
    assert calls == [STATUS_SAVING]
    assert scheduler.pending

    timers.advance(1.0)

    assert len(calls) == 2


def test_shutdown_flushes_pending_edit_once(scheduler, flush, timers) -> None:
    scheduler.notify_edit()

    assert scheduler.shutdown() is True
    timers.advance(5)

    assert flush.calls == 1
    assert not timers.active()


def test_custom_durations(flush, timers) -> None:
    scheduler = AutosaveScheduler(flush, timers, quiescence_seconds=0.25, saved_display_seconds=0.5)

    scheduler.notify_edit()
    timers.advance(0.25)
    assert flush.calls == 1
    timers.advance(0.5)
    assert scheduler.status == STATUS_IDLE


def test_asyncio_timer_factory_runs_on_loop() -> None:
    async def scenario():
        fired = asyncio.Event()
        handle = AsyncioTimerFactory()(0.01, fired.set)
        await asyncio.wait_for(fired.wait(), timeout=1.0)
        cancelled = AsyncioTimerFactory()(0.01, lambda: pytest.fail("cancelled timer fired"))
        cancelled.cancel()
        await asyncio.sleep(0.05)
        return handle

    assert asyncio.run(scenario()) is not None
