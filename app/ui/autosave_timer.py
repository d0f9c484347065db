from __future__ import annotations

from typing import Callable, Optional

from PySide6.QtCore import QObject, QTimer


class QtTimerHandle:
    """Single-shot QTimer wrapper exposing the `cancel()` the scheduler expects."""

    def __init__(self, delay: float, callback: Callable[[], None], parent: Optional[QObject] = None) -> None:
        self._timer = QTimer(parent)
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(callback)
        self._timer.start(max(0, int(round(delay * 1000))))

    @property
    def active(self) -> bool:
        return self._timer.isActive()

    def cancel(self) -> None:
        self._timer.stop()


class QtTimerFactory:
    """Timer factory for AutosaveScheduler inside a Qt event loop."""

    def __init__(self, parent: Optional[QObject] = None) -> None:
        self.parent = parent

    def __call__(self, delay: float, callback: Callable[[], None]) -> QtTimerHandle:
        return QtTimerHandle(delay, callback, self.parent)
