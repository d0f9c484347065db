from __future__ import annotations

import datetime
import sys
from pathlib import Path
from typing import Callable, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, UserProfile, UserRole  # noqa: E402

UTC = datetime.timezone.utc


class ManualTimerHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.fired


class ManualTimers:
    """Deterministic timer factory; time only moves through `advance()`."""

    def __init__(self) -> None:
        self.now = 0.0
        self.handles: List[ManualTimerHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> ManualTimerHandle:
        handle = ManualTimerHandle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    def active(self) -> List[ManualTimerHandle]:
        return [handle for handle in self.handles if handle.active]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [handle for handle in self.active() if handle.due <= target]
            if not due:
                break
            handle = min(due, key=lambda item: item.due)
            self.now = handle.due
            handle.fired = True
            handle.callback()
        self.now = target


class FakeClock:
    def __init__(self, start: datetime.datetime) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def timers() -> ManualTimers:
    return ManualTimers()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime.datetime(2024, 3, 1, 9, 0, tzinfo=UTC))


def grant_roles(session_factory, user_id: str, *roles: str, full_name: str = "") -> None:
    with session_factory() as session:
        for role in roles:
            session.add(UserRole(user_id=user_id, role=role))
        if full_name:
            session.add(UserProfile(user_id=user_id, full_name=full_name))
        session.commit()
