"""Shared fixtures for the monitoring core tests."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytz

from lonelycare.config import ClassifierSettings, MonitorSettings
from lonelycare.models import ActivityEvent, ActivitySource
from lonelycare.repository import InMemoryRepository, RepositoryError

SEOUL = pytz.timezone("Asia/Seoul")


def at(hour: int, minute: int = 0, second: int = 0, day: int = 10) -> datetime:
    return SEOUL.localize(datetime(2025, 3, day, hour, minute, second))


class FakeClock:
    """Settable clock for code that asks for 'now'."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyRepository(InMemoryRepository):
    """In-memory repository whose writes raise while `down` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RepositoryError("db down")

    def save_hour_bucket(self, bucket):
        self._check()
        super().save_hour_bucket(bucket)

    def append_history(self, entry):
        self._check()
        super().append_history(entry)

    def save_subject(self, status):
        self._check()
        super().save_subject(status)


def accel(t: datetime, magnitude: float) -> ActivityEvent:
    return ActivityEvent(source=ActivitySource.ACCELEROMETER, magnitude=magnitude, timestamp=t)


def touch(t: datetime) -> ActivityEvent:
    return ActivityEvent(source=ActivitySource.TOUCH, timestamp=t)


@pytest.fixture()
def t0() -> datetime:
    return at(9, 15)


@pytest.fixture()
def clock(t0: datetime) -> FakeClock:
    return FakeClock(t0)


@pytest.fixture()
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture()
def settings() -> MonitorSettings:
    return MonitorSettings(
        timezone="Asia/Seoul",
        retry_delay=timedelta(0),
        channel_timeout=timedelta(seconds=1),
        classifier=ClassifierSettings(),
    )
