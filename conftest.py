"""
Shared fixtures: an isolated data directory, a paused in-memory
APScheduler, a temporary schedule store and a controllable clock.
"""

from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from config import Config
from models import Frequency, MessagePayload, PeriodUnit, RecurrenceDefinition
from store import ScheduleStore
from transport import SendResult


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime):
        self.now = now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeAction:
    """Records sends instead of delivering them"""

    def __init__(self, error: Exception = None):
        self.error = error
        self.sent = []

    def perform(self, definition):
        if self.error:
            raise self.error
        self.sent.append(definition.id)
        return SendResult(destination=definition.payload.recipient, parts=1)


def make_definition(hour=9, minute=0, frequency=Frequency.DAILY, recurring=True,
                    anchor=None, period=1, unit=PeriodUnit.DAYS, enabled=True,
                    recipient="+15550100", message="Good morning!"):
    return RecurrenceDefinition(
        target_hour=hour,
        target_minute=minute,
        payload=MessagePayload(recipient=recipient, message=message, contact_name="Sam"),
        frequency=frequency,
        is_recurring=recurring,
        custom_period=period,
        custom_unit=unit,
        is_enabled=enabled,
        anchor_timestamp=anchor or datetime(2024, 1, 1, tzinfo=timezone.utc)
    )


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep every test away from ~/.cadence"""
    data_dir = tmp_path / "cadence"
    monkeypatch.setenv("CADENCE_DATA_DIR", str(data_dir))
    for name in ("CADENCE_TIMEZONE", "CADENCE_SCHEDULER_CONFIG", "CADENCE_PID_FILE", "CADENCE_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(Config, "_instance", None)
    return data_dir


@pytest.fixture
def scheduler():
    sched = BackgroundScheduler(jobstores={'default': MemoryJobStore()}, timezone=timezone.utc)
    sched.start(paused=True)
    yield sched
    sched.shutdown(wait=False)


@pytest.fixture
def store(tmp_path):
    return ScheduleStore(tmp_path / "schedules.db")


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 10, 7, 0, tzinfo=timezone.utc))
