"""
End-to-end chain scenarios through the repository: create, fire, toggle,
edit, delete and restart recovery.
"""

from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from conftest import FakeAction, make_definition
from models import Frequency, parse_timestamp
from scheduler.chain import JobChainManager
from scheduler.firing import FiringHandler
from scheduler.repository import ScheduleRepository

UTC = timezone.utc


@pytest.fixture
def repository(store, scheduler, clock):
    return ScheduleRepository(store, JobChainManager(scheduler, clock))


def _intended(repository, definition_id):
    pending = repository.chain.get_pending(definition_id)
    return parse_timestamp(pending['intended_at']) if pending else None


def test_new_schedule_waits_for_first_slot(repository, clock):
    # clock: 07:00
    definition_id = repository.insert(make_definition(hour=8))

    assert _intended(repository, definition_id) - clock() == timedelta(hours=1)


def test_successful_firing_schedules_next_day(repository, store, clock):
    definition_id = repository.insert(make_definition(hour=8))
    handler = FiringHandler(store, repository.chain, FakeAction(), clock)

    clock.set(datetime(2024, 1, 10, 8, 0, 5, tzinfo=UTC))
    handler.handle(definition_id, datetime(2024, 1, 10, 8, 0, tzinfo=UTC))

    assert _intended(repository, definition_id) == datetime(2024, 1, 11, 8, 0, tzinfo=UTC)
    assert repository.chain.pending_ids() == [definition_id]


def test_toggle_off_and_on_leaves_one_job(repository, clock):
    definition_id = repository.insert(make_definition(hour=8))

    repository.set_enabled(definition_id, False)
    assert repository.chain.pending_ids() == []
    assert repository.get(definition_id).is_enabled is False

    repository.set_enabled(definition_id, True)
    repository.set_enabled(definition_id, True)
    assert repository.chain.pending_ids() == [definition_id]


def test_reenabling_hourly_schedule_catches_up(repository, clock):
    clock.set(datetime(2024, 1, 10, 9, 30, tzinfo=UTC))
    definition_id = repository.insert(make_definition(hour=8, frequency=Frequency.HOURLY))
    assert _intended(repository, definition_id) == datetime(2024, 1, 11, 8, 0, tzinfo=UTC)

    repository.set_enabled(definition_id, False)
    repository.set_enabled(definition_id, True)

    assert _intended(repository, definition_id) == datetime(2024, 1, 10, 10, 0, tzinfo=UTC)


def test_toggle_unknown_schedule_raises(repository):
    with pytest.raises(KeyError):
        repository.set_enabled("missing", True)


def test_insert_disabled_schedule_has_no_job(repository):
    definition_id = repository.insert(make_definition(enabled=False))

    assert repository.chain.get_pending(definition_id) is None


def test_edit_reschedules_to_new_time(repository, clock):
    definition_id = repository.insert(make_definition(hour=8))

    updated = repository.edit(definition_id, target_hour=18, target_minute=30)

    assert updated.target_hour == 18
    assert _intended(repository, definition_id) == datetime(2024, 1, 10, 18, 30, tzinfo=UTC)
    assert repository.chain.pending_ids() == [definition_id]


def test_edit_unknown_schedule_raises(repository):
    with pytest.raises(KeyError):
        repository.edit("missing", target_hour=10)


def test_edit_pending_one_time_schedule_keeps_its_job(repository, clock):
    definition_id = repository.insert(make_definition(
        hour=6, recurring=False, anchor=datetime(2024, 1, 10, tzinfo=UTC)
    ))
    # 06:00 today already passed, so the chain points at tomorrow
    assert _intended(repository, definition_id) == datetime(2024, 1, 11, 6, 0, tzinfo=UTC)

    clock.advance(minutes=5)
    repository.edit(definition_id, payload=make_definition(message="Updated").payload)

    assert repository.get(definition_id).is_enabled is True
    assert repository.get(definition_id).payload.message == "Updated"
    assert _intended(repository, definition_id) == datetime(2024, 1, 11, 6, 0, tzinfo=UTC)


def test_edit_one_time_schedule_while_sending_disables_it(repository, clock):
    definition_id = repository.insert(make_definition(
        hour=6, recurring=False, anchor=datetime(2024, 1, 10, tzinfo=UTC)
    ))
    # The executor has taken the only job and the send is in progress
    repository.chain.cancel(definition_id)

    repository.edit(definition_id, payload=make_definition(message="Updated").payload)

    assert repository.get(definition_id).is_enabled is False
    assert repository.chain.get_pending(definition_id) is None


def test_edit_one_time_schedule_with_new_time_rearms(repository, clock):
    definition_id = repository.insert(make_definition(
        hour=6, recurring=False, anchor=datetime(2024, 1, 10, tzinfo=UTC)
    ))

    repository.edit(definition_id, target_hour=10)

    assert repository.get(definition_id).is_enabled is True
    assert _intended(repository, definition_id) == datetime(2024, 1, 10, 10, 0, tzinfo=UTC)


def test_delete_cancels_pending_job(repository):
    definition_id = repository.insert(make_definition())

    assert repository.delete(definition_id) is True
    assert repository.chain.pending_ids() == []
    assert repository.delete(definition_id) is False


def test_recovery_after_restart(store, clock):
    # First run: two enabled schedules and one disabled
    first = BackgroundScheduler(jobstores={'default': MemoryJobStore()}, timezone=UTC)
    first.start(paused=True)
    repository = ScheduleRepository(store, JobChainManager(first, clock))
    daily = repository.insert(make_definition(hour=8))
    hourly = repository.insert(make_definition(hour=8, frequency=Frequency.HOURLY))
    repository.insert(make_definition(hour=8, enabled=False))
    first.shutdown(wait=False)

    # Reboot: the job store still holds a job for a schedule deleted meanwhile
    second = BackgroundScheduler(jobstores={'default': MemoryJobStore()}, timezone=UTC)
    second.start(paused=True)
    try:
        recovered = ScheduleRepository(store, JobChainManager(second, clock))
        stale = store.insert(make_definition(hour=12))
        recovered.chain.schedule_next(store.get(stale))
        store.delete(stale)
        clock.set(datetime(2024, 1, 10, 12, 20, tzinfo=UTC))

        assert recovered.reschedule_all_enabled() == 2
        assert sorted(recovered.chain.pending_ids()) == sorted([daily, hourly])
        # Catch-up: the hourly chain resumes at its real cadence
        assert _intended(recovered, hourly) == datetime(2024, 1, 10, 13, 0, tzinfo=UTC)
        assert _intended(recovered, daily) == datetime(2024, 1, 11, 8, 0, tzinfo=UTC)
    finally:
        second.shutdown(wait=False)
