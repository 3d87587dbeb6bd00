"""
Job chain management on top of APScheduler.

Every enabled schedule owns exactly one pending one-shot ``date`` job,
keyed by the schedule id. Each firing enqueues the next link itself, so
the chain survives restarts through the persistent job store and never
accumulates drift (every link is recomputed from the schedule's anchor).
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, List, Optional

from apscheduler.jobstores.base import JobLookupError

from models import Frequency, RecurrenceDefinition
from scheduler.calculator import delay_until_next

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "message_"

# Textual reference so the SQLAlchemy job store can persist the callable
FIRE_CALLABLE = "scheduler.firing:fire_scheduled_message"


class ReschedulingError(Exception):
    """Raised when the next link of a chain could not be enqueued."""
    pass


def job_id_for(definition_id: str) -> str:
    """Dedup key of the pending job for a schedule"""
    return f"{JOB_ID_PREFIX}{definition_id}"


def definition_id_for(job_id: str) -> Optional[str]:
    """Schedule id encoded in a job id, or None for foreign jobs"""
    if not job_id.startswith(JOB_ID_PREFIX):
        return None
    return job_id[len(JOB_ID_PREFIX):]


class JobChainManager:
    """
    Enqueues and cancels the single pending job of each schedule.

    Args:
        scheduler: A started APScheduler scheduler
        clock: Returns the current aware datetime in the wall-clock zone
               schedules are interpreted in
    """

    def __init__(self, scheduler, clock: Callable[[], datetime]):
        self.scheduler = scheduler
        self.clock = clock

    def compute_delay(self, definition: RecurrenceDefinition, catch_up: bool,
                      now: Optional[datetime] = None) -> timedelta:
        """
        Delay until the link that ``schedule_next`` would enqueue.

        A strict start (``catch_up=False``) of an hour-based cadence waits
        for the next daily-anchored slot instead of joining the hourly
        sequence mid-way; the firing chain takes over hourly stepping from
        there. A catch-up start resumes the real cadence right away.
        """
        now = now or self.clock()
        frequency = None
        if not catch_up and definition.is_recurring and definition.is_hour_based:
            frequency = Frequency.DAILY
        return delay_until_next(definition, now, frequency)

    def schedule_next(self, definition: RecurrenceDefinition, catch_up: bool = True) -> datetime:
        """
        Enqueue the next link of a schedule's chain, superseding any pending one.

        Args:
            definition: Freshly read schedule
            catch_up: False for a brand new schedule, True for toggles,
                      edits, restarts and mid-chain continuation

        Returns:
            The instant the job is planned to fire

        Raises:
            ReschedulingError: If the executor rejected the job
        """
        now = self.clock()
        delay = self.compute_delay(definition, catch_up, now)
        run_at = now + delay
        job_id = job_id_for(definition.id)

        try:
            self.scheduler.add_job(
                FIRE_CALLABLE,
                'date',
                run_date=run_at,
                id=job_id,
                name=f"{definition.payload.contact_name or definition.payload.recipient} "
                     f"@ {definition.formatted_time()}",
                replace_existing=True,
                kwargs={
                    'definition_id': definition.id,
                    'intended_at': run_at.isoformat()
                }
            )
        except Exception as e:
            raise ReschedulingError(f"Failed to enqueue '{job_id}': {e}") from e

        logger.info(f"Scheduled '{job_id}' for {run_at.isoformat()} "
                    f"(in {delay}, catch_up={catch_up})")
        return run_at

    def cancel(self, definition_id: str) -> bool:
        """
        Remove the pending job of a schedule. Safe to call when none exists.

        A job that has already started firing is not interrupted.

        Returns:
            True if a pending job was removed
        """
        job_id = job_id_for(definition_id)
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"No pending job '{job_id}' to cancel")
            return False
        logger.info(f"Cancelled pending job '{job_id}'")
        return True

    def get_pending(self, definition_id: str) -> Optional[Dict[str, Any]]:
        """
        Pending job information for a schedule.

        Returns:
            Job information dictionary or None if nothing is pending
        """
        job = self.scheduler.get_job(job_id_for(definition_id))
        if not job:
            return None
        return {
            'id': job.id,
            'definition_id': definition_id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'intended_at': job.kwargs.get('intended_at')
        }

    def pending_ids(self) -> List[str]:
        """Ids of all schedules that currently have a pending job"""
        ids = []
        for job in self.scheduler.get_jobs():
            definition_id = definition_id_for(job.id)
            if definition_id is not None:
                ids.append(definition_id)
        return ids
