"""
Single write path for schedules.

Every mutation persists the change first and then brings the job chain in
line with the new state, under one lock so concurrent edits cannot
interleave between the store write and the chain update.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional

from models import RecurrenceDefinition
from scheduler.chain import JobChainManager, ReschedulingError

logger = logging.getLogger(__name__)


class ScheduleRepository:
    """Mutates schedules and keeps exactly one pending job per enabled schedule."""

    def __init__(self, store, chain: JobChainManager):
        self.store = store
        self.chain = chain
        self._lock = threading.RLock()

    def get(self, definition_id: str) -> Optional[RecurrenceDefinition]:
        return self.store.get(definition_id)

    def list_all(self) -> List[RecurrenceDefinition]:
        return self.store.list_all()

    def list_enabled(self) -> List[RecurrenceDefinition]:
        return self.store.list_enabled()

    def insert(self, definition: RecurrenceDefinition) -> str:
        """
        Store a new schedule and start its chain with a strict first start.

        Returns:
            The new schedule id
        """
        with self._lock:
            definition_id = self.store.insert(definition)
            stored = self.store.get(definition_id)
            if stored.is_enabled:
                self.chain.schedule_next(stored, catch_up=False)
            return definition_id

    def update(self, definition: RecurrenceDefinition):
        """
        Overwrite a schedule and re-arm its chain.

        The old pending job is cancelled before anything new is enqueued.
        A one-time schedule whose only job has already been taken by the
        executor, and whose time of day did not change, is treated as
        delivered and disabled instead of being sent again.
        """
        with self._lock:
            previous = self.store.get(definition.id)
            pending = self.chain.get_pending(definition.id)
            self.store.update(definition)
            self.chain.cancel(definition.id)

            if not definition.is_enabled:
                return

            if self._already_delivered(previous, definition, pending):
                logger.info(f"Schedule {definition.id} is a one-time send already in flight "
                            f"with unchanged time, disabling to prevent a duplicate")
                self.store.set_enabled(definition.id, False)
                return

            self.chain.schedule_next(self.store.get(definition.id), catch_up=True)

    def _already_delivered(self, previous: Optional[RecurrenceDefinition],
                           definition: RecurrenceDefinition,
                           pending: Optional[Dict[str, Any]]) -> bool:
        # An enabled one-time schedule always has a pending job until its
        # firing starts; the firing epilogue disables it afterwards
        if definition.is_recurring or previous is None:
            return False
        if previous.is_recurring or not previous.is_enabled:
            return False
        if (previous.target_hour, previous.target_minute) != \
                (definition.target_hour, definition.target_minute):
            return False
        return pending is None

    def delete(self, definition_id: str) -> bool:
        """
        Delete a schedule and cancel its pending job.

        Returns:
            True if the schedule existed
        """
        with self._lock:
            deleted = self.store.delete(definition_id)
            self.chain.cancel(definition_id)
            return deleted

    def set_enabled(self, definition_id: str, enabled: bool):
        """Toggle a schedule; re-enabling resumes the chain without a pause."""
        with self._lock:
            self.store.set_enabled(definition_id, enabled)
            self.chain.cancel(definition_id)
            if enabled:
                definition = self.store.get(definition_id)
                if definition is not None:
                    self.chain.schedule_next(definition, catch_up=True)

    def edit(self, definition_id: str, **changes) -> RecurrenceDefinition:
        """
        Apply field changes to a stored schedule.

        Raises:
            KeyError: If the schedule does not exist
        """
        with self._lock:
            current = self.store.get(definition_id)
            if current is None:
                raise KeyError(definition_id)
            updated = replace(current, **changes)
            self.update(updated)
            return self.store.get(definition_id)

    def reschedule_all_enabled(self) -> int:
        """
        Rebuild the job chain after a restart.

        Re-arms every enabled schedule in catch-up mode and drops pending
        jobs whose schedule is gone or disabled.

        Returns:
            Number of schedules re-armed
        """
        with self._lock:
            enabled = self.store.list_enabled()
            enabled_ids = {d.id for d in enabled}

            for definition_id in self.chain.pending_ids():
                if definition_id not in enabled_ids:
                    logger.info(f"Dropping orphaned job for schedule {definition_id}")
                    self.chain.cancel(definition_id)

            count = 0
            for definition in enabled:
                try:
                    self.chain.schedule_next(definition, catch_up=True)
                    count += 1
                except ReschedulingError as e:
                    logger.error(f"Failed to reschedule {definition.id}: {e}")

            logger.info(f"Rescheduled {count} of {len(enabled)} enabled schedule(s)")
            return count
