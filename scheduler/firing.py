"""
Fire-time handling of scheduled messages.

A firing runs as a fresh, independent invocation keyed by schedule id:

1. Re-read the schedule (data captured at enqueue time may be stale).
2. Skip if it is gone or disabled.
3. Skip if the job is too late to still be relevant (staleness check).
4. Perform the action; any error makes this firing Failed.
5. Epilogue, always: re-read the schedule again and either enqueue the
   next link, disable a one-shot after its single firing, or do nothing.

Nothing raised on the firing path escapes to the executor; a broken send
must not break future occurrences.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Any, Optional, List

from config import get_config
from messaging import InvalidPayloadError
from models import RecurrenceDefinition, parse_timestamp
from transport import PermissionDeniedError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MINUTES = 120
MINUTES_PER_DAY = 24 * 60


class FiringOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class StalenessPolicy(str, Enum):
    ELAPSED = "elapsed"  # lateness measured from the intended instant
    TIME_OF_DAY = "time_of_day"  # circular distance between target and current clock time


@dataclass
class StalenessCheck:
    """
    Admission check for late firings.

    A firing exactly ``tolerance_minutes`` late is still admitted; anything
    later is stale.
    """
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES
    policy: StalenessPolicy = StalenessPolicy.ELAPSED

    def __post_init__(self):
        if not isinstance(self.policy, StalenessPolicy):
            self.policy = StalenessPolicy(self.policy)

    def lateness_minutes(self, definition: RecurrenceDefinition,
                         intended_at: datetime, now: datetime) -> float:
        if self.policy == StalenessPolicy.TIME_OF_DAY:
            target = definition.target_hour * 60 + definition.target_minute
            current = now.hour * 60 + now.minute
            diff = abs(current - target)
            return min(diff, MINUTES_PER_DAY - diff)
        elapsed = now.astimezone(timezone.utc) - intended_at.astimezone(timezone.utc)
        return elapsed / timedelta(minutes=1)

    def is_stale(self, definition: RecurrenceDefinition,
                 intended_at: datetime, now: datetime) -> bool:
        return self.lateness_minutes(definition, intended_at, now) > self.tolerance_minutes


class HistoryStore:
    """
    Persists firing outcomes to a JSON file.

    Each record contains:
    - definition_id: Schedule that fired
    - run_id: Unique firing identifier
    - intended_at: When the firing was planned (ISO format)
    - fired_at: When the firing actually ran (ISO format)
    - outcome: 'success', 'skipped' or 'failed'
    - detail: Reason for a skip or failure
    - parts: Number of message parts sent
    """

    def __init__(self, history_file: Path = None, max_entries: int = 1000):
        """
        Initialize history store.

        Args:
            history_file: Path to history JSON file (uses default if not specified)
            max_entries: Maximum number of history entries to keep
        """
        self.history_file = Path(history_file) if history_file else get_config().history_file
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        """Ensure the history file and its parent directory exist."""
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.history_file.exists():
            self._write_history([])

    def _read_history(self) -> List[Dict[str, Any]]:
        try:
            with open(self.history_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return []

    def _write_history(self, history: List[Dict[str, Any]]):
        with open(self.history_file, 'w') as f:
            json.dump(history, f, indent=2, default=str)

    def add_run(self, record: Dict[str, Any]):
        """
        Add a firing record to history, keeping the most recent entries.

        Args:
            record: Firing record dictionary
        """
        with self._lock:
            history = self._read_history()
            history.append(record)
            if len(history) > self.max_entries:
                history = history[-self.max_entries:]
            self._write_history(history)

    def get_history(
        self,
        definition_id: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get firing history with optional filters.

        Args:
            definition_id: Filter by schedule id
            outcome: Filter by outcome ('success', 'skipped', 'failed')
            limit: Maximum number of entries to return

        Returns:
            List of firing records (most recent first)
        """
        history = self._read_history()

        if definition_id:
            history = [r for r in history if r.get('definition_id') == definition_id]
        if outcome:
            history = [r for r in history if r.get('outcome') == outcome]

        history.sort(key=lambda r: r.get('fired_at', ''), reverse=True)

        if limit:
            history = history[:limit]
        return history

    def clear_history(self, definition_id: Optional[str] = None):
        """
        Clear history, optionally for a single schedule.

        Args:
            definition_id: If specified, only clear history for this schedule
        """
        with self._lock:
            if definition_id:
                history = [r for r in self._read_history()
                           if r.get('definition_id') != definition_id]
                self._write_history(history)
            else:
                self._write_history([])


class FiringHandler:
    """
    Runs one firing of a schedule and keeps its chain going.

    Args:
        store: Persistent schedule store
        chain: JobChainManager used to enqueue the next link
        action: Performs the send (``perform(definition)``)
        clock: Returns the current aware datetime in the schedules' wall-clock zone
        staleness: Admission check for late firings
        history: Optional firing history sink
    """

    def __init__(
        self,
        store,
        chain,
        action,
        clock: Callable[[], datetime],
        staleness: Optional[StalenessCheck] = None,
        history: Optional[HistoryStore] = None
    ):
        self.store = store
        self.chain = chain
        self.action = action
        self.clock = clock
        self.staleness = staleness or StalenessCheck()
        self.history = history

    def handle(self, definition_id: str, intended_at: datetime) -> FiringOutcome:
        """
        Run one firing.

        Args:
            definition_id: Schedule to fire
            intended_at: Instant the job was planned for

        Returns:
            Outcome of this firing
        """
        run_id = str(uuid.uuid4())[:8]
        log_prefix = f"[{definition_id}:{run_id}]"
        fired_at = self.clock()
        outcome, detail, parts = FiringOutcome.FAILED, None, 0

        try:
            outcome, detail, parts = self._fire(definition_id, intended_at, log_prefix)
        except Exception as e:
            # Store errors land here; the epilogue still runs
            logger.error(f"{log_prefix} Firing failed unexpectedly: {e}", exc_info=True)
            detail = str(e)

        self._reschedule(definition_id, log_prefix, outcome)
        self._record(definition_id, run_id, intended_at, fired_at, outcome, detail, parts)
        return outcome

    def _fire(self, definition_id: str, intended_at: datetime, log_prefix: str):
        """Steps 1-4: returns (outcome, detail, parts)"""
        definition = self.store.get(definition_id)
        if definition is None or not definition.is_enabled:
            logger.info(f"{log_prefix} Schedule is disabled or deleted, skipping")
            return FiringOutcome.SKIPPED, "disabled or deleted", 0

        now = self.clock()
        if self.staleness.is_stale(definition, intended_at, now):
            lateness = self.staleness.lateness_minutes(definition, intended_at, now)
            logger.info(f"{log_prefix} Firing is stale ({lateness:.0f} min off target, "
                        f"tolerance {self.staleness.tolerance_minutes} min), skipping")
            return FiringOutcome.SKIPPED, f"stale by {lateness:.0f} minutes", 0

        try:
            result = self.action.perform(definition)
        except InvalidPayloadError as e:
            logger.error(f"{log_prefix} Invalid payload: {e}")
            return FiringOutcome.FAILED, str(e), 0
        except PermissionDeniedError as e:
            logger.error(f"{log_prefix} Permission denied: {e}")
            return FiringOutcome.FAILED, str(e), 0
        except TransportError as e:
            logger.error(f"{log_prefix} Transport error: {e}")
            return FiringOutcome.FAILED, str(e), 0
        except Exception as e:
            logger.error(f"{log_prefix} Error sending message: {e}", exc_info=True)
            return FiringOutcome.FAILED, str(e), 0

        return FiringOutcome.SUCCESS, None, result.parts

    def _reschedule(self, definition_id: str, log_prefix: str, outcome: FiringOutcome):
        """Epilogue: continue, close or leave the chain based on the freshest state."""
        try:
            definition = self.store.get(definition_id)
            if definition is None or not definition.is_enabled:
                logger.debug(f"{log_prefix} Schedule disabled, chain ends here")
                return

            if definition.is_recurring:
                self.chain.schedule_next(definition, catch_up=True)
            else:
                # A one-time schedule gets exactly one firing, whatever its outcome
                self.store.set_enabled(definition_id, False)
                if outcome == FiringOutcome.SUCCESS:
                    logger.info(f"{log_prefix} One-time schedule delivered, disabled")
                else:
                    logger.warning(f"{log_prefix} One-time schedule not delivered "
                                   f"({outcome.value}), disabled; see history for details")
        except Exception as e:
            logger.error(f"{log_prefix} Failed to reschedule: {e}", exc_info=True)

    def _record(self, definition_id, run_id, intended_at, fired_at, outcome, detail, parts):
        if self.history is None:
            return
        try:
            self.history.add_run({
                'definition_id': definition_id,
                'run_id': run_id,
                'intended_at': intended_at.isoformat(),
                'fired_at': fired_at.isoformat(),
                'outcome': outcome.value,
                'detail': detail,
                'parts': parts
            })
        except OSError as e:
            logger.warning(f"Failed to record firing history: {e}")


# Process-wide handler installed by SchedulerService
_handler: Optional[FiringHandler] = None


def install_firing_handler(handler: Optional[FiringHandler]):
    """Set (or clear) the handler used by scheduled jobs in this process."""
    global _handler
    _handler = handler


def get_firing_handler() -> FiringHandler:
    if _handler is None:
        raise RuntimeError("No firing handler installed; start the scheduler service first")
    return _handler


# Module-level function for APScheduler serialization
def fire_scheduled_message(definition_id: str, intended_at: str) -> str:
    """
    Entry point of every scheduled job. This is a module-level function so
    APScheduler can persist a reference to it in the job store.

    Args:
        definition_id: Schedule to fire
        intended_at: ISO timestamp the job was planned for

    Returns:
        Outcome value ('success', 'skipped' or 'failed')
    """
    outcome = get_firing_handler().handle(definition_id, parse_timestamp(intended_at))
    return outcome.value
