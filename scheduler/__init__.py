"""
Recurring Message Scheduler

Sends messages on recurring schedules using APScheduler one-shot jobs
chained from firing to firing, with a persistent job store.

Features:
- Anchor-based occurrence calculation (no drift from late firings)
- DST-correct daily/weekly/monthly cadences, absolute hourly cadences
- Exactly one pending job per enabled schedule
- Staleness check for late firings
- Restart recovery from the schedule store
- Firing history and job event logging
"""

from scheduler.service import SchedulerService
from scheduler.repository import ScheduleRepository
from scheduler.chain import JobChainManager
from scheduler.firing import FiringHandler
from scheduler.config import SchedulerConfig

__version__ = "0.1.0"
__all__ = [
    "SchedulerService",
    "ScheduleRepository",
    "JobChainManager",
    "FiringHandler",
    "SchedulerConfig",
]
