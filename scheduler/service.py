"""
Core scheduler service using APScheduler.

Wires the schedule store, the persistent one-shot job store (SQLite),
the job chain, and the firing handler together, and provides:
- Restart recovery (rebuilds one pending job per enabled schedule)
- Job event logging
- PID file for status tracking
"""

import atexit
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_ADDED,
    EVENT_JOB_REMOVED
)

from config import Config, get_config
from content_source import OpenAIContentSource
from messaging import MessageAction
from store import ScheduleStore
from transport import HttpSmsTransport, LogTransport
from scheduler.config import SchedulerConfig, TransportConfig
from scheduler.chain import JobChainManager
from scheduler.firing import FiringHandler, HistoryStore, StalenessCheck, install_firing_handler
from scheduler.repository import ScheduleRepository

logger = logging.getLogger(__name__)


def _get_pid_file_path() -> Path:
    """Get the path to the scheduler PID file."""
    pid_path = os.environ.get('CADENCE_PID_FILE')
    if pid_path:
        return Path(pid_path)
    return get_config().pid_file


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_scheduler_running() -> tuple:
    """
    Check if the scheduler is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = _get_pid_file_path()

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        if _is_process_running(pid):
            return True, pid
        # Stale PID file, clean it up
        pid_file.unlink()
        return False, None
    except (ValueError, OSError):
        return False, None


def get_scheduler_info() -> Optional[Dict[str, Any]]:
    """
    Get information about the running scheduler.

    Returns:
        Dict with scheduler info or None if not running/no info file.
    """
    running, pid = is_scheduler_running()
    if not running:
        return None

    info_file = get_config().info_file
    minimal = {'pid': pid, 'running': True, 'data_dir': str(get_config().data_dir)}
    if not info_file.exists():
        return minimal

    try:
        with open(info_file, 'r') as f:
            info = json.load(f)
        info['running'] = True
        info['pid'] = pid
        return info
    except (json.JSONDecodeError, OSError):
        return minimal


def build_transport(config: TransportConfig):
    """Transport described by the configuration"""
    if config.kind == 'http':
        return HttpSmsTransport(
            config.url,
            api_key=config.api_key,
            sender=config.sender,
            max_part_length=config.max_part_length,
            timeout=config.timeout
        )
    return LogTransport(max_part_length=config.max_part_length)


def build_action(config: SchedulerConfig) -> MessageAction:
    """Send action with the configured transport and optional content source"""
    content_source = None
    if config.content.api_key:
        content_source = OpenAIContentSource(
            config.content.api_key,
            model=config.content.model,
            base_url=config.content.base_url
        )
    return MessageAction(
        build_transport(config.transport),
        content_source=content_source,
        max_generated_length=config.content.max_length
    )


class SchedulerService:
    """
    Main scheduler service.

    Uses APScheduler with a SQLite job store so pending jobs survive
    restarts; the schedule store remains the source of truth.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        data_dir: Optional[str] = None,
        job_store_url: Optional[str] = None,
        max_workers: Optional[int] = None
    ):
        """
        Initialize scheduler service.

        Args:
            config_path: Path to scheduler configuration file
            data_dir: Base data directory (defaults to the global Config)
            job_store_url: SQLAlchemy URL of the job store (defaults to the
                           data directory's scheduler_jobs.db)
            max_workers: Maximum number of concurrent firings
        """
        self.paths: Config = get_config(data_dir) if data_dir else get_config()
        self.config = SchedulerConfig(config_path)

        errors = self.config.validate()
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            raise ValueError("Invalid configuration")

        self.job_store_url = job_store_url or f"sqlite:///{self.paths.job_store_db}"

        self.scheduler = BackgroundScheduler(
            jobstores={'default': SQLAlchemyJobStore(url=self.job_store_url)},
            executors={'default': ThreadPoolExecutor(max_workers or self.config.executor.max_workers)},
            job_defaults={
                'coalesce': True,  # Combine multiple missed runs into one
                'max_instances': 1,  # Prevent concurrent runs of same job
                'misfire_grace_time': None  # Late jobs always run; the firing handler judges staleness
            },
            timezone=timezone.utc
        )
        self._setup_event_listeners()

        self.store = ScheduleStore(self.paths.schedules_db)
        self.history = HistoryStore(self.paths.history_file)
        self.chain = JobChainManager(self.scheduler, self.now)
        self.repository = ScheduleRepository(self.store, self.chain)

        self.action = build_action(self.config)

        self.handler = FiringHandler(
            self.store,
            self.chain,
            self.action,
            self.now,
            staleness=StalenessCheck(
                tolerance_minutes=self.config.staleness.tolerance_minutes,
                policy=self.config.staleness.policy
            ),
            history=self.history
        )
        install_firing_handler(self.handler)

        logger.info(f"Scheduler initialized with job store: {self.job_store_url}")

    def now(self) -> datetime:
        """Current time in the configured wall-clock zone"""
        return datetime.now(self.config.zone)

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.info(f"Job '{event.job_id}' finished ({event.retval})")

        def job_error_listener(event):
            logger.error(
                f"Job '{event.job_id}' raised exception: {event.exception}",
                exc_info=True
            )

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time")

        def job_added_listener(event):
            logger.debug(f"Job '{event.job_id}' added to scheduler")

        def job_removed_listener(event):
            logger.debug(f"Job '{event.job_id}' removed from scheduler")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_added_listener, EVENT_JOB_ADDED)
        self.scheduler.add_listener(job_removed_listener, EVENT_JOB_REMOVED)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def recover(self) -> int:
        """
        Rebuild the job chain from the schedule store.

        Returns:
            Number of schedules re-armed
        """
        return self.repository.reschedule_all_enabled()

    def start(self, handle_signals: bool = True):
        """Start the scheduler daemon: recover, then begin firing jobs."""
        running, pid = is_scheduler_running()
        if running:
            logger.warning(f"Scheduler is already running (PID: {pid})")
            return

        if self.scheduler.running:
            logger.warning("Scheduler is already running")
            return

        logger.info("Starting scheduler...")
        # Paused until recovery has replaced whatever the job store held
        self.scheduler.start(paused=True)
        self.recover()
        self.scheduler.resume()

        self._write_pid_file()
        if handle_signals:
            self._setup_signal_handlers()

        logger.info("Scheduler started successfully")
        jobs = self.get_jobs()
        if jobs:
            logger.info(f"{len(jobs)} pending job(s):")
            for job in jobs:
                logger.info(f"  - {job['id']}: next run at {job['next_run']}")
        else:
            logger.warning("No jobs pending")

    def open_for_edits(self):
        """
        Load the job store without firing anything.

        Used by short-lived processes (the CLI) that mutate schedules; the
        changes land in the persistent job store.
        """
        if not self.scheduler.running:
            self.scheduler.start(paused=True)

    def _write_pid_file(self):
        """Write the current process PID and scheduler info files."""
        pid_file = _get_pid_file_path()
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")

        scheduler_info = {
            'pid': os.getpid(),
            'started_at': datetime.now().isoformat(),
            'config_path': str(self.config.config_path),
            'job_store_url': self.job_store_url,
            'data_dir': str(self.paths.data_dir),
            'log_dir': str(self.paths.logs_dir),
            'history_file': str(self.paths.history_file),
            'timezone': self.config.timezone,
        }
        try:
            with open(self.paths.info_file, 'w') as f:
                json.dump(scheduler_info, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write scheduler info file: {e}")

        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (_get_pid_file_path(), self.paths.info_file):
            try:
                if path.exists():
                    path.unlink()
            except OSError as e:
                logger.debug(f"Failed to remove {path}: {e}")

    def stop(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: If True, wait for running firings to complete
        """
        if self.scheduler.running:
            logger.info("Stopping scheduler...")
            self.scheduler.shutdown(wait=wait)
            self._remove_pid_file()
            logger.info("Scheduler stopped")
        install_firing_handler(None)

    def close(self):
        """Release an instance opened with ``open_for_edits``."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        install_firing_handler(None)

    def get_jobs(self) -> List[Dict[str, Any]]:
        """
        Get list of all pending jobs.

        Returns:
            List of job information dictionaries
        """
        return [
            {
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'intended_at': job.kwargs.get('intended_at')
            }
            for job in self.scheduler.get_jobs()
        ]
