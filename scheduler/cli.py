"""
Command-line interface for recurring message schedules.

Provides CLI commands for:
- Starting/stopping the scheduler
- Adding/editing/removing/toggling schedules
- Previewing upcoming occurrences
- Viewing firing history and logs
- Managing configuration
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from config import get_config, set_data_directory
from models import Frequency, MessagePayload, PeriodUnit, RecurrenceDefinition
from transport import TransportError
from messaging import InvalidPayloadError
from scheduler.calculator import upcoming_occurrences
from scheduler.config import SchedulerConfig
from scheduler.firing import HistoryStore
from scheduler.service import SchedulerService, build_action, is_scheduler_running, get_scheduler_info
from store import get_store

load_dotenv()

logger = logging.getLogger(__name__)

FREQUENCY_CHOICES = [f.value.lower() for f in Frequency]
UNIT_CHOICES = [u.value.lower() for u in PeriodUnit]


def get_log_file() -> Path:
    """Get the scheduler log file path."""
    if os.environ.get('CADENCE_LOG_DIR'):
        return Path(os.environ['CADENCE_LOG_DIR']).expanduser() / "scheduler.log"
    return get_config().logs_dir / "scheduler.log"


def setup_logging(log_file: str = None, verbose: bool = False, level_name: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)


def parse_time(value: str) -> tuple:
    """Parse 'HH:MM' into (hour, minute)."""
    try:
        parsed = datetime.strptime(value, '%H:%M')
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid time '{value}', expected HH:MM")
    return parsed.hour, parsed.minute


def _open_service(args) -> SchedulerService:
    """Service whose job store is loaded but which fires nothing."""
    service = SchedulerService(config_path=args.config)
    service.open_for_edits()
    return service


def _restart_note():
    running, pid = is_scheduler_running()
    if running:
        # The daemon only reads jobs written by other processes during recovery
        logger.warning(f"Scheduler is running (PID: {pid}) and will not pick up this change "
                       f"until restarted; the message may be sent late or not at all. "
                       f"Run 'cadence stop' and 'cadence start' to apply it now.")


def _start_anchor(args, service: SchedulerService):
    """Anchor instant from --start-date, or now."""
    if args.start_date:
        day = datetime.strptime(args.start_date, '%Y-%m-%d')
        return day.replace(tzinfo=service.config.zone)
    return service.now()


def cmd_start(args):
    """Start the scheduler and keep it running."""
    config = SchedulerConfig(args.config)
    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose,
        level_name=config.logging.level
    )

    logger.info("Starting message scheduler...")

    try:
        service = SchedulerService(config_path=args.config, max_workers=args.workers)
        service.start()
        if not service.scheduler.running:
            sys.exit(1)

        if args.foreground:
            logger.info("Running in foreground mode. Press Ctrl+C to stop.")
            try:
                while service.scheduler.running:
                    time.sleep(1)
            except (KeyboardInterrupt, SystemExit):
                logger.info("Shutting down...")
                service.stop()
        else:
            logger.info("Scheduler is running in the background")
            logger.info("Use 'cadence stop' to stop it")
            logger.info(f"Logs: {args.log_file or config.logging.file}")

            while service.scheduler.running:
                time.sleep(60)

    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)


def cmd_stop(args):
    """Stop the scheduler."""
    setup_logging(verbose=args.verbose)

    running, pid = is_scheduler_running()
    if not running:
        logger.warning("Scheduler does not appear to be running (no PID file)")
        return

    try:
        logger.info(f"Stopping scheduler (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)

        for _ in range(10):
            time.sleep(1)
            try:
                os.kill(pid, 0)  # Check if process exists
            except OSError:
                logger.info("Scheduler stopped successfully")
                return

        logger.warning("Scheduler did not stop gracefully, sending SIGKILL")
        os.kill(pid, signal.SIGKILL)

    except Exception as e:
        logger.error(f"Failed to stop scheduler: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show scheduler status."""
    setup_logging(verbose=args.verbose)

    try:
        scheduler_info = get_scheduler_info()
        running, pid = is_scheduler_running()

        print("\n┌─────────────────────────────────────────────────────────────────┐")
        print("│                      SCHEDULER STATUS                           │")
        print("└─────────────────────────────────────────────────────────────────┘\n")

        if running:
            print(f"  Status:     \033[92m● Running\033[0m")
            print(f"  PID:        {pid}")
            if scheduler_info:
                if scheduler_info.get('started_at'):
                    print(f"  Started:    {scheduler_info['started_at']}")
                print(f"  Timezone:   {scheduler_info.get('timezone', 'N/A')}")
                print(f"  Data Dir:   {scheduler_info.get('data_dir', 'N/A')}")
                print(f"  Log Dir:    {scheduler_info.get('log_dir', 'N/A')}")
        else:
            print(f"  Status:     \033[91m○ Not Running\033[0m")
            print("\n  Start the scheduler with: cadence start")

        service = _open_service(args)
        try:
            jobs = service.get_jobs()
        finally:
            service.close()

        print(f"\n  Pending Jobs: {len(jobs)}")
        if jobs:
            print("\n  ┌" + "─" * 50 + "┐")
            print("  │ Pending Jobs" + " " * 37 + "│")
            print("  ├" + "─" * 50 + "┤")
            for job in jobs:
                job_id = job['id'][:28]
                next_run = job['next_run'][:19] if job['next_run'] else 'N/A'
                print(f"  │  {job_id:<28} {next_run:<19}│")
            print("  └" + "─" * 50 + "┘")
        print()

    except Exception as e:
        logger.error(f"Failed to get status: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_list(args):
    """List all schedules with their pending job."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        try:
            definitions = service.repository.list_all()
            pending = {d.id: service.chain.get_pending(d.id) for d in definitions}
        finally:
            service.close()

        print(f"\n=== Schedules ({len(definitions)}) ===\n")
        for definition in definitions:
            status = "✓" if definition.is_enabled else "✗"
            payload = definition.payload
            print(f"{status} {definition.id}")
            print(f"    To:       {payload.contact_name or '-'} <{payload.recipient}>")
            print(f"    When:     {definition.formatted_time()}, {definition.describe_cadence()}")
            if payload.ai_generated:
                print(f"    Message:  [generated, {payload.message_type}] fallback: {payload.message!r}")
            else:
                print(f"    Message:  {payload.message!r}")
            job = pending.get(definition.id)
            print(f"    Next Run: {job['next_run'] if job else 'not scheduled'}")
            print()

    except Exception as e:
        logger.error(f"Failed to list schedules: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_add(args):
    """Add a new schedule."""
    setup_logging(verbose=args.verbose)

    try:
        hour, minute = args.time
        service = _open_service(args)
        try:
            definition = RecurrenceDefinition(
                target_hour=hour,
                target_minute=minute,
                payload=MessagePayload(
                    recipient=args.to,
                    message=args.message or "",
                    contact_name=args.name or "",
                    ai_generated=args.ai,
                    message_type=args.message_type,
                    message_context=args.context or ""
                ),
                frequency=Frequency(args.frequency.capitalize()),
                is_recurring=args.recurring,
                custom_period=args.period,
                custom_unit=PeriodUnit(args.unit.capitalize()),
                is_enabled=not args.disabled,
                anchor_timestamp=_start_anchor(args, service)
            )
            definition_id = service.repository.insert(definition)
            job = service.chain.get_pending(definition_id)
        finally:
            service.close()

        logger.info(f"Added schedule '{definition_id}'")
        if job:
            logger.info(f"First run at: {job['next_run']}")
        _restart_note()

    except Exception as e:
        logger.error(f"Failed to add schedule: {e}")
        sys.exit(1)


def cmd_edit(args):
    """Edit an existing schedule."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        try:
            current = service.repository.get(args.id)
            if current is None:
                logger.error(f"Schedule '{args.id}' not found")
                sys.exit(1)

            changes = {}
            if args.time:
                changes['target_hour'], changes['target_minute'] = args.time
            if args.frequency:
                changes['frequency'] = Frequency(args.frequency.capitalize())
            if args.period is not None:
                changes['custom_period'] = args.period
            if args.unit:
                changes['custom_unit'] = PeriodUnit(args.unit.capitalize())
            if args.recurring is not None:
                changes['is_recurring'] = args.recurring
            if args.start_date:
                changes['anchor_timestamp'] = _start_anchor(args, service)

            payload = current.payload
            payload_changes = {
                'recipient': args.to,
                'message': args.message,
                'contact_name': args.name,
                'message_type': args.message_type,
                'message_context': args.context,
                'ai_generated': args.ai,
            }
            payload_changes = {k: v for k, v in payload_changes.items() if v is not None}
            if payload_changes:
                changes['payload'] = replace(payload, **payload_changes)

            updated = service.repository.edit(args.id, **changes)
            job = service.chain.get_pending(args.id)
        finally:
            service.close()

        logger.info(f"Updated schedule '{args.id}' "
                    f"({updated.formatted_time()}, {updated.describe_cadence()})")
        logger.info(f"Next run: {job['next_run'] if job else 'not scheduled'}")
        _restart_note()

    except Exception as e:
        logger.error(f"Failed to edit schedule: {e}")
        sys.exit(1)


def cmd_remove(args):
    """Remove a schedule."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        try:
            deleted = service.repository.delete(args.id)
        finally:
            service.close()

        if not deleted:
            logger.error(f"Schedule '{args.id}' not found")
            sys.exit(1)
        logger.info(f"Removed schedule '{args.id}'")
        _restart_note()

    except Exception as e:
        logger.error(f"Failed to remove schedule: {e}")
        sys.exit(1)


def _toggle(args, enabled: bool):
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        try:
            service.repository.set_enabled(args.id, enabled)
        finally:
            service.close()

        logger.info(f"{'Enabled' if enabled else 'Disabled'} schedule '{args.id}'")
        _restart_note()

    except KeyError:
        logger.error(f"Schedule '{args.id}' not found")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to update schedule: {e}")
        sys.exit(1)


def cmd_enable(args):
    """Enable a schedule."""
    _toggle(args, True)


def cmd_disable(args):
    """Disable a schedule."""
    _toggle(args, False)


def cmd_next(args):
    """Preview upcoming occurrences of a schedule."""
    setup_logging(verbose=args.verbose)

    try:
        config = SchedulerConfig(args.config)
        definition = get_store().get(args.id)
        if definition is None:
            logger.error(f"Schedule '{args.id}' not found")
            sys.exit(1)

        occurrences = upcoming_occurrences(definition, datetime.now(config.zone), args.count)
        print(f"\nUpcoming occurrences of {definition.id} "
              f"({definition.formatted_time()}, {definition.describe_cadence()}):\n")
        for occurrence in occurrences:
            print(f"  {occurrence.strftime('%a %Y-%m-%d %H:%M %Z')}")
        print()

    except Exception as e:
        logger.error(f"Failed to compute occurrences: {e}")
        sys.exit(1)


def cmd_send_now(args):
    """Send a schedule's message immediately, outside its chain."""
    setup_logging(verbose=args.verbose)

    try:
        config = SchedulerConfig(args.config)
        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            sys.exit(1)

        definition = get_store().get(args.id)
        if definition is None:
            logger.error(f"Schedule '{args.id}' not found")
            sys.exit(1)

        result = build_action(config).perform(definition)
        logger.info(f"Sent {result.parts} part(s) to {result.destination}")

    except (InvalidPayloadError, TransportError) as e:
        logger.error(f"Send failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to send: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_logs(args):
    """View scheduler logs."""
    scheduler_info = get_scheduler_info()

    if scheduler_info and scheduler_info.get('log_dir'):
        log_file = Path(scheduler_info['log_dir']) / "scheduler.log"
    else:
        log_file = get_log_file()

    if not log_file.exists():
        print(f"No log file found at: {log_file}")
        print("Logs are created when the scheduler starts.")
        return

    try:
        with open(log_file, 'r') as f:
            lines = f.readlines()

        if args.schedule:
            lines = [line for line in lines if args.schedule in line]
        if args.level:
            level_upper = args.level.upper()
            lines = [line for line in lines if f'[{level_upper}]' in line]
        if not args.show_all and args.tail:
            lines = lines[-args.tail:]

        if not lines:
            print("No matching log entries found.")
            return

        for line in lines:
            if args.color and '[ERROR]' in line:
                print(f"\033[91m{line.rstrip()}\033[0m")
            elif args.color and '[WARNING]' in line:
                print(f"\033[93m{line.rstrip()}\033[0m")
            else:
                print(line.rstrip())

        print(f"\n--- Showing {len(lines)} log entries from {log_file} ---")

    except OSError as e:
        print(f"Error reading logs: {e}")
        sys.exit(1)


def _format_timestamp(value) -> str:
    if not value:
        return 'N/A'
    try:
        return datetime.fromisoformat(value).strftime('%Y-%m-%d %H:%M:%S')
    except ValueError:
        return str(value)[:19]


def cmd_history(args):
    """Show firing history."""
    try:
        scheduler_info = get_scheduler_info()
        if scheduler_info and scheduler_info.get('history_file'):
            history_store = HistoryStore(history_file=Path(scheduler_info['history_file']))
        else:
            history_store = HistoryStore()

        history = history_store.get_history(
            definition_id=args.schedule,
            outcome=args.outcome,
            limit=args.limit if not args.show_all else None
        )

        if not history:
            print("\nNo firing history found.")
            return

        if args.json:
            print(json.dumps(history, indent=2))
            return

        headers = ['Schedule', 'Run ID', 'Intended', 'Fired', 'Outcome']
        rows = [
            [
                record.get('definition_id', 'unknown')[:12],
                record.get('run_id', 'N/A'),
                _format_timestamp(record.get('intended_at')),
                _format_timestamp(record.get('fired_at')),
                record.get('outcome', 'unknown'),
            ]
            for record in history
        ]
        widths = [max(len(headers[i]), max(len(row[i]) for row in rows)) for i in range(len(headers))]

        def make_row(cells):
            return "│ " + " │ ".join(cell.ljust(w) for cell, w in zip(cells, widths)) + " │"

        def make_separator(left, mid, right):
            return left + mid.join('─' * (w + 2) for w in widths) + right

        print()
        print(make_separator('┌', '┬', '┐'))
        print(make_row(headers))
        print(make_separator('├', '┼', '┤'))
        for record, row in zip(history, rows):
            print(make_row(row))
            if args.verbose and record.get('detail'):
                print(f"│   └─ {str(record['detail'])[:80]}")
        print(make_separator('└', '┴', '┘'))

        print(f"\nShowing {len(history)} firing(s)")
        print(f"History file: {history_store.history_file}")

    except Exception as e:
        print(f"Error reading history: {e}")
        sys.exit(1)


def cmd_init(args):
    """Initialize scheduler configuration."""
    setup_logging(verbose=args.verbose)

    try:
        if args.data_dir:
            paths = set_data_directory(args.data_dir)
            logger.info(f"Data directory: {paths.data_dir}")
        config = SchedulerConfig(args.config)
        if args.timezone:
            config.timezone = args.timezone
        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            sys.exit(1)
        config.save()

        logger.info(f"Initialized scheduler configuration at: {config.config_path}")
        logger.info(f"Timezone: {config.timezone}, transport: {config.transport.kind}")

    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Show current configuration."""
    setup_logging(verbose=args.verbose)

    try:
        config = SchedulerConfig(args.config)

        print(f"\nConfiguration file: {config.config_path}")
        print(f"Data directory: {get_config().data_dir}")
        print(f"Timezone: {config.timezone}")
        print(f"Staleness: {config.staleness.policy}, "
              f"{config.staleness.tolerance_minutes} minute tolerance")
        print(f"Transport: {config.transport.kind}"
              + (f" ({config.transport.url})" if config.transport.url else ""))
        print(f"Content model: {config.content.model} "
              f"(key {'set' if config.content.api_key else 'not set'})")
        print(f"Log file: {config.logging.file}")

        errors = config.validate()
        if errors:
            print("\nValidation errors:")
            for error in errors:
                print(f"  - {error}")

    except Exception as e:
        logger.error(f"Failed to show config: {e}")
        sys.exit(1)


def _add_schedule_arguments(parser, editing: bool):
    """Arguments shared by 'add' and 'edit'."""
    parser.add_argument('--to', required=not editing, help='Recipient phone number / address')
    parser.add_argument('--name', help='Contact name')
    parser.add_argument('--message', '-m', help='Message text (fallback text for --ai)')
    parser.add_argument('--time', type=parse_time, required=not editing, help='Time of day (HH:MM)')
    parser.add_argument('--frequency', '-f', choices=FREQUENCY_CHOICES,
                        default=None if editing else 'daily', help='Cadence')
    parser.add_argument('--period', type=int, default=None if editing else 1,
                        help='Custom period length (with --frequency custom)')
    parser.add_argument('--unit', choices=UNIT_CHOICES, default=None if editing else 'days',
                        help='Custom period unit (with --frequency custom)')
    parser.add_argument('--start-date', type=str, help='Anchor date (YYYY-MM-DD)')
    parser.add_argument('--message-type', type=str, default=None if editing else 'friendly',
                        help='Tone of generated messages')
    parser.add_argument('--context', type=str, help='Context for generated messages')

    if editing:
        recurring = parser.add_mutually_exclusive_group()
        recurring.add_argument('--recurring', dest='recurring', action='store_true', default=None)
        recurring.add_argument('--once', dest='recurring', action='store_false')
        ai = parser.add_mutually_exclusive_group()
        ai.add_argument('--ai', dest='ai', action='store_true', default=None,
                        help='Generate the message at send time')
        ai.add_argument('--static', dest='ai', action='store_false',
                        help='Send the fixed message text')
    else:
        parser.add_argument('--recurring', action='store_true', help='Repeat per --frequency')
        parser.add_argument('--ai', action='store_true', help='Generate the message at send time')
        parser.add_argument('--disabled', action='store_true', help='Create disabled')


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Cadence - send messages on a recurring schedule",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('-c', '--config', type=str, help='Path to scheduler configuration file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    start_parser = subparsers.add_parser('start', help='Start the scheduler')
    start_parser.add_argument('--foreground', action='store_true',
                              help='Run in foreground (Ctrl+C to stop)')
    start_parser.add_argument('--workers', type=int, default=None,
                              help='Maximum concurrent firings')
    start_parser.add_argument('--log-file', type=str, help='Log file path')
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser('stop', help='Stop the scheduler')
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser('status', help='Show scheduler status')
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser('list', help='List all schedules')
    list_parser.set_defaults(func=cmd_list)

    add_parser = subparsers.add_parser('add', help='Add a new schedule')
    _add_schedule_arguments(add_parser, editing=False)
    add_parser.set_defaults(func=cmd_add)

    edit_parser = subparsers.add_parser('edit', help='Edit a schedule')
    edit_parser.add_argument('id', help='Schedule id')
    _add_schedule_arguments(edit_parser, editing=True)
    edit_parser.set_defaults(func=cmd_edit)

    remove_parser = subparsers.add_parser('remove', help='Remove a schedule')
    remove_parser.add_argument('id', help='Schedule id')
    remove_parser.set_defaults(func=cmd_remove)

    enable_parser = subparsers.add_parser('enable', help='Enable a schedule')
    enable_parser.add_argument('id', help='Schedule id')
    enable_parser.set_defaults(func=cmd_enable)

    disable_parser = subparsers.add_parser('disable', help='Disable a schedule')
    disable_parser.add_argument('id', help='Schedule id')
    disable_parser.set_defaults(func=cmd_disable)

    next_parser = subparsers.add_parser('next', help='Show upcoming occurrences')
    next_parser.add_argument('id', help='Schedule id')
    next_parser.add_argument('--count', '-n', type=int, default=5,
                             help='Number of occurrences (default: 5)')
    next_parser.set_defaults(func=cmd_next)

    send_parser = subparsers.add_parser('send-now', help="Send a schedule's message immediately")
    send_parser.add_argument('id', help='Schedule id')
    send_parser.set_defaults(func=cmd_send_now)

    logs_parser = subparsers.add_parser('logs', help='View scheduler logs')
    logs_parser.add_argument('--schedule', type=str, help='Filter logs by schedule id')
    logs_parser.add_argument('--level', type=str, choices=['info', 'warning', 'error', 'debug'],
                             help='Filter by log level')
    logs_parser.add_argument('--tail', '-n', type=int, default=50, help='Show last N lines (default: 50)')
    logs_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                             help='Show all logs (not just last N)')
    logs_parser.add_argument('--color', action='store_true', help='Colorize output')
    logs_parser.set_defaults(func=cmd_logs)

    history_parser = subparsers.add_parser('history', help='View firing history')
    history_parser.add_argument('--schedule', '-s', type=str, help='Filter by schedule id')
    history_parser.add_argument('--outcome', '-o', type=str,
                                choices=['success', 'skipped', 'failed'],
                                help='Filter by outcome')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all history entries')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.set_defaults(func=cmd_history)

    init_parser = subparsers.add_parser('init', help='Initialize scheduler configuration')
    init_parser.add_argument('--timezone', type=str, help='IANA timezone, e.g. Europe/Berlin')
    init_parser.add_argument('--data-dir', type=str,
                             help='Base directory for schedules, jobs and logs (saved to ~/.cadence/config.json)')
    init_parser.set_defaults(func=cmd_init)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
