#!/usr/bin/env python3
"""Newscast: personalized news digests with narrated audio, by email.

This CLI collects topic feeds, curates and summarizes them with a
generative model, narrates the result as an MP3 and emails it together
with a Markdown document. Digests can be sent once or scheduled daily.

Commands:
    run         Build and send one digest now
    schedule    Create a daily digest task for N days
    check       Run scheduled tasks that are due (once, or --loop to poll)
    tasks       List scheduled tasks
    status      Show configuration and store statistics

Examples:
    python main.py run --email me@example.com --topic sports --lang hi
    python main.py schedule --email me@example.com --time 09:00 --days 7
    python main.py check                  # one due-check (for cron)
    python main.py check --loop           # poll every POLL_INTERVAL_SECONDS
    python main.py tasks --user me

Environment:
    GOOGLE_API_KEY: Required for the generative agents
    SMTP_HOST / SMTP_USER / SMTP_PASSWORD: Required for delivery
    See config.py for all configuration options
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone

from config import TOPIC_FEEDS, Config
from database import Database
from observability.logging import setup_logging

logger = logging.getLogger(__name__)


def cmd_run(args: argparse.Namespace, config: Config) -> int:
    """Build and deliver one digest.

    Returns:
        0 when delivered, 1 when the run failed
    """
    from models.context import PipelineRequest
    from pipeline import run_once

    request = PipelineRequest(
        user_id=args.user or args.email,
        email=args.email,
        language=args.lang or config.default_language,
        topic=args.topic,
        region=args.region,
        user_name=args.name,
    )

    try:
        result = asyncio.run(run_once(config, request))
    except KeyboardInterrupt:
        logger.info("Stopped by user (Ctrl+C)")
        return 130

    print(json.dumps(result.to_dict(), indent=2))
    if not result.delivered:
        logger.error("Digest not delivered | reason=%s stage=%s", result.reason, result.failed_stage)
        return 1
    return 0


def cmd_schedule(args: argparse.Namespace, config: Config) -> int:
    """Create a daily digest task."""
    with Database(config.db_path) as db:
        task = db.create_task(
            user_id=args.user or args.email,
            email=args.email,
            schedule_time=args.time,
            days=args.days,
            language=args.lang or config.default_language,
            topic=args.topic,
            region=args.region,
            timezone=args.timezone,
        )
    print(json.dumps(task.model_dump(mode="json"), indent=2))
    return 0


def cmd_check(args: argparse.Namespace, config: Config) -> int:
    """Run due scheduled tasks once, or poll until interrupted with --loop."""
    from pipeline import Pipeline
    from scheduling import check_scheduled_tasks, run_scheduler_loop

    async def run() -> dict | None:
        with Database(config.db_path) as db:
            pipeline = Pipeline(config, db=db)
            try:
                if args.loop:
                    await run_scheduler_loop(
                        db,
                        pipeline.run_for_task,
                        interval_seconds=args.interval or config.poll_interval_seconds,
                        task_timeout=config.task_timeout_seconds,
                        window_minutes=config.due_window_minutes,
                    )
                    return None
                report = await check_scheduled_tasks(
                    db,
                    pipeline.run_for_task,
                    task_timeout=config.task_timeout_seconds,
                    window_minutes=config.due_window_minutes,
                )
                return report.to_dict()
            finally:
                pipeline.close()

    try:
        report = asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Stopped by user (Ctrl+C)")
        return 130

    if report is not None:
        print(json.dumps(report, indent=2))
    return 0


def cmd_tasks(args: argparse.Namespace, config: Config) -> int:
    """List scheduled tasks."""
    with Database(config.db_path) as db:
        if args.cancel is not None:
            if not db.cancel_task(args.cancel):
                print(f"No active task with id {args.cancel}", file=sys.stderr)
                return 1
            print(f"Task {args.cancel} cancelled")
            return 0
        tasks = db.list_tasks(user_id=args.user)

    if not tasks:
        print("No scheduled tasks.")
        return 0

    for task in tasks:
        last_run = task.last_run_at.strftime("%Y-%m-%d %H:%M UTC") if task.last_run_at else "never"
        print(
            f"#{task.id} [{task.status.value}] {task.email} {task.schedule_time} {task.timezone} "
            f"topic={task.topic} lang={task.language} until={task.active_until} last_run={last_run}"
        )
    return 0


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    """Display configuration and store statistics."""
    with Database(config.db_path) as db:
        if args.prune:
            db.prune_runs(args.prune)
        db_stats = db.stats()
        recent = db.recent_runs(limit=5)

    status = {
        "config": {
            "default_language": config.default_language,
            "curator_model": config.curator_model,
            "script_model": config.script_model,
            "translator_model": config.translator_model,
            "topics": sorted(config.topic_feeds),
            "feeds": sum(len(urls) for urls in config.topic_feeds.values()),
            "due_window_minutes": config.due_window_minutes,
            "poll_interval": config.poll_interval_seconds,
            "sentiment_enabled": bool(config.hf_api_key),
            "smtp_configured": config.validate_delivery() is None,
            "enable_logfire": config.enable_logfire,
        },
        "database": {"path": str(config.db_path), **db_stats},
        "recent_runs": recent,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }

    print(json.dumps(status, indent=2, default=str))
    return 0


def _add_request_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--email", required=True, help="Recipient email address")
    parser.add_argument("--user", help="User id for the interest profile (default: email)")
    parser.add_argument(
        "--topic",
        default="all",
        choices=sorted(TOPIC_FEEDS),
        help="News topic (default: all)",
    )
    parser.add_argument("--lang", help="Output language name or code (default: DEFAULT_LANGUAGE)")
    parser.add_argument("--region", help="Region/state to focus on (e.g. 'Karnataka' or 'ka')")


def main() -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    parser = argparse.ArgumentParser(
        description="Newscast: personalized news digests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Build and send one digest now")
    _add_request_args(run_parser)
    run_parser.add_argument("--name", help="Name used in the greeting")

    schedule_parser = subparsers.add_parser("schedule", help="Schedule a daily digest")
    _add_request_args(schedule_parser)
    schedule_parser.add_argument("--time", required=True, help="Local delivery time, HH:MM")
    schedule_parser.add_argument("--days", type=int, default=7, help="Number of days (default: 7)")
    schedule_parser.add_argument(
        "--timezone",
        default="Asia/Kolkata",
        help="Timezone of --time (default: Asia/Kolkata)",
    )

    check_parser = subparsers.add_parser("check", help="Run scheduled tasks that are due")
    check_parser.add_argument("--loop", action="store_true", help="Keep polling until interrupted")
    check_parser.add_argument("--interval", type=int, help="Poll interval in seconds (with --loop)")

    tasks_parser = subparsers.add_parser("tasks", help="List scheduled tasks")
    tasks_parser.add_argument("--user", help="Only tasks for this user id")
    tasks_parser.add_argument("--cancel", type=int, metavar="ID", help="Cancel the task with this id")

    status_parser = subparsers.add_parser("status", help="Show configuration and statistics")
    status_parser.add_argument("--prune", type=int, metavar="DAYS", help="Delete run history older than DAYS")

    args = parser.parse_args()

    config = Config.load()
    setup_logging(config, verbose=args.verbose)

    if args.command in ("run", "check"):
        error = config.validate() or config.validate_delivery()
        if error:
            print(f"Configuration error: {error}", file=sys.stderr)
            return 1
    if args.command == "check" and args.interval and args.interval > config.due_window_minutes * 60:
        print("Configuration error: --interval must not exceed DUE_WINDOW_MINUTES", file=sys.stderr)
        return 1

    commands = {
        "run": cmd_run,
        "schedule": cmd_schedule,
        "check": cmd_check,
        "tasks": cmd_tasks,
        "status": cmd_status,
    }

    if args.command in commands:
        try:
            return commands[args.command](args, config)
        except KeyboardInterrupt:
            return 130
        except Exception as e:
            logger.error("Command failed | cmd=%s error=%s", args.command, e, exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
