"""
elastic-cron command line.
"""

from __future__ import annotations

import argparse
import logging
import shlex
import signal
from datetime import datetime, timezone
from types import FrameType
from typing import List, Optional

from elastic_cron.config import DEFAULT_CONFIG, DEFAULT_PING_TIMEOUT, CronConfig, Job, Settings, parse_config
from elastic_cron.errors import ElasticCronError
from elastic_cron.executor import execute
from elastic_cron.logs import ElasticsearchHandler, job_logger, probe_elasticsearch, setup_logging
from elastic_cron.notifier import Notifier
from elastic_cron.schedule import parse, upcoming
from elastic_cron.scheduler import Scheduler

DEFAULT_PREVIEW_COUNT = 5
UTC = timezone.utc

logger = logging.getLogger("elastic_cron.cli")


def select_jobs(jobs: List[Job], job_name: Optional[str]) -> List[Job]:
    if not job_name:
        return jobs
    selected = [job for job in jobs if job.name == job_name]
    if not selected:
        raise ElasticCronError(f'Unknown job "{job_name}".')
    return selected


def command_validate(settings: Settings) -> int:
    config = parse_config(settings.config_file)
    print(f"Config valid: {settings.config_file}")
    print(f"Total jobs: {len(config.jobs)}")
    for job in config.jobs:
        print(f"- {job.name}: {job.schedule} (overlap={job.overlap})")
    if config.elasticsearch.enabled:
        print(f"Elasticsearch: {', '.join(config.elasticsearch.servers)} index={config.elasticsearch.index}")
    return 0


def command_preview(settings: Settings, job_name: Optional[str], count: int) -> int:
    config = parse_config(settings.config_file)
    now = datetime.now(tz=UTC)

    for job in select_jobs(config.jobs, job_name):
        schedule = parse(job.schedule, settings.timezone)
        print("=" * 80)
        print(f"Job: {job.name}")
        print(f"Schedule: {job.schedule} ({settings.timezone_name})")
        args_text = " ".join(shlex.quote(arg) for arg in job.args) if job.args else "(none)"
        print(f"Command: {job.command} | args={args_text}")
        print(f"Next {count} run(s):")
        runs = upcoming(schedule, count, now.astimezone(settings.timezone))
        if not runs:
            print("- none")
        for run_dt in runs:
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def command_run(settings: Settings, job_name: Optional[str]) -> int:
    config = parse_config(settings.config_file)
    notifier = Notifier(timeout=settings.ping_timeout)

    exit_code = 0
    for job in select_jobs(config.jobs, job_name):
        outcome = execute(job)
        ping = notifier.notify(job, outcome, job_logger(job.name))
        if ping is not None:
            ping.join()
        if outcome.failed:
            exit_code = 1
    return exit_code


def attach_log_shipping(config: CronConfig, settings: Settings) -> Optional[ElasticsearchHandler]:
    if not config.elasticsearch.enabled:
        logger.info("No elasticsearch servers configured; logging to stdout only.")
        return None
    server = probe_elasticsearch(config.elasticsearch)
    handler = ElasticsearchHandler(config.elasticsearch, hostname=settings.hostname)
    logging.getLogger("elastic_cron").addHandler(handler)
    logger.info("Shipping logs to %s (index=%s)", server, config.elasticsearch.index)
    return handler


def command_daemon(settings: Settings) -> int:
    config = parse_config(settings.config_file)
    scheduler = Scheduler(config.jobs, settings)
    handler = attach_log_shipping(config, settings)

    def handle_term(signum: int, frame: Optional[FrameType]) -> None:
        logger.info("Received signal %s; stopping.", signum)
        scheduler.stop()

    signal.signal(signal.SIGTERM, handle_term)
    try:
        scheduler.run()
        return 0
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        if handler is not None:
            logging.getLogger("elastic_cron").removeHandler(handler)
            handler.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="elastic-cron",
        description="Cron daemon with watchdog pings and elasticsearch logging",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Cron definition file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--hostname", help="Overwrite system hostname")
    parser.add_argument(
        "--ping-timeout",
        default=DEFAULT_PING_TIMEOUT,
        help=f"Timeout for success / failure pings (default: {DEFAULT_PING_TIMEOUT})",
    )
    parser.add_argument("--timezone", help="Timezone schedules are evaluated in (default: system)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate config and schedules")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming run times")
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run jobs once, now")
    run_parser.add_argument("--job", help="Run one job by name")

    subparsers.add_parser("daemon", help="Run the scheduler")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()

    try:
        settings = Settings.build(
            config_file=args.config,
            hostname=args.hostname,
            ping_timeout=args.ping_timeout,
            timezone_name=args.timezone,
        )
        if args.command == "validate":
            return command_validate(settings)
        if args.command == "preview":
            if args.count <= 0:
                raise ElasticCronError("--count must be >= 1")
            return command_preview(settings, job_name=args.job, count=args.count)
        if args.command == "run":
            return command_run(settings, job_name=args.job)
        if args.command == "daemon":
            return command_daemon(settings)
        raise ElasticCronError(f"Unsupported command: {args.command}")
    except ElasticCronError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1
