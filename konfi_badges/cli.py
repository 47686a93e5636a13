#!/usr/bin/env python3
"""
Command line interface for the Konfi badge engine

Usage:
    konfi-badges init-indexes
    konfi-badges reconcile <member_id>
    konfi-badges sweep [--max-members N]
    konfi-badges progress <member_id>
    konfi-badges earned <member_id>
    konfi-badges newly-awarded <member_id>
    konfi-badges stats <member_id>
    konfi-badges criteria-types
    konfi-badges set-criteria <badge_id> <kind> <threshold> [--extra JSON] [--name NAME]
    konfi-badges nightly
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Any

from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from konfi_badges.config import EngineConfig
from konfi_badges.core.criteria import list_criteria_types
from konfi_badges.engine import BadgeEngine
from konfi_badges.exceptions import CriteriaConfigError, DBError
from konfi_badges.nightly.sweep import NightlyScheduler

logger = logging.getLogger(__name__)
console = Console(stderr=True)


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def parse_id(value: str) -> Any:
    """Konfi and badge ids are integers in the app database; anything else is kept as text."""
    try:
        return int(value)
    except ValueError:
        return value


def print_json(data: Any):
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


@contextmanager
def progress_bar(description: str = "Processing..."):
    """
    Progress bar for long-running sweeps.

    Yields:
        update(done, total): Callback to report progress
    """
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TextColumn("({task.completed}/{task.total})"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task(description, total=None)

        def update(done: int, total: int):
            progress.update(task_id, completed=done, total=total)

        yield update


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="konfi-badges", description="Konfi badge eligibility engine")
    parser.add_argument('--log-level', help='Override LOG_LEVEL')
    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('init-indexes', help='Create collection indexes')

    for name, help_text in (
        ('reconcile', 'Award every badge a member newly qualifies for'),
        ('progress', 'Show eligibility and progress for every active badge'),
        ('earned', 'List the badges a member has earned'),
        ('newly-awarded', 'Show what the last reconciliation awarded'),
        ('stats', 'Show earned and total badge counts'),
    ):
        member_parser = subparsers.add_parser(name, help=help_text)
        member_parser.add_argument('member_id', type=parse_id, help='Konfi id')

    sweep_parser = subparsers.add_parser('sweep', help='Reconcile every known member')
    sweep_parser.add_argument('--max-members', type=int, help='Maximum members to reconcile')

    subparsers.add_parser('criteria-types', help='List the available criteria kinds')

    criteria_parser = subparsers.add_parser('set-criteria', help="Create or change a badge's criteria")
    criteria_parser.add_argument('badge_id', type=parse_id, help='Badge id')
    criteria_parser.add_argument('kind', help='Criteria kind')
    criteria_parser.add_argument('threshold', type=int, help='Criteria threshold')
    criteria_parser.add_argument('--extra', help='Kind-specific parameters as JSON')
    criteria_parser.add_argument('--name', help='Badge name')
    criteria_parser.add_argument('--inactive', action='store_true', help='Store the badge as inactive')

    subparsers.add_parser('nightly', help='Run the sweep every night at NIGHTLY_SWEEP_TIME')
    return parser


async def run_command(args, config: EngineConfig) -> int:
    async with BadgeEngine(config) as engine:
        if args.command == 'init-indexes':
            await engine.ensure_indexes()
            print_json({"indexes": "ok"})

        elif args.command == 'reconcile':
            awarded = await engine.reconcile(args.member_id)
            print_json([badge.to_dict() for badge in awarded])

        elif args.command == 'sweep':
            with progress_bar("Reconciling members...") as update:
                result = await engine.sweep(max_members=args.max_members, progress_callback=update)
            print_json(result)
            return 1 if result['failed'] else 0

        elif args.command == 'progress':
            progress = await engine.get_badge_progress(args.member_id)
            print_json([item.to_dict() for item in progress])

        elif args.command == 'earned':
            print_json(await engine.get_earned_badges(args.member_id))

        elif args.command == 'newly-awarded':
            awarded = await engine.get_newly_awarded(args.member_id)
            print_json([badge.to_dict() for badge in awarded])

        elif args.command == 'stats':
            print_json(await engine.get_badge_stats(args.member_id))

        elif args.command == 'set-criteria':
            metadata = {}
            if args.name:
                metadata['name'] = args.name
            if args.inactive:
                metadata['is_active'] = False
            definition = await engine.upsert_criteria_definition(
                args.badge_id, args.kind, args.threshold,
                args.extra,
                **metadata
            )
            print_json({
                "badge_id": definition.badge_id,
                "kind": definition.kind,
                "threshold": definition.threshold,
                "extra": definition.extra_to_document(),
            })
    return 0


def run_nightly(config: EngineConfig) -> int:
    async def nightly_sweep():
        async with BadgeEngine(config) as engine:
            return await engine.sweep()

    scheduler = NightlyScheduler(nightly_sweep, nightly_time=config.nightly_sweep_time)
    stop = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    scheduler.start_scheduler()
    try:
        stop.wait()
    finally:
        scheduler.stop_scheduler()
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == 'criteria-types':
        print_json(list_criteria_types())
        return 0

    try:
        config = EngineConfig.from_env()
    except ValueError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(args.log_level or config.log_level)

    if args.command == 'nightly':
        return run_nightly(config)

    try:
        return asyncio.run(run_command(args, config))
    except CriteriaConfigError as e:
        e.log_config_error()
        return 2
    except DBError as e:
        e.log_db_error()
        return 1


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
