#!/usr/bin/env python3
"""
Reconciliation sweep

Re-runs reconciliation for every known member in bounded-concurrency batches.
This is the recovery path for reconciliations a trigger dropped (timeouts,
storage outages, process restarts) and for window-based badges whose state
changes with the passing of time rather than with a ledger mutation.
"""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import schedule

from konfi_badges.exceptions import DBError

logger = logging.getLogger(__name__)


class ReconciliationSweep:
    """
    Args:
        reconciler: Object with an async ``reconcile(member_id)``
        list_member_ids: Async callable returning every known member id
        batch_size: Members per batch
        max_concurrent: Concurrent reconciliations within a batch
        batch_delay: Seconds to pause between batches
    """

    def __init__(self, reconciler, list_member_ids: Callable[[], Awaitable[List[Any]]],
                 batch_size: int = 50, max_concurrent: int = 5, batch_delay: float = 0.0):
        self.reconciler = reconciler
        self.list_member_ids = list_member_ids
        self.batch_size = max(1, batch_size)
        self.max_concurrent = max(1, max_concurrent)
        self.batch_delay = batch_delay

        self.stats = {
            'last_run': None,
            'last_run_duration': None,
            'total_processed': 0,
            'total_succeeded': 0,
            'total_failed': 0,
            'total_awarded': 0,
            'runs_completed': 0,
        }

    async def run(self, max_members: int = None,
                  progress_callback: Optional[Callable[[int, int], None]] = None) -> Dict[str, Any]:
        """
        Reconcile every known member.

        Args:
            max_members: Stop after this many members (None = all)
            progress_callback: Called with (members_done, members_total) after each batch

        Returns:
            Dictionary with processing results
        """
        start_time = datetime.now(timezone.utc)
        logger.info("🌙 Starting reconciliation sweep...")

        member_ids = await self.list_member_ids()
        if max_members is not None:
            member_ids = member_ids[:max_members]

        results = {
            'processed': 0,
            'succeeded': 0,
            'failed': 0,
            'badges_awarded': 0,
            'errors': [],
        }

        if not member_ids:
            logger.info("No members to reconcile")
            results['duration_seconds'] = 0
            return results

        logger.info(f"Reconciling {len(member_ids)} members...")
        semaphore = asyncio.Semaphore(self.max_concurrent)

        for i in range(0, len(member_ids), self.batch_size):
            batch = member_ids[i:i + self.batch_size]
            batch_results = await self._process_batch(batch, semaphore)

            for key in ('processed', 'succeeded', 'failed', 'badges_awarded'):
                results[key] += batch_results[key]
            results['errors'].extend(batch_results['errors'])

            logger.info(f"Processed batch {i // self.batch_size + 1}: "
                        f"{batch_results['succeeded']} succeeded, "
                        f"{batch_results['failed']} failed")

            if progress_callback:
                progress_callback(results['processed'], len(member_ids))

            if self.batch_delay and i + self.batch_size < len(member_ids):
                await asyncio.sleep(self.batch_delay)

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        results['duration_seconds'] = duration

        self.stats.update({
            'last_run': start_time,
            'last_run_duration': duration,
            'total_processed': self.stats['total_processed'] + results['processed'],
            'total_succeeded': self.stats['total_succeeded'] + results['succeeded'],
            'total_failed': self.stats['total_failed'] + results['failed'],
            'total_awarded': self.stats['total_awarded'] + results['badges_awarded'],
            'runs_completed': self.stats['runs_completed'] + 1,
        })

        logger.info(f"🎉 Sweep completed in {duration:.1f}s: "
                    f"{results['succeeded']} succeeded, {results['failed']} failed, "
                    f"{results['badges_awarded']} badges awarded")
        return results

    async def _process_batch(self, member_ids: List[Any], semaphore: asyncio.Semaphore) -> Dict[str, Any]:
        tasks = [self._reconcile_member(member_id, semaphore) for member_id in member_ids]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        batch_results = {
            'processed': len(member_ids),
            'succeeded': 0,
            'failed': 0,
            'badges_awarded': 0,
            'errors': [],
        }

        for member_id, outcome in zip(member_ids, outcomes):
            if isinstance(outcome, Exception):
                batch_results['failed'] += 1
                batch_results['errors'].append(f"{member_id}: {outcome}")
                if isinstance(outcome, DBError):
                    outcome.log_db_error()
                logger.error(f"Failed to reconcile member {member_id}: {outcome}")
            else:
                batch_results['succeeded'] += 1
                batch_results['badges_awarded'] += len(outcome)

        return batch_results

    async def _reconcile_member(self, member_id: Any, semaphore: asyncio.Semaphore):
        async with semaphore:
            return await self.reconciler.reconcile(member_id)


class NightlyScheduler:
    """
    Runs a sweep once a day at ``nightly_time`` (HH:MM, local time).

    ``job_factory`` is called in a fresh event loop on a worker thread, so it
    must open its own database connection rather than reuse one bound to the
    caller's loop.
    """

    def __init__(self, job_factory: Callable[[], Awaitable[Dict[str, Any]]],
                 nightly_time: str = "02:00", check_interval: float = 60):
        self.job_factory = job_factory
        self.check_interval = check_interval
        self.scheduler = schedule.Scheduler()
        self.scheduler_thread = None
        self._stop_event = threading.Event()
        self.last_result = None

        try:
            hour, minute = (int(part) for part in nightly_time.split(':'))
            if not (0 <= hour < 24 and 0 <= minute < 60):
                raise ValueError(nightly_time)
            self.nightly_hour, self.nightly_minute = hour, minute
        except (AttributeError, ValueError):
            self.nightly_hour = 2
            self.nightly_minute = 0
            logger.warning(f"Invalid nightly time {nightly_time!r}, using 02:00")

    @property
    def running(self) -> bool:
        return self.scheduler_thread is not None and not self._stop_event.is_set()

    def start_scheduler(self):
        """Start the nightly scheduler"""
        self._stop_event.clear()

        self.scheduler.every().day.at(f"{self.nightly_hour:02d}:{self.nightly_minute:02d}").do(
            self._run_nightly_job
        )
        logger.info(f"📅 Scheduled nightly sweep at {self.nightly_hour:02d}:{self.nightly_minute:02d}")

        self.scheduler_thread = threading.Thread(target=self._scheduler_loop, daemon=True)
        self.scheduler_thread.start()

    def stop_scheduler(self):
        """Stop the nightly scheduler"""
        self._stop_event.set()
        self.scheduler.clear()
        if self.scheduler_thread is not None:
            self.scheduler_thread.join(timeout=self.check_interval)
            self.scheduler_thread = None
        logger.info("Stopped nightly scheduler")

    def _scheduler_loop(self):
        while not self._stop_event.is_set():
            self.scheduler.run_pending()
            self._stop_event.wait(self.check_interval)

    def _run_nightly_job(self):
        logger.info("🌙 Nightly sweep triggered by scheduler")

        def run_async():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                self.last_result = loop.run_until_complete(self.job_factory())
                logger.info(f"🎉 Nightly sweep completed: {self.last_result}")
            except Exception as e:
                logger.error(f"❌ Nightly sweep failed: {e}")
            finally:
                loop.close()

        with ThreadPoolExecutor(max_workers=1) as executor:
            executor.submit(run_async)
