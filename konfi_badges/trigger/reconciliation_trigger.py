#!/usr/bin/env python3
"""
Reconciliation Trigger

Re-runs reconciliation after every ledger or catalog mutation. The mutation
itself has already committed by the time the trigger is called, and nothing the
trigger does can undo it: failures are logged, retried a bounded number of
times and otherwise left to the nightly sweep.

Modes:
    background  A pool of asyncio workers drains a per-member queue. A member
                already waiting in the queue is not queued twice.
    inline      The caller awaits one reconciliation, bounded by the timeout.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from konfi_badges.config import RECONCILE_MODES
from konfi_badges.exceptions import DBError

logger = logging.getLogger(__name__)


class ReconciliationTrigger:
    """
    Args:
        reconciler: Object with an async ``reconcile(member_id)``
        list_member_ids: Async callable returning every known member id
        mode: "background" or "inline"
        workers: Number of background workers
        timeout: Seconds one reconcile attempt may take
        max_retries: Extra attempts after a failed or timed-out reconcile
        retry_delay: Base delay between attempts, multiplied by the attempt number
    """

    def __init__(self, reconciler, list_member_ids: Callable[[], Awaitable[List[Any]]],
                 mode: str = "background", workers: int = 4, timeout: float = 30.0,
                 max_retries: int = 2, retry_delay: float = 0.5):
        if mode not in RECONCILE_MODES:
            raise ValueError(f"Unknown reconcile mode {mode!r}")
        self.reconciler = reconciler
        self.list_member_ids = list_member_ids
        self.mode = mode
        self.workers = max(1, workers)
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay

        self.queue: Optional[asyncio.Queue] = None
        self._queued: Set[Any] = set()
        self._worker_tasks: List[asyncio.Task] = []
        self.running = False

        self.stats = {
            'mutations_received': 0,
            'catalog_changes': 0,
            'reconciliations_enqueued': 0,
            'duplicates_skipped': 0,
            'reconciliations_succeeded': 0,
            'reconciliations_failed': 0,
            'retries': 0,
            'timeouts': 0,
            'badges_awarded': 0,
            'start_time': None,
        }

    ############################################################################
                            # Worker pool lifecycle
    ############################################################################

    async def start(self):
        """Start the background workers (no-op in inline mode or when already running)."""
        if self.running or self.mode != "background":
            return
        self._start_workers()

    def _start_workers(self):
        if self.queue is None:
            self.queue = asyncio.Queue()
        self.running = True
        self.stats['start_time'] = datetime.now(timezone.utc)
        self._worker_tasks = [
            asyncio.create_task(self._worker(i)) for i in range(self.workers)
        ]
        logger.info(f"🚀 Reconciliation trigger started with {self.workers} workers")

    async def join(self):
        """Wait until every queued reconciliation has finished."""
        if self.queue is not None:
            await self.queue.join()

    async def stop(self, drain: bool = True):
        """Stop the workers, by default after the queue has drained."""
        if not self.running:
            return

        if drain:
            await self.join()

        self.running = False
        for task in self._worker_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []
        self.queue = None
        self._queued.clear()
        logger.info("🛑 Reconciliation trigger stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop(drain=exc_type is None)

    ############################################################################
                            # Mutation hooks
    ############################################################################

    async def on_ledger_mutation(self, member_id: Any):
        """
        Called after a point event of ``member_id`` was created or removed.

        In background mode this returns as soon as the member is queued. In
        inline mode it awaits one best-effort reconciliation; errors are
        logged and never raised.
        """
        self.stats['mutations_received'] += 1

        if self.mode == "inline":
            await self._reconcile_with_retries(member_id)
            return

        self._enqueue(member_id)

    async def on_catalog_change(self) -> int:
        """
        Called after a badge's criteria changed: every known member is
        reconciled again, since the criteria changed rather than a ledger.

        Returns:
            Number of members triggered
        """
        self.stats['catalog_changes'] += 1
        try:
            member_ids = await self.list_member_ids()
        except DBError as e:
            e.log_db_error()
            logger.error("❌ Could not list members after catalog change; the nightly sweep will catch up")
            return 0

        logger.info(f"🏷️  Catalog changed, re-evaluating {len(member_ids)} members")
        for member_id in member_ids:
            if self.mode == "inline":
                await self._reconcile_with_retries(member_id)
            else:
                self._enqueue(member_id)
        return len(member_ids)

    def _enqueue(self, member_id: Any):
        if not self.running:
            # Lazily start on first use inside a running event loop
            self._start_workers()

        if member_id in self._queued:
            self.stats['duplicates_skipped'] += 1
            return

        self._queued.add(member_id)
        self.queue.put_nowait(member_id)
        self.stats['reconciliations_enqueued'] += 1

    ############################################################################
                            # Reconciliation
    ############################################################################

    async def _worker(self, worker_id: int):
        while True:
            member_id = await self.queue.get()
            # Mutations arriving from here on queue the member again
            self._queued.discard(member_id)
            try:
                await self._reconcile_with_retries(member_id)
            finally:
                self.queue.task_done()

    async def _reconcile_with_retries(self, member_id: Any) -> bool:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                awarded = await asyncio.wait_for(
                    self.reconciler.reconcile(member_id), timeout=self.timeout
                )
                self.stats['reconciliations_succeeded'] += 1
                self.stats['badges_awarded'] += len(awarded or [])
                return True
            except asyncio.TimeoutError:
                self.stats['timeouts'] += 1
                logger.warning(
                    f"⏰ Reconciliation of member {member_id} timed out after {self.timeout}s "
                    f"(attempt {attempt}/{attempts})"
                )
            except DBError as e:
                e.log_db_error()
                logger.warning(f"⚠️  Reconciliation of member {member_id} failed (attempt {attempt}/{attempts})")
            except Exception as e:
                logger.error(
                    f"❌ Reconciliation of member {member_id} failed (attempt {attempt}/{attempts}): {e}"
                )

            if attempt < attempts:
                self.stats['retries'] += 1
                await asyncio.sleep(self.retry_delay * attempt)

        self.stats['reconciliations_failed'] += 1
        logger.error(f"❌ Giving up on member {member_id}; the nightly sweep will retry")
        return False

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats['queue_size'] = self.queue.qsize() if self.queue is not None else 0
        stats['mode'] = self.mode
        return stats
