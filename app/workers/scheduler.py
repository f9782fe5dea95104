"""
Worker Scheduler Configuration

Registers and schedules background workers: idempotency ledger eviction and the
tracking reconciliation sweep over active shipments.
"""

import logging
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from app.config import settings
from app.database import SessionLocal
from app.services.idempotency import get_idempotency_ledger
from app.services.tracking_sync import sync_active_orders

logger = logging.getLogger(__name__)

TICK_SECONDS = 30


async def run_ledger_eviction() -> Dict[str, Any]:
    """Drop idempotency keys older than the TTL."""
    removed = await asyncio.get_running_loop().run_in_executor(None, get_idempotency_ledger().evict_expired)
    return {"success": True, "message": f"Evicted {removed} expired event keys", "removed": removed}


async def run_tracking_sweep() -> Dict[str, Any]:
    """Pull courier status for every active shipment."""
    db = SessionLocal()
    try:
        result = await sync_active_orders(db, get_idempotency_ledger())
    finally:
        db.close()
    return {
        "success": True,
        "message": f"{result['synced']} synced, {result['updated']} updated, {result['stale']} stale",
        **result,
    }


class WorkerScheduler:
    """Scheduler for running background workers at specified intervals."""

    def __init__(self):
        started = datetime.now(timezone.utc)
        self.workers = {
            "ledger_eviction": {
                "func": run_ledger_eviction,
                "interval": settings.IDEMPOTENCY_EVICT_INTERVAL_SEC,
                "last_run": None,
                "not_before": started,
                "enabled": True,
            },
            "tracking_sync": {
                "func": run_tracking_sweep,
                "interval": settings.TRACKING_SYNC_INTERVAL_SEC,
                "last_run": None,
                "not_before": started + timedelta(seconds=settings.TRACKING_SYNC_FIRST_DELAY_SEC),
                "enabled": True,
            },
        }
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._in_flight: set[str] = set()
        self._runs: set[asyncio.Task] = set()

    async def run_worker(self, worker_name: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run a single worker and log results.

        Args:
            worker_name: Name of the worker
            worker_config: Worker configuration

        Returns:
            Worker result
        """
        self._in_flight.add(worker_name)
        try:
            logger.info("Starting worker: %s", worker_name)
            result = await worker_config["func"]()
            if result.get("success", False):
                logger.info("Worker %s completed: %s", worker_name, result.get("message", "No message"))
            else:
                logger.error("Worker %s failed: %s", worker_name, result.get("message", "Unknown error"))
            return result
        except Exception as e:
            logger.exception("Worker %s crashed", worker_name)
            return {
                "success": False,
                "message": f"Worker crashed: {e}",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        finally:
            worker_config["last_run"] = datetime.now(timezone.utc)
            self._in_flight.discard(worker_name)

    def launch(self, worker_name: str, worker_config: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self.run_worker(worker_name, worker_config))
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    def due(self, worker_name: str, now: datetime) -> bool:
        worker_config = self.workers[worker_name]
        if not worker_config["enabled"] or worker_name in self._in_flight:
            return False
        if now < worker_config["not_before"]:
            return False
        last_run = worker_config["last_run"]
        return last_run is None or (now - last_run).total_seconds() >= worker_config["interval"]

    async def start_scheduler(self):
        """Start the background worker scheduler."""
        self.running = True
        logger.info("Worker scheduler started")

        while self.running:
            current_time = datetime.now(timezone.utc)
            for worker_name, worker_config in self.workers.items():
                if self.due(worker_name, current_time):
                    self.launch(worker_name, worker_config)
            await asyncio.sleep(TICK_SECONDS)

    def stop_scheduler(self):
        """Stop the background worker scheduler."""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        for task in list(self._runs):
            task.cancel()
        logger.info("Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        """Get current status of all workers."""
        status = {}
        for worker_name, worker_config in self.workers.items():
            last_run = worker_config["last_run"]
            next_run = last_run + timedelta(seconds=worker_config["interval"]) if last_run else worker_config["not_before"]
            status[worker_name] = {
                "enabled": worker_config["enabled"],
                "last_run": last_run.isoformat() if last_run else None,
                "next_run": next_run.isoformat(),
                "interval_seconds": worker_config["interval"],
                "status": "running" if self.running else "stopped"
            }
        return status


# Global scheduler instance
scheduler = WorkerScheduler()


def start_background_workers():
    """Start the background worker scheduler."""
    if not settings.WORKERS_ENABLED:
        logger.info("Background workers disabled (WORKERS_ENABLED=false)")
        return
    scheduler._task = asyncio.create_task(scheduler.start_scheduler())
    logger.info("Background workers started")


def stop_background_workers():
    """Stop the background worker scheduler."""
    scheduler.stop_scheduler()


def get_workers_status() -> Dict[str, Any]:
    """Get status of all background workers."""
    return scheduler.get_worker_status()
