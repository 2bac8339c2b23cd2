"""
Trading Scheduler
Drives the scan, trailing-stop and heartbeat cadences with a shared stop token
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
import logging

from .state_store import PersistenceError
from ..utils.config_loader import LoopConfig

logger = logging.getLogger(__name__)

COOLDOWN_POLL_SECONDS = 10
ERROR_RETRY_SECONDS = 10


class LoopType(Enum):
    """Loop type identifiers"""
    SCAN = "scan"           # Full market scan and entries
    TRAILING = "trailing"   # Stop ratchet pass
    HEARTBEAT = "heartbeat" # Balance, rebalance, recap


@dataclass
class LoopStats:
    """Statistics for a loop"""
    loop_type: LoopType
    iterations: int = 0
    errors: int = 0
    last_run: Optional[datetime] = None
    avg_duration_ms: float = 0.0
    total_duration_ms: float = 0.0


class TradingScheduler:
    """
    Runs one asyncio task per cadence on a single event loop.

    stop() sets the stop token: sleeping loops wake and exit immediately,
    a cycle already in progress is given the grace period to finish and
    is cancelled after that.
    """

    def __init__(self, config: LoopConfig = None):
        self.config = config or LoopConfig()

        self.intervals = {
            LoopType.SCAN: self.config.scan_interval_seconds,
            LoopType.TRAILING: self.config.trailing_interval_seconds,
            LoopType.HEARTBEAT: self.config.heartbeat_interval_seconds,
        }

        self._stop = asyncio.Event()
        self._tasks: Dict[LoopType, asyncio.Task] = {}
        self._callbacks: Dict[LoopType, Callable[[], Awaitable]] = {}
        self._error_callback: Optional[Callable] = None

        self.stats = {lt: LoopStats(loop_type=lt) for lt in LoopType}
        self._consecutive_errors = {lt: 0 for lt in LoopType}
        self._error_cooldown_until: Dict[LoopType, Optional[datetime]] = {lt: None for lt in LoopType}

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stop.is_set()

    def set_callback(self, loop_type: LoopType, callback: Callable[[], Awaitable]) -> None:
        """Set the coroutine function run on each iteration of a loop"""
        self._callbacks[loop_type] = callback

    def set_error_callback(self, callback: Callable) -> None:
        """Set async callback(loop_type, error) for failed iterations"""
        self._error_callback = callback

    async def start(self) -> None:
        """Start every loop that has a callback"""
        if self._tasks:
            logger.warning("Scheduler already running")
            return

        self._stop.clear()
        for loop_type in self._callbacks:
            self._tasks[loop_type] = asyncio.create_task(
                self._run_loop(loop_type), name=f"loop-{loop_type.value}"
            )

        logger.info(
            "Scheduler started: " + ", ".join(
                f"{lt.value}={self.intervals[lt]:.0f}s" for lt in self._tasks
            )
        )

    async def stop(self) -> None:
        """Stop scheduling new cycles and drain in-flight ones"""
        if not self._tasks:
            return

        logger.info("Stopping scheduler...")
        self._stop.set()

        tasks = list(self._tasks.values())
        done, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_grace_seconds)

        for task in pending:
            logger.warning(f"Cancelling {task.get_name()} after {self.config.shutdown_grace_seconds}s grace period")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the stop token is set"""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self, loop_type: LoopType) -> None:
        interval = self.intervals[loop_type]
        callback = self._callbacks[loop_type]

        while not self._stop.is_set():
            if self._in_cooldown(loop_type):
                await self._sleep(COOLDOWN_POLL_SECONDS)
                continue

            start_time = datetime.now(timezone.utc)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._handle_error(loop_type, e)
                await self._sleep(ERROR_RETRY_SECONDS)
                continue

            self._update_stats(loop_type, start_time)
            self._consecutive_errors[loop_type] = 0

            elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
            sleep_time = max(0, interval - elapsed)
            logger.debug(f"{loop_type.value} loop done. Next run in {sleep_time:.0f}s")
            await self._sleep(sleep_time)

    def _in_cooldown(self, loop_type: LoopType) -> bool:
        """Check if loop is in error cooldown"""
        cooldown_until = self._error_cooldown_until.get(loop_type)
        if cooldown_until and datetime.now(timezone.utc) < cooldown_until:
            return True
        return False

    def _update_stats(self, loop_type: LoopType, start_time: datetime) -> None:
        stats = self.stats[loop_type]

        duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

        stats.iterations += 1
        stats.last_run = datetime.now(timezone.utc)
        stats.total_duration_ms += duration_ms
        stats.avg_duration_ms = stats.total_duration_ms / stats.iterations

    async def _handle_error(self, loop_type: LoopType, error: Exception) -> None:
        """Count the failure, enter cooldown when it keeps happening, notify"""
        self._consecutive_errors[loop_type] += 1
        self.stats[loop_type].errors += 1

        if isinstance(error, PersistenceError):
            logger.critical(f"{loop_type.value} loop aborted, state could not be persisted: {error}")
        else:
            logger.error(
                f"{loop_type.value} loop error ({self._consecutive_errors[loop_type]}): {error}",
                exc_info=error
            )

        if self._consecutive_errors[loop_type] >= self.config.max_consecutive_errors:
            cooldown = timedelta(seconds=self.config.error_cooldown_seconds)
            self._error_cooldown_until[loop_type] = datetime.now(timezone.utc) + cooldown
            logger.warning(f"{loop_type.value} loop entering cooldown for {self.config.error_cooldown_seconds}s")

        if self._error_callback:
            try:
                await self._error_callback(loop_type, error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def get_stats(self) -> Dict:
        """Get scheduler statistics"""
        return {
            "running": self.running,
            "loops": {
                lt.value: {
                    "interval_seconds": self.intervals[lt],
                    "iterations": s.iterations,
                    "errors": s.errors,
                    "avg_duration_ms": s.avg_duration_ms,
                    "last_run": s.last_run.isoformat() if s.last_run else None,
                    "in_cooldown": self._in_cooldown(lt),
                }
                for lt, s in self.stats.items()
            },
        }

    async def run_once(self, loop_type: LoopType):
        """Run a single iteration of a loop outside the schedule"""
        callback = self._callbacks.get(loop_type)
        if callback is None:
            return None
        return await callback()
