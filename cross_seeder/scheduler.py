"""
Cross-Seed Scheduler
Owns one periodic timer per instance and guarantees at most one running
scan per instance.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from .exceptions import ScanInProgressError
from .orchestrator import CrossSeedOrchestrator, ScanResult
from .persistence import PersistenceManager

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


class CrossSeedScheduler:
    """
    Registry of per-instance timers and running flags.

    Construct once at startup, call start() to arm timers for every enabled
    configuration, and stop() on shutdown.
    """

    def __init__(
        self,
        persistence: PersistenceManager,
        orchestrator: CrossSeedOrchestrator,
        interval_unit_seconds: float = SECONDS_PER_HOUR,
    ):
        self.persistence = persistence
        self.orchestrator = orchestrator
        self.interval_unit_seconds = interval_unit_seconds

        self._timers: Dict[int, asyncio.Task] = {}
        self._schedule_locks: Dict[int, asyncio.Lock] = {}
        self._running: Set[int] = set()
        self._scan_tasks: Dict[int, asyncio.Task] = {}
        self._last_results: Dict[int, ScanResult] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Arm a timer for every enabled configuration."""
        configs = await self.persistence.list_scan_configs()
        armed = 0
        for config in configs:
            if config.enabled:
                await self.set_schedule(config.instance_id, True)
                armed += 1
        logger.info(f"Cross-seed scheduler started with {armed} active schedule(s)")

    async def stop(self) -> None:
        """Cancel every timer and in-flight scan, and wait for them to finish."""
        tasks = list(self._timers.values()) + list(self._scan_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._scan_tasks.clear()
        self._running.clear()
        logger.info("Cross-seed scheduler stopped")

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def set_schedule(self, instance_id: int, enabled: bool) -> None:
        """Create or cancel the periodic timer of an instance."""
        # Overlapping calls for one instance run one after the other
        lock = self._schedule_locks.setdefault(instance_id, asyncio.Lock())
        async with lock:
            await self._set_schedule(instance_id, enabled)

    async def _set_schedule(self, instance_id: int, enabled: bool) -> None:
        self._cancel_timer(instance_id)

        if not enabled:
            await self.persistence.update_next_run(instance_id, None)
            logger.info(f"Cross-seed schedule disabled for instance {instance_id}")
            return

        config = await self.persistence.get_scan_config(instance_id)
        if config is None:
            logger.warning(f"Cannot schedule instance {instance_id}: not configured")
            return

        self._timers[instance_id] = asyncio.create_task(
            self._timer_loop(instance_id), name=f"cross-seed-timer-{instance_id}"
        )
        logger.info(
            f"Cross-seed scheduled for instance {instance_id} every {config.interval_hours}h"
        )

    def _cancel_timer(self, instance_id: int) -> None:
        timer = self._timers.pop(instance_id, None)
        if timer is not None:
            timer.cancel()

    async def _timer_loop(self, instance_id: int) -> None:
        while True:
            try:
                config = await self.persistence.get_scan_config(instance_id)
                if config is None or not config.enabled:
                    break

                delay = config.interval_hours * self.interval_unit_seconds
                await self.persistence.update_next_run(instance_id, time.time() + delay)
                await asyncio.sleep(delay)

                config = await self.persistence.get_scan_config(instance_id)
                if config is None or not config.enabled:
                    break

                if self.is_running(instance_id):
                    logger.info(f"Scheduled scan skipped for instance {instance_id}: already running")
                    continue

                instance = await self.persistence.get_instance(instance_id)
                if instance is None:
                    logger.warning(f"Scheduled scan skipped: instance {instance_id} no longer exists")
                    continue

                logger.info(f"Running scheduled cross-seed scan for instance {instance_id}")
                self._start_scan(instance_id, instance.user_id, force=False)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cross-seed timer for instance {instance_id}: {e}")

    # -------------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------------

    def _start_scan(
        self,
        instance_id: int,
        user_id: int,
        force: bool = False,
        dry_run_override: Optional[bool] = None,
    ) -> asyncio.Task:
        # Check and mark with no await in between
        if instance_id in self._running:
            raise ScanInProgressError(instance_id)
        self._running.add(instance_id)

        task = asyncio.create_task(
            self._execute(instance_id, user_id, force, dry_run_override),
            name=f"cross-seed-scan-{instance_id}",
        )
        self._scan_tasks[instance_id] = task
        return task

    async def _execute(
        self,
        instance_id: int,
        user_id: int,
        force: bool,
        dry_run_override: Optional[bool],
    ) -> ScanResult:
        try:
            result = await self.orchestrator.scan(
                instance_id, user_id, force=force, dry_run_override=dry_run_override
            )
            self._last_results[instance_id] = result
            return result
        except Exception as e:
            logger.exception(f"Cross-seed scan for instance {instance_id} crashed: {e}")
            result = ScanResult(instance_id=instance_id).fail(f"Scan failed: {e}")
            self._last_results[instance_id] = result
            return result
        finally:
            self._running.discard(instance_id)
            self._scan_tasks.pop(instance_id, None)

    async def trigger_manual_scan(
        self,
        instance_id: int,
        user_id: int,
        force: bool = False,
        dry_run_override: Optional[bool] = None,
    ) -> ScanResult:
        """
        Run a scan now, whether or not the periodic schedule is enabled.

        Raises:
            ScanInProgressError: if a scan is already running for the instance
        """
        task = self._start_scan(instance_id, user_id, force, dry_run_override)
        return await task

    def is_running(self, instance_id: int) -> bool:
        """True while a scan for the instance is in flight."""
        return instance_id in self._running

    def last_result(self, instance_id: int) -> Optional[ScanResult]:
        return self._last_results.get(instance_id)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def status(self, instance_id: int) -> Optional[Dict[str, Any]]:
        """Scheduling status of one instance, or None if it has no configuration."""
        config = await self.persistence.get_scan_config(instance_id)
        if config is None:
            return None

        instance = await self.persistence.get_instance(instance_id)
        last = self._last_results.get(instance_id)
        return {
            "instanceId": instance_id,
            "instanceLabel": instance.label if instance else None,
            "enabled": config.enabled,
            "intervalHours": config.interval_hours,
            "dryRun": config.dry_run,
            "lastRun": config.last_run,
            "nextRun": config.next_run,
            "running": self.is_running(instance_id),
            "lastResult": last.to_dict() if last else None,
        }

    async def status_all(self, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Status of every configured instance, optionally only those owned by user_id."""
        allowed = None
        if user_id is not None:
            allowed = {inst.id for inst in await self.persistence.list_instances(user_id)}

        statuses = []
        for config in await self.persistence.list_scan_configs():
            if allowed is not None and config.instance_id not in allowed:
                continue
            status = await self.status(config.instance_id)
            if status is not None:
                statuses.append(status)
        return statuses
