"""
Scheduling coordinator for Zurg repair runs.

RepairScheduler owns one APScheduler cron job per enabled instance and a
JobState per instance. It guarantees at most one concurrent run per instance and
drains active runs on shutdown.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.models import Instance
from core.utils import elapsed_since, format_duration, join_names


HEALTH_CHECK_JOB_ID = 'health_check'
# Overlap is decided by JobState.running; APScheduler must not drop fires first
_APS_MAX_INSTANCES = 10


class InstanceNotFound(KeyError):
    pass


class InstanceDisabled(RuntimeError):
    pass


@dataclass
class JobState:
    job: Any = None
    running: bool = False


def build_cron_trigger(expression: str, timezone: str = 'UTC') -> CronTrigger:
    return CronTrigger.from_crontab(expression, timezone=timezone)


def is_valid_cron(expression: str, timezone: str = 'UTC') -> bool:
    try:
        build_cron_trigger(expression, timezone)
    except (ValueError, TypeError, LookupError):
        return False
    return True


def _job_id(name: str) -> str:
    return f'repair_{name}'


class RepairScheduler:
    """Runs each enabled instance on its cron schedule."""

    def __init__(
        self,
        instances: Sequence[Instance],
        run_instance: Callable[[Instance], Awaitable[Any]],
        *,
        timezone: str = 'UTC',
        health_check_interval: float = 300,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.instances: List[Instance] = list(instances)
        self.run_instance = run_instance
        self.timezone = timezone
        self.health_check_interval = health_check_interval
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self.states: Dict[str, JobState] = {}
        self._started = False

    def start_all(self) -> None:
        logging.info('Starting Zurg Repair Scheduler')
        logging.info(f'Loaded {len(self.instances)} instance(s)')
        for instance in self.instances:
            if instance.enabled:
                self.schedule_instance(instance)
            else:
                logging.info(f"Instance '{instance.name}' is disabled, skipping")

        if self.health_check_interval and self.health_check_interval > 0:
            self._add_health_check_job()

        if not self.scheduler.running:
            self.scheduler.start()
        self._started = True
        logging.info('All schedulers started successfully')
        self.log_scheduled_instances()

    def schedule_instance(self, instance: Instance) -> bool:
        logging.info(f"Scheduling instance '{instance.name}' with cron: {instance.cron_schedule}")
        logging.debug(f'Using timezone: {self.timezone}')
        try:
            trigger = build_cron_trigger(instance.cron_schedule, self.timezone)
        except (ValueError, TypeError, LookupError) as e:
            logging.error(f"Invalid cron expression for instance '{instance.name}': {instance.cron_schedule} ({e})")
            return False

        try:
            job = self.scheduler.add_job(
                self.execute_instance,
                trigger,
                args=[instance],
                id=_job_id(instance.name),
                name=f'repair:{instance.name}',
                replace_existing=True,
                coalesce=True,
                max_instances=_APS_MAX_INSTANCES,
            )
        except Exception as e:
            logging.error(f"Failed to schedule instance '{instance.name}': {e}")
            return False

        state = self.states.setdefault(instance.name, JobState())
        state.job = job
        logging.info(f"Instance '{instance.name}' scheduled successfully")
        return True

    def _add_health_check_job(self) -> None:
        self.scheduler.add_job(
            self._health_check,
            trigger=IntervalTrigger(seconds=self.health_check_interval),
            id=HEALTH_CHECK_JOB_ID,
            replace_existing=True,
        )
        logging.debug(f'Health check job scheduled (every {self.health_check_interval}s)')

    async def _health_check(self) -> None:
        running = self.running_instances()
        if running:
            logging.info(f'Health check: {len(running)} instance(s) currently running')

    def log_scheduled_instances(self) -> None:
        logging.info('Scheduled instances:')
        for instance in self.instances:
            state = self.states.get(instance.name)
            if state is None or state.job is None:
                continue
            next_run = getattr(state.job, 'next_run_time', None)
            suffix = f' next run {next_run}' if next_run else ''
            logging.info(f'  {instance.name}: {instance.cron_schedule} ({self.timezone}){suffix}')

    def is_running(self, name: str) -> bool:
        state = self.states.get(name)
        return bool(state and state.running)

    def running_instances(self) -> List[str]:
        return [name for name, state in self.states.items() if state.running]

    async def execute_instance(self, instance: Instance) -> None:
        state = self.states.setdefault(instance.name, JobState())
        # No await between the check and the set: this is the exclusivity point
        if state.running:
            logging.warning(f"Instance '{instance.name}' is already running, skipping this execution")
            return
        state.running = True
        started = time.monotonic()
        try:
            logging.info(f"Starting repair process for instance '{instance.name}'")
            logging.info(f'Base URL: {instance.base_url}')
            logging.info(f'Concurrency: {instance.concurrency_limit}')
            await self.run_instance(instance)
            logging.info(
                f"Instance '{instance.name}' completed successfully in {format_duration(elapsed_since(started))}"
            )
        except Exception as e:
            logging.error(f"Instance '{instance.name}' failed after {format_duration(elapsed_since(started))}: {e}")
        finally:
            state.running = False

    async def run_instance_now(self, name: str) -> None:
        instance = next((i for i in self.instances if i.name == name), None)
        if instance is None:
            raise InstanceNotFound(f"Instance '{name}' not found")
        if not instance.enabled:
            raise InstanceDisabled(f"Instance '{name}' is disabled")
        await self.execute_instance(instance)

    def get_status(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for instance in self.instances:
            state = self.states.get(instance.name)
            out.append({
                'name': instance.name,
                'enabled': instance.enabled,
                'running': bool(state and state.running),
                'cron_schedule': instance.cron_schedule,
                'scheduled': bool(state and state.job is not None),
            })
        return out

    def stop_all(self) -> None:
        """Remove every trigger so no new runs start. Active runs continue."""
        logging.info('Stopping all scheduled jobs...')
        for name, state in self.states.items():
            if state.job is None:
                continue
            try:
                self.scheduler.remove_job(state.job.id)
            except Exception as e:
                logging.debug(f"Job for instance '{name}' already removed: {e}")
            state.job = None
            logging.info(f"Stopped job for instance '{name}'")
        if self.scheduler.get_job(HEALTH_CHECK_JOB_ID):
            self.scheduler.remove_job(HEALTH_CHECK_JOB_ID)
        logging.info('All jobs stopped')

    async def shutdown(
        self,
        signal_name: Optional[str] = None,
        max_wait: float = 30.0,
        check_interval: float = 1.0,
    ) -> List[str]:
        """Stop triggers and wait for running instances to finish.

        Returns the names of instances still running when ``max_wait`` elapsed.
        """
        if signal_name:
            logging.info(f'Received {signal_name}, shutting down gracefully...')
        self.stop_all()

        waited = 0.0
        while self.running_instances() and waited < max_wait:
            logging.info(f'Waiting for {len(self.running_instances())} running job(s) to complete...')
            await asyncio.sleep(check_interval)
            waited += check_interval

        remaining = self.running_instances()
        if remaining:
            logging.warning(
                f'Force shutting down with {len(remaining)} job(s) still running: {join_names(remaining)}'
            )

        if self._started and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._started = False
        self.states.clear()
        return remaining
