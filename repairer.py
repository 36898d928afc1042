import os
import asyncio
import logging
import signal
import sys
import time
from typing import Optional

import aiohttp

from core.config import AppConfig, ConfigError, env_flag, load_config
from core.events import EventBus, build_event_logger
from core.models import Instance
from core.runner import run_repair_for_instance
from core.scheduler import RepairScheduler
from core.utils import format_duration
from integrations.zurg import ZurgClient


# Helper function to get environment variables with type casting
def get_env_var(key, default=None, cast_to=str):
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default


# Scheduler mode unless explicitly disabled
SCHEDULER_MODE = get_env_var('SCHEDULER_MODE', default='true', cast_to=lambda x: x.strip().lower() != 'false')
RUN_INSTANCE = get_env_var('RUN_INSTANCE', default=None)
DEBUG_LOGGING = get_env_var('DEBUG_LOGGING', default='false', cast_to=env_flag)

LOG_FORMAT = '%(asctime)s [%(levelname)s]: %(message)s'


def setup_logging(level: int = logging.INFO) -> None:
    if DEBUG_LOGGING:
        level = logging.DEBUG
    logging.basicConfig(
        format=LOG_FORMAT,
        level=level,
        handlers=[logging.StreamHandler()],
        force=True,
    )
    # third-party schedulers log every job execution at INFO
    logging.getLogger('apscheduler').setLevel(max(level, logging.WARNING))


def build_client(session: aiohttp.ClientSession, cfg: AppConfig) -> ZurgClient:
    return ZurgClient(
        session,
        request_timeout=cfg.request_timeout,
        retry_attempts=cfg.request_retries,
        debug_logging=DEBUG_LOGGING,
    )


def build_event_bus(cfg: AppConfig) -> EventBus:
    return EventBus(structured_logs=cfg.structured_logs, logger=build_event_logger(cfg.logging_level))


def log_configuration_summary(cfg: AppConfig) -> None:
    logging.info('Configuration Summary:')
    logging.info(f'  Source: {cfg.source}')
    logging.info(f'  Total instances: {len(cfg.instances)}')
    logging.info(f'  Enabled instances: {len(cfg.enabled_instances())}')
    logging.info(f'  Timezone: {cfg.timezone}')
    for instance in cfg.instances:
        state = 'enabled' if instance.enabled else 'disabled'
        logging.info(f'  {instance.name}: {state} ({instance.cron_schedule})')


async def run_once(cfg: AppConfig, instance_name: Optional[str] = None) -> int:
    """Run one instance (or every enabled one) a single time; return an exit code."""
    if instance_name:
        instance = cfg.find_instance(instance_name)
        if instance is None:
            logging.error(f"Instance '{instance_name}' not found in configuration")
            return 1
        if not instance.enabled:
            logging.error(f"Instance '{instance_name}' is disabled")
            return 1
        targets = [instance]
    else:
        targets = cfg.enabled_instances()
        if not targets:
            logging.warning('No enabled instances found')
            return 0

    events = build_event_bus(cfg)
    failures = 0
    async with aiohttp.ClientSession() as session:
        client = build_client(session, cfg)
        for instance in targets:
            logging.info(f"Running one-time execution for instance '{instance.name}'")
            try:
                await run_repair_for_instance(instance, client, events)
                logging.info(f"Instance '{instance.name}' completed successfully")
            except Exception as e:
                failures += 1
                logging.error(f"Instance '{instance.name}' failed: {e}")
    logging.info(f'One-time execution completed for {len(targets)} instance(s), {failures} failed')
    return 1 if failures else 0


async def run_scheduler(cfg: AppConfig, stop_event: Optional[asyncio.Event] = None) -> int:
    logging.info('Starting in scheduler mode')
    log_configuration_summary(cfg)

    if stop_event is None:
        stop_event = asyncio.Event()
    received = {'signal': None}
    loop = asyncio.get_running_loop()

    def _on_signal(sig_name: str) -> None:
        received['signal'] = sig_name
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            logging.debug(f'Signal handler for {sig.name} not supported on this platform')

    events = build_event_bus(cfg)
    async with aiohttp.ClientSession() as session:
        client = build_client(session, cfg)

        async def _run(instance: Instance):
            return await run_repair_for_instance(instance, client, events)

        scheduler = RepairScheduler(
            cfg.instances,
            _run,
            timezone=cfg.timezone,
            health_check_interval=cfg.health_check_interval,
        )
        scheduler.start_all()
        logging.info('Scheduler is running. Press Ctrl+C to stop.')

        await stop_event.wait()
        await scheduler.shutdown(received['signal'], max_wait=cfg.shutdown_timeout)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            pass
    return 0


def main() -> int:
    started = time.monotonic()
    setup_logging()
    try:
        cfg = load_config()
    except ConfigError as e:
        logging.critical(f'Invalid configuration: {e}')
        return 1
    setup_logging(cfg.logging_level)

    logging.info('Starting Zurg File Repair System')
    logging.info(f"Mode: {'Scheduler' if SCHEDULER_MODE else 'One-time execution'}")
    try:
        if SCHEDULER_MODE:
            code = asyncio.run(run_scheduler(cfg))
        else:
            code = asyncio.run(run_once(cfg, RUN_INSTANCE))
    except Exception as e:
        logging.critical(f'Fatal error after {format_duration(time.monotonic() - started)}: {e}')
        return 1
    logging.info(f'Application completed in {format_duration(time.monotonic() - started)}')
    return code


if __name__ == '__main__':
    sys.exit(main())
