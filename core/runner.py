from __future__ import annotations

import logging
import time
from typing import Any, List

from core.models import Instance, RepairTarget, RunSummary
from core.repair import repair_files_concurrently
from core.utils import elapsed_since, format_duration


class RepairRunError(Exception):
    """An instance run finished with failed or errored repairs."""

    def __init__(self, summary: RunSummary) -> None:
        self.summary = summary
        super().__init__(
            f"Some repairs failed for instance '{summary.instance}'. "
            f"{summary.failed} failed, {summary.error} errors."
        )


def collect_repair_targets(detailed_torrents) -> List[RepairTarget]:
    targets: List[RepairTarget] = []
    for torrent in detailed_torrents:
        for f in torrent.broken_files():
            targets.append(RepairTarget(torrent, f))
    return targets


def log_detailed_torrent(torrent) -> None:
    logging.debug(f'Torrent: {torrent.name} (Hash: {torrent.hash})')
    logging.debug(f'  Size: {torrent.size}')
    logging.debug(f'  Date Added: {torrent.date}')
    if torrent.files:
        logging.debug(f'  Files ({len(torrent.files)}):')
        for f in torrent.files:
            logging.debug(f'    - Name: {f.name} (Size: {f.size}, Status: {f.status}, ID: {f.id})')
    else:
        logging.debug('  No files found for this torrent.')


def log_report(summary: RunSummary) -> None:
    logging.info(f"=== REPAIR REPORT FOR '{summary.instance.upper()}' ===")
    logging.info(f'Total time: {format_duration(summary.duration)}')
    logging.info('Results:')
    logging.info(f'  Successfully repaired: {summary.repaired}')
    logging.info(f'  Failed to repair: {summary.failed}')
    logging.info(f'  Errors encountered: {summary.error}')
    if summary.success_rate is not None:
        logging.info(f'  Success rate: {summary.success_rate}%')


async def run_repair_for_instance(
    instance: Instance,
    client: Any,
    events: Any = None,
) -> RunSummary:
    """Find and repair broken files on one Zurg instance.

    Returns the run summary when every repair succeeded (or nothing needed
    repair). Raises RepairRunError when any repair failed or errored; listing
    failures propagate unchanged.
    """
    started = time.monotonic()
    summary = RunSummary(instance=instance.name)

    try:
        logging.info(f"Starting repair process for instance '{instance.name}'")

        logging.info('Fetching all torrents...')
        torrents = await client.get_torrent_list(instance.base_url)
        summary.torrents = len(torrents)
        logging.info(f'Found {len(torrents)} total torrents')

        if not torrents:
            logging.info('No torrents found, nothing to process')
            summary.duration = elapsed_since(started)
            return summary

        logging.info('Analyzing torrents for broken files...')
        detailed = await client.get_detailed_torrents_concurrently(
            torrents, instance.base_url, instance.concurrency_limit
        )

        for d in detailed:
            log_detailed_torrent(d)
        targets = collect_repair_targets(detailed)
        summary.torrents_with_broken_files = len({t.torrent.hash for t in targets})
        summary.broken_files = len(targets)

        logging.info(f"Analysis complete for '{instance.name}':")
        logging.info(f'  Total torrents: {summary.torrents}')
        logging.info(f'  Torrents with broken files: {summary.torrents_with_broken_files}')
        logging.info(f'  Total broken files found: {summary.broken_files}')

        if not targets:
            logging.info(f"No broken files found for '{instance.name}'! All files are available.")
            summary.duration = elapsed_since(started)
            return summary

        logging.info(f'Starting repair process for {len(targets)} broken files...')
        results = await repair_files_concurrently(
            client,
            targets,
            instance.base_url,
            concurrency_limit=instance.concurrency_limit,
            max_retries=instance.retry_attempts,
            retry_delay=instance.retry_delay,
            events=events,
            instance=instance.name,
        )
        summary.add_results(results)
        summary.duration = elapsed_since(started)

        log_report(summary)
        if events is not None:
            events.run_report(summary)

        if not summary.succeeded:
            logging.warning(f"Failed/Error repairs for '{instance.name}':")
            for r in summary.failures():
                logging.warning(f'  {r.file_name}: {r.message}')
            raise RepairRunError(summary)

        logging.info(f"All repairs completed successfully for '{instance.name}'!")
        return summary
    except RepairRunError as e:
        logging.warning(str(e))
        raise
    except Exception as e:
        logging.error(
            f"Fatal error in instance '{instance.name}' after {format_duration(elapsed_since(started))}: {e}"
        )
        logging.debug('Traceback', exc_info=True)
        raise
