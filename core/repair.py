from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from core.models import (
    ERROR,
    FAILED,
    REPAIRED,
    RepairResult,
    RepairTarget,
    Torrent,
    TorrentFile,
)
from core.retry import retry_until
from core.utils import batch_count, chunked


def _seconds(delay_ms: float) -> float:
    return max(0.0, float(delay_ms) / 1000.0)


async def repair_file(
    client: Any,
    torrent: Torrent,
    file: TorrentFile,
    base_url: str,
    max_retries: int = 3,
    retry_delay: float = 2000,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RepairResult:
    """Delete and restore one file, then poll until Zurg reports it available.

    ``retry_delay`` is in milliseconds. Delete or restore failures end the repair
    with an ``error`` result; verification never raises.
    """
    target = RepairTarget(torrent, file)
    logging.info(f'Starting repair for file: {file.name}')

    try:
        await client.delete_file(torrent.hash, file.id, base_url)
        await client.restore_file(torrent.hash, file.id, base_url)
    except Exception as e:
        logging.error(f"Error repairing '{file.name}': {e}")
        return RepairResult.for_target(target, ERROR, f'Repair process failed: {e}')

    # restore is processed asynchronously by Zurg
    await sleep(_seconds(retry_delay))

    async def _check(attempt: int) -> Optional[TorrentFile]:
        updated = await client.get_detailed_torrent(torrent, base_url)
        found = updated.find_file(file.id)
        if found is None:
            logging.warning(
                f'File not found after restore attempt: torrent={torrent.hash} file_id={file.id} name={file.name} attempt={attempt}'
            )
        elif not found.is_available and attempt >= max_retries:
            logging.warning(
                f"File '{file.name}' still not available after {attempt} attempts (Status: {found.status})"
            )
        return found

    outcome = await retry_until(
        _check,
        max_attempts=max_retries,
        delay=_seconds(retry_delay),
        predicate=lambda f: f is not None and f.is_available,
        sleep=sleep,
    )

    if outcome.succeeded:
        logging.info(f"File '{file.name}' repaired successfully")
        return RepairResult.for_target(
            target,
            REPAIRED,
            f'File repaired successfully after {outcome.attempts} verification attempt(s)',
        )

    if outcome.error is not None:
        logging.warning(f"Verification error for '{file.name}' on final attempt: {outcome.error}")
    logging.error(f"File '{file.name}' repair failed - still not available after {max_retries} attempts")
    return RepairResult.for_target(
        target,
        FAILED,
        f'File repair failed - still not available after {max_retries} verification attempts',
    )


def summarize_results(results: Iterable[RepairResult]) -> Dict[str, int]:
    counts = {REPAIRED: 0, FAILED: 0, ERROR: 0}
    for r in results:
        counts[r.status] = counts.get(r.status, 0) + 1
    return counts


async def _guarded_repair(
    client: Any,
    target: RepairTarget,
    base_url: str,
    max_retries: int,
    retry_delay: float,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RepairResult:
    try:
        return await repair_file(
            client, target.torrent, target.file, base_url, max_retries, retry_delay, sleep=sleep
        )
    except Exception as e:
        logging.error(
            f'Repair task raised: torrent={target.torrent.hash} file_id={target.file.id} name={target.file.name} error={e}'
        )
        return RepairResult.for_target(target, ERROR, f'Repair task raised: {e}')


async def repair_files_concurrently(
    client: Any,
    targets: Sequence[RepairTarget],
    base_url: str,
    concurrency_limit: int = 5,
    max_retries: int = 3,
    retry_delay: float = 2000,
    events: Any = None,
    instance: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> List[RepairResult]:
    """Repair ``targets`` in barrier batches of ``concurrency_limit``.

    Every member of a batch finishes before the next batch starts. The returned
    list has one result per target in input order.
    """
    total_batches = batch_count(len(targets), concurrency_limit)
    logging.info(f'Starting concurrent repair process: total_repairs={len(targets)} concurrency_limit={concurrency_limit}')

    results: List[RepairResult] = []
    for idx, chunk in enumerate(chunked(targets, concurrency_limit), start=1):
        logging.info(f'Processing repair batch {idx}/{total_batches} (batch_size={len(chunk)})')
        batch = await asyncio.gather(
            *(_guarded_repair(client, t, base_url, max_retries, retry_delay, sleep) for t in chunk)
        )
        results.extend(batch)
        if events is not None:
            for r in batch:
                events.repair_result(instance, r)

    counts = summarize_results(results)
    logging.info(
        f'Repair process completed: total={len(results)} repaired={counts[REPAIRED]} failed={counts[FAILED]} errors={counts[ERROR]}'
    )
    if events is not None:
        events.repair_summary(instance, {'total': len(results), **counts})
    return results
