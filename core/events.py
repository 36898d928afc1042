from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional


EVENT_LOGGER_NAME = 'zurg_repair.events'


def build_event_logger(level: int = logging.INFO) -> logging.Logger:
    # Dedicated non-propagating logger so event lines are not duplicated by root
    log = logging.getLogger(EVENT_LOGGER_NAME)
    log.setLevel(level)
    log.propagate = False
    for _h in list(log.handlers):
        log.removeHandler(_h)
    _h = logging.StreamHandler()
    _h.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s]: %(message)s'))
    log.addHandler(_h)
    return log


class EventBus:
    def __init__(
        self,
        *,
        structured_logs: bool = False,
        logger: Optional[Any] = None,
    ) -> None:
        self.structured_logs = structured_logs
        self.logger = logger if logger is not None else logging.getLogger(EVENT_LOGGER_NAME)

    def log(self, event: str, **fields) -> None:
        payload: Dict[str, Any] = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False))
            else:
                self.logger.info(f"{event}: {fields}")
        except Exception:
            self.logger.info(str(payload))

    def repair_result(self, instance: Optional[str], result) -> None:
        self.log(
            'repair_result',
            instance=instance,
            torrent=result.torrent_hash,
            file_id=result.file_id,
            file=result.file_name,
            status=result.status,
            message=result.message,
        )

    def repair_summary(self, instance: Optional[str], counts: Dict[str, int]) -> None:
        self.log('repair_summary', instance=instance, **counts)

    def run_report(self, summary) -> None:
        self.log(
            'run_report',
            instance=summary.instance,
            torrents=summary.torrents,
            broken_files=summary.broken_files,
            repaired=summary.repaired,
            failed=summary.failed,
            error=summary.error,
            duration=round(summary.duration, 3),
            succeeded=summary.succeeded,
        )
