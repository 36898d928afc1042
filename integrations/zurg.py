from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence
from urllib.parse import urljoin

import aiohttp

from core.models import DetailedTorrent, Torrent
from core.utils import batch_count, chunked
from integrations.parser import parse_torrent_files, parse_torrent_list
from integrations.services import make_request


def manage_url(base_url: str, path: str) -> str:
    # Absolute paths replace any path on base_url, matching browser URL resolution
    return urljoin(base_url, path)


class ZurgClient:
    """Talks to the HTML management console of one or more Zurg instances."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        request_timeout: float = 30,
        retry_attempts: int = 0,
        retry_backoff: float = 1.0,
        debug_logging: bool = False,
    ) -> None:
        self.session = session
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.debug_logging = debug_logging

    async def _request(self, url: str, method: str = 'get') -> str:
        return await make_request(
            self.session,
            url,
            method=method,
            request_timeout=self.request_timeout,
            retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff,
            debug_logging=self.debug_logging,
        )

    async def get_torrent_list(self, base_url: str) -> List[Torrent]:
        html = await self._request(manage_url(base_url, '/manage/'))
        return parse_torrent_list(html)

    async def get_detailed_torrent(self, torrent: Torrent, base_url: str) -> DetailedTorrent:
        html = await self._request(manage_url(base_url, f'/manage/{torrent.hash}/'))
        return DetailedTorrent.from_torrent(torrent, parse_torrent_files(html))

    async def _detail_or_empty(self, torrent: Torrent, base_url: str) -> DetailedTorrent:
        try:
            return await self.get_detailed_torrent(torrent, base_url)
        except Exception as e:
            logging.warning(f'Could not fetch details for torrent {torrent.name} (Hash: {torrent.hash}): {e}')
            # Unknown state is kept as an unreadable torrent with no files rather than dropped
            return DetailedTorrent.from_torrent(torrent, unreadable=True)

    async def get_detailed_torrents_concurrently(
        self,
        torrents: Sequence[Torrent],
        base_url: str,
        concurrency_limit: int = 10,
    ) -> List[DetailedTorrent]:
        """Fetch details in barrier batches; keep broken and unreadable torrents."""
        batches = batch_count(len(torrents), concurrency_limit)
        logging.info(f'Processing {len(torrents)} torrents in {batches} batches of max {concurrency_limit}')
        detailed: List[DetailedTorrent] = []
        for idx, chunk in enumerate(chunked(torrents, concurrency_limit), start=1):
            logging.info(f'Processing batch {idx}/{batches} ({len(chunk)} torrents)')
            results = await asyncio.gather(*(self._detail_or_empty(t, base_url) for t in chunk))
            for d in results:
                if not d.unreadable and d.all_available:
                    continue
                detailed.append(d)
        return detailed

    async def delete_file(self, torrent_hash: str, file_id: str, base_url: str) -> None:
        await self._request(manage_url(base_url, f'/manage/{torrent_hash}/files/{file_id}/delete'), method='post')

    async def restore_file(self, torrent_hash: str, file_id: str, base_url: str) -> None:
        await self._request(manage_url(base_url, f'/manage/{torrent_hash}/files/{file_id}/restore'), method='post')
