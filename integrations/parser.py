"""HTML extraction for the Zurg management console.

The console renders the torrent list at ``/manage/`` and one page per torrent at
``/manage/<hash>/``. Only the fields needed for repair are extracted; rows that
lack any of them are skipped.
"""
from __future__ import annotations

import re
from typing import List

from bs4 import BeautifulSoup

from core.models import Torrent, TorrentFile


_FILE_ID_RE = re.compile(r'/files/(\d+)/')


def parse_torrent_list(html: str) -> List[Torrent]:
    soup = BeautifulSoup(html, 'html.parser')
    torrents: List[Torrent] = []
    for row in soup.select('table#torrentTable tbody tr.torrent-row'):
        hash_ = (row.get('data-hash') or '').strip()
        name = (row.get('data-name') or '').strip()
        size_el = row.select_one('.torrent-size')
        date_el = row.select_one('.torrent-date')
        size = size_el.get_text(strip=True) if size_el else ''
        date = date_el.get_text(strip=True) if date_el else ''
        if hash_ and name and size and date:
            torrents.append(Torrent(hash=hash_, name=name, size=size, date=date))
    return torrents


def _extract_file_id(cell) -> str:
    # delete/restore/toggle-force-show forms all carry the id in their action
    for form in cell.find_all('form'):
        m = _FILE_ID_RE.search(form.get('action') or '')
        if m:
            return m.group(1)
    return ''


def parse_torrent_files(html: str) -> List[TorrentFile]:
    soup = BeautifulSoup(html, 'html.parser')
    files: List[TorrentFile] = []
    in_files = False
    for row in soup.select('table tbody tr'):
        headers = row.find_all('th')
        if not in_files:
            if any(th.get_text(strip=True) == 'Files' for th in headers):
                in_files = True
            continue
        if headers:
            break
        cells = row.find_all('td')
        if len(cells) != 2:
            continue
        name = cells[0].get_text(strip=True)
        right = cells[1]
        size_el = right.select_one('span.memory-stat')
        status_el = right.select_one('span.badge')
        size = size_el.get_text(strip=True) if size_el else ''
        status = status_el.get_text(strip=True) if status_el else ''
        file_id = _extract_file_id(right)
        if name and size and status and file_id:
            files.append(TorrentFile(id=file_id, name=name, size=size, status=status))
    return files
