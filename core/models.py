from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple


REPAIRED = 'repaired'
FAILED = 'failed'
ERROR = 'error'


@dataclass(frozen=True)
class Instance:
    name: str
    base_url: str
    cron_schedule: str
    concurrency_limit: int = 10
    enabled: bool = True
    retry_attempts: int = 3
    # milliseconds
    retry_delay: int = 2000


@dataclass(frozen=True)
class Torrent:
    hash: str
    name: str
    size: str = ''
    date: str = ''


@dataclass(frozen=True)
class TorrentFile:
    id: str
    name: str
    size: str
    status: str

    @property
    def is_available(self) -> bool:
        return (self.status or '').lower() == 'available'


@dataclass(frozen=True)
class DetailedTorrent(Torrent):
    files: Tuple[TorrentFile, ...] = ()
    # details could not be fetched; files is empty and the real state unknown
    unreadable: bool = False

    @classmethod
    def from_torrent(
        cls, torrent: Torrent, files: Iterable[TorrentFile] = (), unreadable: bool = False
    ) -> 'DetailedTorrent':
        return cls(
            hash=torrent.hash,
            name=torrent.name,
            size=torrent.size,
            date=torrent.date,
            files=tuple(files),
            unreadable=unreadable,
        )

    def find_file(self, file_id: str) -> Optional[TorrentFile]:
        for f in self.files:
            if f.id == file_id:
                return f
        return None

    def broken_files(self) -> List[TorrentFile]:
        return [f for f in self.files if not f.is_available]

    @property
    def all_available(self) -> bool:
        return all(f.is_available for f in self.files)


@dataclass(frozen=True)
class RepairTarget:
    torrent: Torrent
    file: TorrentFile


@dataclass(frozen=True)
class RepairResult:
    torrent_hash: str
    file_id: str
    file_name: str
    status: str
    message: str

    @classmethod
    def for_target(cls, target: RepairTarget, status: str, message: str) -> 'RepairResult':
        return cls(
            torrent_hash=target.torrent.hash,
            file_id=target.file.id,
            file_name=target.file.name,
            status=status,
            message=message,
        )

    @property
    def repaired(self) -> bool:
        return self.status == REPAIRED


@dataclass
class RunSummary:
    instance: str
    torrents: int = 0
    torrents_with_broken_files: int = 0
    broken_files: int = 0
    repaired: int = 0
    failed: int = 0
    error: int = 0
    duration: float = 0.0
    results: List[RepairResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.repaired + self.failed + self.error

    @property
    def succeeded(self) -> bool:
        return (self.failed + self.error) == 0

    @property
    def success_rate(self) -> Optional[int]:
        if not self.broken_files:
            return None
        return round((self.repaired / self.broken_files) * 100)

    def failures(self) -> List[RepairResult]:
        return [r for r in self.results if not r.repaired]

    def add_results(self, results: Iterable[RepairResult]) -> None:
        for r in results:
            self.results.append(r)
            if r.status == REPAIRED:
                self.repaired += 1
            elif r.status == FAILED:
                self.failed += 1
            else:
                self.error += 1
