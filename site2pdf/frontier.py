import enum
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Deque, Dict, List, Optional, TextIO

logger = logging.getLogger("site2pdf.crawl")


class EntryState(enum.Enum):
    QUEUED = "queued"
    VISITED = "visited"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class FrontierEntry:
    url: str
    depth: int


class SnapshotWriter:
    """Newline-delimited URL list, flushed after every line."""

    def __init__(self, path: Path):
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._fh: Optional[TextIO] = open(path, "a", encoding="utf-8")

    def write(self, url: str) -> None:
        if self._fh is None:
            return
        self._fh.write(url + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class Frontier:
    """BFS queue plus visited set. Every mutation happens under one lock."""

    def __init__(
        self,
        *,
        max_depth: int,
        max_pages: int,
        queue_snapshot: Optional[Path] = None,
        visited_snapshot: Optional[Path] = None,
    ):
        self.max_depth = max_depth
        self.max_pages = max_pages
        self._queue: Deque[FrontierEntry] = deque()
        self._queued: set = set()
        self._visited: set = set()
        self._skipped: Dict[str, str] = {}
        self._succeeded = 0
        self._lock = Lock()
        self._queue_log = SnapshotWriter(queue_snapshot) if queue_snapshot else None
        self._visited_log = (
            SnapshotWriter(visited_snapshot) if visited_snapshot else None
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def enqueue(self, url: str, depth: int) -> bool:
        with self._lock:
            if url in self._visited or url in self._queued:
                return False
            self._queue.append(FrontierEntry(url, depth))
            self._queued.add(url)
            if self._queue_log:
                self._queue_log.write(url)
            return True

    def dequeue_next(self) -> Optional[FrontierEntry]:
        with self._lock:
            if not self._queue:
                return None
            entry = self._queue.popleft()
            self._queued.discard(entry.url)
            return entry

    def mark_visited(self, url: str) -> bool:
        """Record ``url`` as visited; False when it already was."""
        with self._lock:
            if url in self._visited:
                return False
            self._visited.add(url)
            self._queued.discard(url)
            if self._visited_log:
                self._visited_log.write(url)
            return True

    def skip(self, url: str, reason: str) -> None:
        with self._lock:
            self._skipped[url] = reason
        logger.debug("skipped %s: %s", url, reason)

    def exceeds_depth(self, entry: FrontierEntry) -> bool:
        return entry.depth > self.max_depth

    def record_success(self) -> int:
        with self._lock:
            self._succeeded += 1
            return self._succeeded

    def can_admit(self, in_flight: int = 0) -> bool:
        with self._lock:
            return self._succeeded + in_flight < self.max_pages

    def budget_exhausted(self) -> bool:
        return not self.can_admit(0)

    @property
    def succeeded(self) -> int:
        with self._lock:
            return self._succeeded

    def state_of(self, url: str) -> Optional[EntryState]:
        with self._lock:
            if url in self._skipped:
                return EntryState.SKIPPED
            if url in self._visited:
                return EntryState.VISITED
            if url in self._queued:
                return EntryState.QUEUED
            return None

    def pending_urls(self) -> List[str]:
        with self._lock:
            return [e.url for e in self._queue]

    def skipped(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._skipped)

    def close(self) -> None:
        for w in (self._queue_log, self._visited_log):
            if w is not None:
                w.close()
