import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Set

from .errors import FetchFailed
from .fetch import Fetcher
from .frontier import Frontier, FrontierEntry
from .models import Artifact, ArtifactKind
from .rewrite import (
    AssetLocalizer,
    effective_page_url,
    read_page_meta,
    restore_links,
    rewrite_links,
    strip_base_tags,
)
from .urls import relative_depth, to_local_path

logger = logging.getLogger("site2pdf.crawl")


class Crawler:
    """Breadth-first crawl of one site into ``pages_dir``.

    Fetching, rewriting and asset downloads run on a bounded pool; the
    Frontier is the only state the workers share.
    """

    def __init__(
        self,
        seed_url: str,
        frontier: Frontier,
        fetcher: Fetcher,
        pages_dir: Path,
        *,
        localizer: Optional[AssetLocalizer] = None,
        workers: int = 1,
        no_parent: bool = False,
        stop: Optional[threading.Event] = None,
    ):
        self.seed_url = seed_url
        self.frontier = frontier
        self.fetcher = fetcher
        self.pages_dir = pages_dir
        self.localizer = localizer
        self.workers = max(1, workers)
        self.no_parent = no_parent
        self.stop = stop or threading.Event()
        self.failed: Dict[str, str] = {}
        self._targets: Dict[Path, str] = {}
        self._results_lock = threading.Lock()

    def local_path(self, url: str) -> Path:
        return self.pages_dir / to_local_path(url)

    def crawl(self) -> List[Artifact]:
        self.pages_dir.mkdir(parents=True, exist_ok=True)
        self.frontier.enqueue(self.seed_url, 0)
        pages: List[Artifact] = []
        pending: Set[Future] = set()
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            while True:
                while (
                    not self.stop.is_set()
                    and len(pending) < self.workers
                    and self.frontier.can_admit(len(pending))
                ):
                    entry = self.frontier.dequeue_next()
                    if entry is None:
                        break
                    if not self.frontier.mark_visited(entry.url):
                        continue
                    if self.frontier.exceeds_depth(entry):
                        self.frontier.skip(entry.url, f"depth {entry.depth}")
                        continue
                    pending.add(pool.submit(self.process, entry))
                if not pending:
                    break
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    artifact = fut.result()
                    if artifact is not None:
                        pages.append(artifact)
                        self.frontier.record_success()
        if self.stop.is_set():
            logger.warning(
                "crawl stopped early, %d URL(s) left in queue", len(self.frontier)
            )
        self.restore_unsaved_links(pages)
        return pages

    def restore_unsaved_links(self, pages: List[Artifact]) -> int:
        """Rewrite links to pages that were never saved back to absolute URLs."""
        with self._results_lock:
            missing = {
                Path(os.path.normpath(p)): url
                for p, url in self._targets.items()
                if not p.exists()
            }
        if not missing:
            return 0
        restored = 0
        for artifact in pages:
            path = artifact.local_path
            try:
                text = path.read_text(encoding="utf-8")
                new_text, n = restore_links(text, path, missing)
                if n:
                    path.write_text(new_text, encoding="utf-8")
            except OSError as e:
                logger.warning("cannot restore links in %s: %s", path, e)
                continue
            restored += n
        logger.debug("%d link(s) to unsaved pages made absolute", restored)
        return restored

    def process(self, entry: FrontierEntry) -> Optional[Artifact]:
        logger.info("Fetch page depth=%d: %s", entry.depth, entry.url)
        try:
            result = self.fetcher.fetch(entry.url)
        except FetchFailed as e:
            logger.warning("fetch failed (%s): %s", e.kind, e)
            with self._results_lock:
                self.failed[entry.url] = e.kind
            return None

        text = result.text
        meta = read_page_meta(text)
        page_url = effective_page_url(result.final_url or entry.url, meta.base_href, self.seed_url)
        if meta.base_href:
            text = strip_base_tags(text)

        page_path = self.local_path(entry.url)
        rewrite = rewrite_links(
            text,
            page_url=page_url,
            seed_url=self.seed_url,
            page_path=page_path,
            pages_dir=self.pages_dir,
            no_parent=self.no_parent,
        )
        text = rewrite.html
        with self._results_lock:
            self._targets.update(rewrite.targets)
        added = 0
        if not self.frontier.exceeds_depth(entry):
            for link in rewrite.links:
                if self.frontier.enqueue(link, relative_depth(link, self.seed_url)):
                    added += 1
        try:
            if self.localizer is not None:
                text = self.localizer.localize(text, page_url, page_path)
            page_path.parent.mkdir(parents=True, exist_ok=True)
            page_path.write_text(text, encoding="utf-8")
        except OSError as e:
            logger.warning("cannot save page (io): %s: %s", entry.url, e)
            with self._results_lock:
                self.failed[entry.url] = "io"
            if page_path.exists():
                page_path.unlink()
            return None
        logger.debug(
            "saved %s (%d links rewritten, %d queued)", page_path, rewrite.rewritten, added
        )
        return Artifact(entry.url, page_path, ArtifactKind.HTML, meta.title)
