"""Run-scoped scratch workspace.

The workspace holds pages, rendered parts, logs and the crawl snapshots for a
single run. It is torn down on every exit path unless the caller keeps it.
Before teardown the logs and snapshots are copied to ``debug_dir``.
"""

import logging
import shutil
import signal
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("site2pdf")

LOG_FILES: Dict[str, Tuple[str, int]] = {
    "site2pdf.crawl": ("crawl_errors.log", logging.WARNING),
    "site2pdf.browser": ("browser_errors.log", logging.WARNING),
    "site2pdf.render": ("render_errors.log", logging.WARNING),
    "site2pdf.merge": ("merge.log", logging.INFO),
}
DEBUG_DIR_NAME = "site2pdf-debug"


class RunContext:
    def __init__(
        self,
        *,
        keep: bool = False,
        debug_dir: Optional[Path] = None,
        parent: Optional[Path] = None,
        handle_signals: bool = True,
    ):
        self.keep = keep
        self.debug_dir = debug_dir
        self.parent = parent
        self.handle_signals = handle_signals
        self.stop = threading.Event()
        self.root: Optional[Path] = None
        self._handlers: List[Tuple[logging.Logger, logging.Handler]] = []
        self._old_signals: Dict[int, object] = {}

    # layout

    def _root(self) -> Path:
        if self.root is None:
            raise RuntimeError("workspace is not open")
        return self.root

    def _sub(self, name: str) -> Path:
        p = self._root() / name
        p.mkdir(parents=True, exist_ok=True)
        return p

    @property
    def pages_dir(self) -> Path:
        return self._sub("pages")

    @property
    def rendered_dir(self) -> Path:
        return self._sub("rendered")

    @property
    def browser_dir(self) -> Path:
        return self._sub("browser")

    @property
    def logs_dir(self) -> Path:
        return self._sub("logs")

    @property
    def queue_snapshot(self) -> Path:
        return self._root() / "queue.txt"

    @property
    def visited_snapshot(self) -> Path:
        return self._root() / "visited.txt"

    def log_path(self, logger_name: str) -> Path:
        return self.logs_dir / LOG_FILES[logger_name][0]

    # lifecycle

    def __enter__(self) -> "RunContext":
        self.root = Path(tempfile.mkdtemp(prefix="site2pdf-", dir=self.parent))
        logger.info("Working in temporary directory: %s", self.root)
        self._attach_logs()
        if self.handle_signals:
            self._install_signals()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._restore_signals()
        self._detach_logs()
        try:
            self.copy_debug_artifacts()
        finally:
            self.cleanup()

    def _attach_logs(self) -> None:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        for name, (filename, level) in LOG_FILES.items():
            h = logging.FileHandler(self.logs_dir / filename, encoding="utf-8", delay=False)
            h.setLevel(level)
            h.setFormatter(fmt)
            lg = logging.getLogger(name)
            lg.addHandler(h)
            self._handlers.append((lg, h))

    def _detach_logs(self) -> None:
        for lg, h in self._handlers:
            lg.removeHandler(h)
            h.close()
        self._handlers = []

    def _on_signal(self, signum, frame) -> None:
        if self.stop.is_set():
            raise KeyboardInterrupt
        logger.warning(
            "Interrupted (signal %d); finishing in-flight work. Repeat to abort.",
            signum,
        )
        self.stop.set()

    def _install_signals(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._old_signals[sig] = signal.signal(sig, self._on_signal)

    def _restore_signals(self) -> None:
        for sig, old in self._old_signals.items():
            signal.signal(sig, old)
        self._old_signals = {}

    def copy_debug_artifacts(self) -> Optional[Path]:
        if self.debug_dir is None or self.root is None or not self.root.exists():
            return None
        dest = Path(self.debug_dir) / DEBUG_DIR_NAME
        try:
            dest.mkdir(parents=True, exist_ok=True)
            shutil.copytree(self.root / "logs", dest / "logs", dirs_exist_ok=True)
            for name in ("queue.txt", "visited.txt"):
                src = self.root / name
                if src.exists():
                    shutil.copy2(src, dest / name)
        except OSError as e:
            logger.warning("could not copy debug artifacts to %s: %s", dest, e)
            return None
        logger.debug("debug artifacts copied to %s", dest)
        return dest

    def cleanup(self) -> None:
        if self.root is None:
            return
        if self.keep:
            logger.info("Keeping temporary directory: %s", self.root)
            return
        shutil.rmtree(self.root, ignore_errors=True)
        logger.info("Cleaned up temporary files.")
