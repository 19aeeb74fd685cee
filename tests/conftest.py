"""Shared fakes for the fetch, render and merge collaborators."""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import pytest

from site2pdf.errors import FetchFailed
from site2pdf.fetch import Fetcher, FetchResult, FetchStrategy
from site2pdf.render import RenderPipeline, RenderStrategy
from site2pdf.workspace import RunContext


class FakeSite(FetchStrategy):
    """Serves canned HTML per canonical URL; unknown URLs are 404s."""

    name = "http"

    def __init__(self, pages: Dict[str, Union[str, FetchFailed]]):
        self.pages = pages
        self.calls: List[str] = []

    def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            raise FetchFailed(url, "http-4xx", "HTTP 404")
        if isinstance(page, FetchFailed):
            raise page
        return FetchResult(url, url, page.encode("utf-8"), "text/html; charset=utf-8")


class FakeResponse:
    """Just enough of ``requests.Response`` for streamed reads."""

    def __init__(self, status=200, body=b"<html></html>", ctype="text/html", url=None):
        self.status_code = status
        self.headers = {"Content-Type": ctype} if ctype else {}
        self._body = body
        self.url = url
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), 4):
            yield self._body[i : i + 4]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FakeRunner:
    """Render collaborator that writes a stub PDF unless told to fail."""

    def __init__(self, fail: Sequence[str] = (), fail_paths: Sequence[str] = ()):
        self.fail = set(fail)
        self.fail_paths = set(fail_paths)
        self.calls: List[tuple] = []

    def __call__(
        self,
        html_path: Path,
        base_dir: Optional[Path],
        output_path: Path,
        media_type: Optional[str],
        timeout: float,
        strategy: RenderStrategy,
    ) -> None:
        self.calls.append((html_path, strategy.name))
        if strategy.name in self.fail or html_path.name in self.fail_paths:
            raise RuntimeError("exit status 1: simulated")
        output_path.write_bytes(b"%PDF-1.4 stub " + html_path.name.encode())


class RecordingMerger:
    def __init__(self):
        self.calls: List[List[Path]] = []
        self.titles: List[List[Optional[str]]] = []

    def __call__(self, paths, output: Path, titles=None) -> None:
        self.calls.append(list(paths))
        self.titles.append(list(titles or []))
        output.write_bytes(b"%PDF-1.4 merged " + str(len(paths)).encode())


@pytest.fixture
def site():
    def make(pages):
        strategy = FakeSite(pages)
        return strategy, Fetcher([strategy])

    return make


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def render_pipeline(runner):
    return RenderPipeline(runner, timeout=5.0)


@pytest.fixture
def merger():
    return RecordingMerger()


@pytest.fixture
def ctx(tmp_path):
    with RunContext(
        debug_dir=tmp_path / "debug", parent=tmp_path, handle_signals=False
    ) as run_ctx:
        yield run_ctx
