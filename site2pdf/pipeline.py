import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .assemble import PdfMerger, assemble
from .crawl import Crawler
from .errors import MergeFailed, NoInputFound, RunInterrupted
from .fetch import Fetcher, build_fetcher
from .frontier import Frontier
from .models import Artifact, ArtifactKind
from .render import RenderPipeline, RenderReport, WeasyPrintRunner, render_all
from .rewrite import AssetLocalizer, read_page_meta
from .settings import Settings
from .urls import canonicalize
from .workspace import RunContext

logger = logging.getLogger("site2pdf")

HTML_PATTERNS = ("*.html", "*.htm")


@dataclass(frozen=True)
class RunResult:
    pages_crawled: int
    rendered_ok: int
    rendered_failed: int
    output_path: Path


def find_html_files(directory: Path) -> List[Path]:
    found = set()
    for pattern in HTML_PATTERNS:
        found.update(p for p in directory.rglob(pattern) if p.is_file())
    return sorted(found)


def default_render_pipeline(settings: Settings) -> RenderPipeline:
    return RenderPipeline(
        WeasyPrintRunner(settings.weasyprint_command()), timeout=settings.render_timeout
    )


def _render_and_merge(
    jobs: Sequence[Tuple[Artifact, Path]],
    output: Path,
    settings: Settings,
    ctx: RunContext,
    pages_crawled: int,
    render_pipeline: Optional[RenderPipeline],
    merger: Optional[PdfMerger],
) -> RunResult:
    pipeline = render_pipeline or default_render_pipeline(settings)
    report: RenderReport = render_all(
        pipeline, jobs, workers=settings.workers, stop=ctx.stop
    )
    failed = len(report.failures)
    logger.info(
        "Summary: %d page(s) crawled, %d rendered, %d failed%s",
        pages_crawled,
        len(report.rendered),
        failed,
        f", {report.cancelled} cancelled" if report.cancelled else "",
    )
    if ctx.stop.is_set():
        raise RunInterrupted("interrupted before merge")
    if not report.rendered:
        raise NoInputFound(
            "No PDFs were generated.", log_path=ctx.log_path("site2pdf.render")
        )
    try:
        assemble(report.rendered, output, merger, excluded=failed + report.cancelled)
    except MergeFailed as e:
        e.log_path = e.log_path or ctx.log_path("site2pdf.merge")
        logging.getLogger("site2pdf.merge").error("merge failed: %s", e)
        raise
    return RunResult(pages_crawled, len(report.rendered), failed, output)


def run_web(
    seed_url: str,
    output: Path,
    settings: Settings,
    ctx: RunContext,
    *,
    fetcher: Optional[Fetcher] = None,
    render_pipeline: Optional[RenderPipeline] = None,
    merger: Optional[PdfMerger] = None,
) -> RunResult:
    seed = canonicalize(seed_url, seed_url)
    if seed is None:
        raise ValueError(f"not a crawlable URL: {seed_url}")

    download = None
    if fetcher is None:
        fetcher, http = build_fetcher(settings, ctx.browser_dir)
        download = http.download
    elif fetcher.http() is not None:
        download = fetcher.http().download
    localizer = (
        AssetLocalizer(download, seed)
        if settings.download_assets and download is not None
        else None
    )

    frontier = Frontier(
        max_depth=settings.max_depth,
        max_pages=settings.max_pages,
        queue_snapshot=ctx.queue_snapshot,
        visited_snapshot=ctx.visited_snapshot,
    )
    crawler = Crawler(
        seed,
        frontier,
        fetcher,
        ctx.pages_dir,
        localizer=localizer,
        workers=settings.workers,
        no_parent=settings.no_parent,
        stop=ctx.stop,
    )
    logger.info(
        "Crawling %s (max depth: %d, max pages: %d)...",
        seed,
        settings.max_depth,
        settings.max_pages,
    )
    try:
        pages = crawler.crawl()
    finally:
        fetcher.close()
        frontier.close()
    logger.info(
        "Crawled %d page(s), %d failed, %d skipped",
        len(pages),
        len(crawler.failed),
        len(frontier.skipped()),
    )
    if ctx.stop.is_set():
        raise RunInterrupted("interrupted during crawl")
    if not pages:
        raise NoInputFound(
            f"Failed to crawl {seed}: no page could be fetched.",
            log_path=ctx.log_path("site2pdf.crawl"),
        )

    jobs = [(a, ctx.rendered_dir / a.local_path.with_suffix(".pdf").name) for a in pages]
    return _render_and_merge(
        jobs, output, settings, ctx, len(pages), render_pipeline, merger
    )


def run_local(
    directory: Path,
    output: Path,
    settings: Settings,
    ctx: RunContext,
    *,
    render_pipeline: Optional[RenderPipeline] = None,
    merger: Optional[PdfMerger] = None,
) -> RunResult:
    directory = directory.resolve()
    files = find_html_files(directory)
    if not files:
        raise NoInputFound(f"No HTML files found in {directory}.")
    logger.info("Found %d HTML files.", len(files))

    jobs = []
    for path in files:
        rel = path.relative_to(directory)
        try:
            title = read_page_meta(path.read_text(encoding="utf-8", errors="ignore")).title
        except OSError as e:
            logger.warning("cannot read %s: %s", path, e)
            title = None
        artifact = Artifact(None, path, ArtifactKind.HTML, title)
        jobs.append((artifact, ctx.rendered_dir / rel.with_name(rel.name + ".pdf")))
    return _render_and_merge(
        jobs, output, settings, ctx, len(files), render_pipeline, merger
    )
