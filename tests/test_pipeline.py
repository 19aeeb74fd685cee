import pytest

from site2pdf.errors import NoInputFound, RunInterrupted
from site2pdf.pipeline import find_html_files, run_local, run_web
from site2pdf.render import DEFAULT_STRATEGIES, RenderPipeline
from site2pdf.settings import Settings
from site2pdf.urls import relative_depth

from conftest import FakeRunner

SITE = {
    "https://ex.com": (
        "<html><head><title>Home</title></head><body>"
        '<a href="/a">A</a> <a href="/b/">B</a> <a href="https://other.org/">x</a>'
        "</body></html>"
    ),
    "https://ex.com/a": '<title>A</title><a href="/a/deep">deep</a><a href="/">home</a>',
    "https://ex.com/b": "<title>B</title><p>b</p>",
    "https://ex.com/a/deep": "<title>Deep</title>",
}


def web(site, ctx, tmp_path, render_pipeline, merger, pages=SITE, **settings):
    settings.setdefault("workers", 1)
    strategy, fetcher = site(pages)
    result = run_web(
        "https://ex.com/",
        tmp_path / "book.pdf",
        Settings(**settings),
        ctx,
        fetcher=fetcher,
        render_pipeline=render_pipeline,
        merger=merger,
    )
    return strategy, result


def test_single_page_site(site, ctx, tmp_path, render_pipeline, merger):
    pages = {"https://ex.com": "<html><title>Home</title><p>hi</p></html>"}
    _, result = web(site, ctx, tmp_path, render_pipeline, merger, pages)
    assert (result.pages_crawled, result.rendered_ok, result.rendered_failed) == (1, 1, 0)
    assert result.output_path.is_file()
    assert merger.calls == [[ctx.rendered_dir / "index.pdf"]]
    assert merger.titles == [["Home"]]


def test_crawl_is_breadth_first_and_depth_bounded(site, ctx, tmp_path, render_pipeline, merger):
    strategy, result = web(site, ctx, tmp_path, render_pipeline, merger, max_depth=1)
    assert strategy.calls == ["https://ex.com", "https://ex.com/a", "https://ex.com/b"]
    assert result.pages_crawled == 3
    index = (ctx.pages_dir / "index.html").read_text()
    assert 'href="a.html"' in index
    assert 'href="b.html"' in index
    assert 'href="https://other.org/"' in index
    assert [p.name for p in merger.calls[0]] == ["a.pdf", "b.pdf", "index.pdf"]


def test_deeper_pages_are_reached_with_more_depth(site, ctx, tmp_path, render_pipeline, merger):
    strategy, result = web(site, ctx, tmp_path, render_pipeline, merger, max_depth=2)
    assert strategy.calls[-1] == "https://ex.com/a/deep"
    assert result.pages_crawled == 4
    assert strategy.calls.count("https://ex.com") == 1


def test_page_budget_is_respected(site, ctx, tmp_path, render_pipeline, merger):
    strategy, result = web(site, ctx, tmp_path, render_pipeline, merger, max_pages=2)
    assert len(strategy.calls) == 2
    assert result.pages_crawled == 2


def test_failed_pages_do_not_stop_the_crawl(site, ctx, tmp_path, render_pipeline, merger):
    pages = dict(SITE)
    del pages["https://ex.com/a"]
    _, result = web(site, ctx, tmp_path, render_pipeline, merger, pages, max_depth=1)
    assert result.pages_crawled == 2
    log = ctx.log_path("site2pdf.crawl").read_text()
    assert "http-4xx" in log and "https://ex.com/a" in log


def test_unreachable_seed(site, ctx, tmp_path, render_pipeline, merger):
    with pytest.raises(NoInputFound) as info:
        web(site, ctx, tmp_path, render_pipeline, merger, {})
    assert info.value.log_path == ctx.log_path("site2pdf.crawl")
    assert merger.calls == []


def test_some_renders_failing(site, ctx, tmp_path, merger):
    pipeline = RenderPipeline(FakeRunner(fail_paths={"b.html"}), timeout=5.0)
    _, result = web(site, ctx, tmp_path, pipeline, merger, max_depth=1)
    assert (result.rendered_ok, result.rendered_failed) == (2, 1)
    assert "b.html" in ctx.log_path("site2pdf.render").read_text()


def test_all_renders_failing(site, ctx, tmp_path, merger):
    runner = FakeRunner(fail={s.name for s in DEFAULT_STRATEGIES})
    with pytest.raises(NoInputFound) as info:
        web(site, ctx, tmp_path, RenderPipeline(runner), merger, max_depth=0)
    assert info.value.log_path == ctx.log_path("site2pdf.render")
    assert merger.calls == []
    assert not (tmp_path / "book.pdf").exists()


def test_interrupted_run_does_not_merge(site, ctx, tmp_path, render_pipeline, merger):
    ctx.stop.set()
    with pytest.raises(RunInterrupted):
        web(site, ctx, tmp_path, render_pipeline, merger)
    assert merger.calls == []


@pytest.fixture
def saved_site(tmp_path):
    root = tmp_path / "saved"
    (root / "sub").mkdir(parents=True)
    (root / "b.html").write_text("<title>Second</title>")
    (root / "a.html").write_text("<title>First</title>")
    (root / "sub" / "c.htm").write_text("<p>no title</p>")
    (root / "notes.txt").write_text("ignored")
    return root


def test_find_html_files(saved_site):
    names = [p.relative_to(saved_site).as_posix() for p in find_html_files(saved_site)]
    assert names == ["a.html", "b.html", "sub/c.htm"]


def test_local_mode(saved_site, ctx, tmp_path, render_pipeline, merger):
    result = run_local(
        saved_site,
        tmp_path / "book.pdf",
        Settings(workers=2),
        ctx,
        render_pipeline=render_pipeline,
        merger=merger,
    )
    assert (result.pages_crawled, result.rendered_ok) == (3, 3)
    rendered = ctx.rendered_dir
    assert merger.calls == [
        [rendered / "a.html.pdf", rendered / "b.html.pdf", rendered / "sub" / "c.htm.pdf"]
    ]
    assert merger.titles == [["First", "Second", None]]


def test_local_mode_without_html(tmp_path, ctx, render_pipeline, merger):
    (tmp_path / "empty").mkdir()
    with pytest.raises(NoInputFound):
        run_local(
            tmp_path / "empty",
            tmp_path / "book.pdf",
            Settings(),
            ctx,
            render_pipeline=render_pipeline,
            merger=merger,
        )


def wide_site():
    pages = {"https://ex.com": "".join(f'<a href="/s{i}">s{i}</a>' for i in range(6))}
    for i in range(6):
        children = "".join(f'<a href="/s{i}/c{j}">c</a>' for j in range(3))
        pages[f"https://ex.com/s{i}"] = children + '<a href="/">home</a><a href="/s0">s0</a>'
        for j in range(3):
            pages[f"https://ex.com/s{i}/c{j}"] = f'<a href="/s{(i + 1) % 6}/c{j}">next</a>'
    return pages


def test_concurrent_crawl_keeps_order_and_dedup(site, ctx, tmp_path, render_pipeline, merger):
    strategy, result = web(
        site, ctx, tmp_path, render_pipeline, merger, wide_site(), workers=4, max_depth=2
    )
    assert result.pages_crawled == 25
    assert len(strategy.calls) == len(set(strategy.calls)) == 25
    visited = ctx.visited_snapshot.read_text().splitlines()
    depths = [relative_depth(u, "https://ex.com") for u in visited]
    assert depths == sorted(depths)
    assert len(merger.calls[0]) == 25


def test_concurrent_crawl_respects_page_budget(site, ctx, tmp_path, render_pipeline, merger):
    strategy, result = web(
        site, ctx, tmp_path, render_pipeline, merger, wide_site(), workers=4, max_pages=5
    )
    assert result.pages_crawled == 5
    assert len(strategy.calls) == 5
    assert strategy.calls[0] == "https://ex.com"
