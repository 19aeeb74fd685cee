import subprocess
import threading
from pathlib import Path

import pytest

from site2pdf.errors import RenderFailed
from site2pdf.models import Artifact, ArtifactKind
from site2pdf.render import (
    DEFAULT_STRATEGIES,
    RenderPipeline,
    RenderTimeout,
    WeasyPrintRunner,
    render_all,
)

from conftest import FakeRunner


def page(tmp_path, name="p.html"):
    path = tmp_path / name
    path.write_text("<h1>hi</h1>")
    return Artifact("https://ex.com/p", path, ArtifactKind.HTML, "P")


def test_primary_strategy_success(tmp_path, runner, render_pipeline):
    out = render_pipeline.render(page(tmp_path), tmp_path / "out" / "p.pdf")
    assert out.kind is ArtifactKind.RENDERED
    assert out.title == "P"
    assert out.local_path.read_bytes().startswith(b"%PDF")
    assert [name for _, name in runner.calls] == ["primary"]


def test_fallback_chain_is_ordered(tmp_path):
    runner = FakeRunner(fail={"primary", "fallback-a"})
    out = RenderPipeline(runner, timeout=5.0).render(page(tmp_path), tmp_path / "p.pdf")
    assert out.local_path.is_file()
    assert [name for _, name in runner.calls] == ["primary", "fallback-a", "fallback-b"]


def test_all_strategies_failing(tmp_path):
    runner = FakeRunner(fail={s.name for s in DEFAULT_STRATEGIES})
    with pytest.raises(RenderFailed) as info:
        RenderPipeline(runner, timeout=5.0).render(page(tmp_path), tmp_path / "p.pdf")
    assert len(info.value.attempts) == 3
    assert not info.value.timed_out
    assert not (tmp_path / "p.pdf").exists()


def test_timeouts_are_recorded_as_timeouts(tmp_path):
    def slow(html_path, base_dir, output_path, media_type, timeout, strategy):
        raise RenderTimeout(f"no result within {timeout:g}s")

    with pytest.raises(RenderFailed) as info:
        RenderPipeline(slow, timeout=0.5).render(page(tmp_path), tmp_path / "p.pdf")
    assert info.value.timed_out
    assert all(a.timed_out for a in info.value.attempts)
    assert "timeout" in str(info.value)


def test_empty_output_counts_as_failure(tmp_path):
    def empty(html_path, base_dir, output_path, media_type, timeout, strategy):
        output_path.write_bytes(b"")

    with pytest.raises(RenderFailed) as info:
        RenderPipeline(empty).render(page(tmp_path), tmp_path / "p.pdf")
    assert [a.reason for a in info.value.attempts] == ["empty output"] * 3


def test_strategies_pass_their_options(tmp_path):
    seen = []

    def record(html_path, base_dir, output_path, media_type, timeout, strategy):
        seen.append((base_dir, media_type))
        raise RuntimeError("nope")

    with pytest.raises(RenderFailed):
        RenderPipeline(record).render(page(tmp_path), tmp_path / "p.pdf")
    assert seen == [(tmp_path, "print"), (tmp_path, "print"), (None, None)]


def test_weasyprint_arguments(tmp_path):
    runner = WeasyPrintRunner(["weasyprint"])
    primary, _, minimal = DEFAULT_STRATEGIES
    args = runner.build_args(tmp_path / "a.html", tmp_path, tmp_path / "a.pdf", "print", primary)
    assert args[0] == "weasyprint"
    assert args[args.index("--base-url") + 1] == tmp_path.resolve().as_uri() + "/"
    assert args[args.index("--media-type") + 1] == "print"
    assert "--presentational-hints" in args
    assert args[-2:] == [str(tmp_path / "a.html"), str(tmp_path / "a.pdf")]

    args = runner.build_args(tmp_path / "a.html", None, tmp_path / "a.pdf", None, minimal)
    assert args == ["weasyprint", str(tmp_path / "a.html"), str(tmp_path / "a.pdf")]


def test_weasyprint_timeout_is_translated(tmp_path, monkeypatch):
    def fake_run(args, **kw):
        raise subprocess.TimeoutExpired(args, kw["timeout"])

    monkeypatch.setattr(subprocess, "run", fake_run)
    runner = WeasyPrintRunner(["weasyprint"])
    with pytest.raises(RenderTimeout):
        runner(Path("a.html"), None, Path("a.pdf"), None, 1.0, DEFAULT_STRATEGIES[2])


def test_weasyprint_exit_status_is_an_error(monkeypatch):
    def fake_run(args, **kw):
        return subprocess.CompletedProcess(args, 2, "", "ERROR: bad css\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(RuntimeError, match="bad css"):
        WeasyPrintRunner(["weasyprint"])(
            Path("a.html"), None, Path("a.pdf"), None, 1.0, DEFAULT_STRATEGIES[0]
        )


def test_render_all_collects_failures(tmp_path):
    runner = FakeRunner(fail_paths={"bad.html"})
    jobs = [
        (page(tmp_path, "good.html"), tmp_path / "r" / "good.pdf"),
        (page(tmp_path, "bad.html"), tmp_path / "r" / "bad.pdf"),
    ]
    report = render_all(RenderPipeline(runner), jobs, workers=2)
    assert [a.local_path.name for a in report.rendered] == ["good.pdf"]
    assert len(report.failures) == 1
    assert report.cancelled == 0


def test_render_all_stops_when_asked(tmp_path, render_pipeline, runner):
    stop = threading.Event()
    stop.set()
    jobs = [(page(tmp_path), tmp_path / "p.pdf")]
    report = render_all(render_pipeline, jobs, stop=stop)
    assert report.rendered == []
    assert report.cancelled == 1
    assert runner.calls == []
