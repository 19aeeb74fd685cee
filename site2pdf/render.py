import logging
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import RenderFailed
from .models import Artifact, ArtifactKind

logger = logging.getLogger("site2pdf.render")


@dataclass(frozen=True)
class RenderStrategy:
    name: str
    media_type: Optional[str]
    presentational_hints: bool
    use_base_dir: bool


DEFAULT_STRATEGIES: Tuple[RenderStrategy, ...] = (
    RenderStrategy("primary", "print", presentational_hints=True, use_base_dir=True),
    RenderStrategy("fallback-a", "print", presentational_hints=False, use_base_dir=True),
    RenderStrategy("fallback-b", None, presentational_hints=False, use_base_dir=False),
)


@dataclass(frozen=True)
class RenderAttempt:
    strategy: str
    reason: str
    timed_out: bool = False

    def __str__(self) -> str:
        kind = "timeout" if self.timed_out else "error"
        return f"{self.strategy}: {kind}: {self.reason}"


class RenderTimeout(Exception):
    pass


# (html_path, base_dir, output_path, media_type, timeout, strategy) -> None
Runner = Callable[
    [Path, Optional[Path], Path, Optional[str], float, RenderStrategy], None
]


class WeasyPrintRunner:
    """Runs the WeasyPrint command line, killed once ``timeout`` expires."""

    def __init__(self, command: Sequence[str]):
        self.command = list(command)

    def build_args(
        self,
        html_path: Path,
        base_dir: Optional[Path],
        output_path: Path,
        media_type: Optional[str],
        strategy: RenderStrategy,
    ) -> List[str]:
        args = list(self.command)
        if base_dir is not None:
            args += ["--base-url", base_dir.resolve().as_uri() + "/"]
        if media_type:
            args += ["--media-type", media_type]
        if strategy.presentational_hints:
            args.append("--presentational-hints")
        args += [str(html_path), str(output_path)]
        return args

    def __call__(
        self,
        html_path: Path,
        base_dir: Optional[Path],
        output_path: Path,
        media_type: Optional[str],
        timeout: float,
        strategy: RenderStrategy,
    ) -> None:
        args = self.build_args(html_path, base_dir, output_path, media_type, strategy)
        try:
            proc = subprocess.run(
                args, capture_output=True, text=True, timeout=timeout, check=False
            )
        except subprocess.TimeoutExpired:
            raise RenderTimeout(f"no result within {timeout:g}s")
        if proc.returncode != 0:
            tail = (proc.stderr or "").strip().splitlines()[-1:] or ["no output"]
            raise RuntimeError(f"exit status {proc.returncode}: {tail[0]}")


class RenderPipeline:
    def __init__(
        self,
        runner: Runner,
        *,
        timeout: float = 120.0,
        strategies: Sequence[RenderStrategy] = DEFAULT_STRATEGIES,
    ):
        self.runner = runner
        self.timeout = timeout
        self.strategies = list(strategies)

    def render(self, artifact: Artifact, output_path: Path) -> Artifact:
        html_path = artifact.local_path
        output_path.parent.mkdir(parents=True, exist_ok=True)
        attempts: List[RenderAttempt] = []
        for strategy in self.strategies:
            if output_path.exists():
                output_path.unlink()
            base_dir = html_path.parent if strategy.use_base_dir else None
            try:
                self.runner(
                    html_path,
                    base_dir,
                    output_path,
                    strategy.media_type,
                    self.timeout,
                    strategy,
                )
            except RenderTimeout as e:
                attempts.append(RenderAttempt(strategy.name, str(e), timed_out=True))
                continue
            except (RuntimeError, OSError, subprocess.SubprocessError) as e:
                attempts.append(RenderAttempt(strategy.name, str(e)))
                continue
            if not output_path.is_file() or output_path.stat().st_size == 0:
                attempts.append(RenderAttempt(strategy.name, "empty output"))
                continue
            if attempts:
                logger.info(
                    "rendered %s with %s after %d failed attempt(s)",
                    html_path,
                    strategy.name,
                    len(attempts),
                )
            return artifact.derive(output_path, ArtifactKind.RENDERED)
        if output_path.exists():
            output_path.unlink()
        raise RenderFailed(html_path, attempts)


@dataclass
class RenderReport:
    rendered: List[Artifact]
    failures: List[RenderFailed]
    cancelled: int = 0


def render_all(
    pipeline: RenderPipeline,
    jobs: Sequence[Tuple[Artifact, Path]],
    *,
    workers: int = 1,
    stop: Optional[threading.Event] = None,
) -> RenderReport:
    report = RenderReport([], [])
    if not jobs:
        return report

    def work(artifact: Artifact, out: Path) -> Optional[Artifact]:
        if stop is not None and stop.is_set():
            return None
        logger.debug("rendering %s", artifact.local_path)
        return pipeline.render(artifact, out)

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        future_map = {pool.submit(work, a, out): a for a, out in jobs}
        for fut in as_completed(future_map):
            a = future_map[fut]
            try:
                result = fut.result()
            except RenderFailed as e:
                label = a.source_url or str(a.local_path)
                kind = "timeout" if e.timed_out else "error"
                logger.warning("render failed (%s) for %s: %s", kind, label, e)
                report.failures.append(e)
                continue
            if result is None:
                report.cancelled += 1
            else:
                report.rendered.append(result)
    return report
