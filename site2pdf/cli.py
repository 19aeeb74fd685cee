import argparse
import importlib.util
import logging
import shlex
import sys
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

from .errors import MergeFailed, NoInputFound, RunInterrupted, Site2PdfError
from .pipeline import RunResult, run_local, run_web
from .settings import Settings, flatten_config, load_config_file
from .workspace import DEBUG_DIR_NAME, RunContext

logger = logging.getLogger("site2pdf")

REQUIRED_MODULES = (("weasyprint", "weasyprint"), ("pypdf", "pypdf"))

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


# -------------------- CLI --------------------


def _common_options() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(add_help=False)
    p.add_argument("--max-depth", type=int, default=2, help="max link depth")
    p.add_argument("--max-pages", type=int, default=100, help="max HTML pages")
    p.add_argument("--workers", type=int, default=4, help="concurrent fetches/renders")
    p.add_argument(
        "--render-timeout", type=float, default=120.0, help="per-page render timeout seconds"
    )
    p.add_argument(
        "--render-command",
        type=str,
        default=None,
        help="render command (default: python -m weasyprint)",
    )
    p.add_argument("--keep", action="store_true", help="keep the scratch workspace")
    p.add_argument(
        "--debug-dir",
        type=str,
        default=".",
        help="where logs and queue snapshots are copied after the run",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def build_arg_parser(defaults: Optional[Dict[str, object]] = None) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="site2pdf",
        description="Crawl a site (or read saved pages) and merge them into one PDF.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    sub = p.add_subparsers(dest="mode", required=True)
    common = _common_options()

    web = sub.add_parser("web", parents=[common], help="crawl from a seed URL")
    web.add_argument("url", help="http(s) seed URL")
    web.add_argument("output", help="output PDF path")
    web.add_argument("--timeout", type=float, default=15.0, help="request timeout seconds")
    web.add_argument("--retries", type=int, default=3, help="retries on transient errors")
    web.add_argument("--delay", type=float, default=0.0, help="delay before each request")
    web.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per response"
    )
    web.add_argument(
        "--no-parent", action="store_true", help="never ascend above the seed path"
    )
    web.add_argument(
        "--no-assets", action="store_true", help="do not download images/stylesheets"
    )
    web.add_argument(
        "--browser",
        action="store_true",
        help="fetch pages with a headless browser first (requires playwright)",
    )
    web.add_argument(
        "--browser-timeout", type=float, default=60.0, help="browser fetch timeout seconds"
    )
    web.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    web.add_argument(
        "--cookies", type=str, default=None, help="cookies.txt (Netscape/Mozilla format)"
    )

    local = sub.add_parser("local", parents=[common], help="render saved HTML pages")
    local.add_argument("directory", help="directory containing .html files")
    local.add_argument("output", help="output PDF path")
    if defaults:
        for parser in (p, web, local):
            parser.set_defaults(**defaults)
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            # subcommand defaults shadow the top-level ones, so set both
            parser = build_arg_parser(flatten_config(cfg))
    args = parser.parse_args(argv)
    if args.max_depth < 0:
        parser.error(f"--max-depth must be 0 or more, got {args.max_depth}")
    return args


def settings_from_args(args: argparse.Namespace) -> Settings:
    web = args.mode == "web"
    return Settings(
        timeout=max(0.1, args.timeout) if web else 15.0,
        retries=max(0, args.retries) if web else 0,
        workers=max(1, args.workers),
        delay=max(0.0, args.delay) if web else 0.0,
        max_bytes=max(1024, args.max_bytes) if web else 50_000_000,
        max_depth=args.max_depth,
        max_pages=max(1, args.max_pages),
        no_parent=web and args.no_parent,
        download_assets=not (web and args.no_assets),
        browser=web and args.browser,
        browser_timeout=max(1.0, args.browser_timeout) if web else 60.0,
        render_timeout=max(1.0, args.render_timeout),
        render_command=shlex.split(args.render_command) if args.render_command else None,
        keep_scratch=args.keep,
        debug_dir=args.debug_dir or None,
        cookies_file=args.cookies if web else None,
        extra_headers=list(args.header or []) if web else [],
    )


def check_dependencies(settings: Settings) -> List[str]:
    missing = []
    for label, module in REQUIRED_MODULES:
        if module == "weasyprint" and settings.render_command:
            continue
        if importlib.util.find_spec(module) is None:
            missing.append(label)
    return missing


def run(args: argparse.Namespace, settings: Settings) -> RunResult:
    output = Path(args.output).resolve()
    debug_dir = Path(settings.debug_dir).resolve() if settings.debug_dir else None
    with RunContext(keep=settings.keep_scratch, debug_dir=debug_dir) as ctx:
        if args.mode == "web":
            return run_web(args.url, output, settings, ctx)
        return run_local(Path(args.directory), output, settings, ctx)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)

    if args.mode == "web":
        u = urlparse(args.url)
        if u.scheme not in {"http", "https"} or not u.netloc:
            print("Invalid URL. Use http:// or https://", file=sys.stderr)
            return EXIT_FAILURE
    elif not Path(args.directory).is_dir():
        print(f"Error: {args.directory} is not a directory.", file=sys.stderr)
        return EXIT_FAILURE

    for name in check_dependencies(settings):
        print(f"Error: {name} is not installed.", file=sys.stderr)
        return EXIT_FAILURE

    try:
        result = run(args, settings)
    except RunInterrupted as e:
        print(f"Interrupted: {e}", file=sys.stderr)
        return EXIT_INTERRUPTED
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except (NoInputFound, MergeFailed) as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.log_path is not None and settings.debug_dir:
            log = Path(settings.debug_dir) / DEBUG_DIR_NAME / "logs" / e.log_path.name
            print(f"See {log}", file=sys.stderr)
        return EXIT_FAILURE
    except Site2PdfError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print(f"Successfully created {result.output_path}")
    print(
        f"Pages crawled: {result.pages_crawled}, rendered: {result.rendered_ok}, "
        f"failed: {result.rendered_failed}"
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
