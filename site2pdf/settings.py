import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CONFIG_GROUPS = ("general", "crawl", "fetch", "browser", "render")


@dataclass
class Settings:
    # Fetch
    timeout: float = 15.0
    retries: int = 3
    backoff_factor: float = 0.5
    workers: int = 4
    delay: float = 0.0
    max_bytes: int = 50_000_000

    # Crawl
    max_depth: int = 2
    max_pages: int = 100
    no_parent: bool = False
    download_assets: bool = True

    # Browser collaborator
    browser: bool = False
    browser_timeout: float = 60.0
    challenge_poll: float = 1.0

    # Rendering
    render_timeout: float = 120.0
    render_command: Optional[List[str]] = None

    # Run
    keep_scratch: bool = False
    debug_dir: Optional[str] = "."

    # Session
    cookies_file: Optional[str] = None
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"

    def weasyprint_command(self) -> List[str]:
        if self.render_command:
            return list(self.render_command)
        return [sys.executable, "-m", "weasyprint"]


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        if sys.version_info >= (3, 11):
            import tomllib
        else:
            import tomli as tomllib
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Dict[str, object]) -> Dict[str, object]:
    flat = {k: v for k, v in cfg.items() if k not in CONFIG_GROUPS}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    # config files use dashes like the flags do
    return {k.replace("-", "_"): v for k, v in flat.items()}
