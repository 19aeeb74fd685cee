import hashlib
import logging
import mimetypes
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from http.cookiejar import Cookie, LoadError, MozillaCookieJar
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import requests
from bs4 import UnicodeDammit
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import AssetFetchFailed, FetchFailed
from .settings import DEFAULT_HEADERS, Settings

logger = logging.getLogger("site2pdf.crawl")
browser_logger = logging.getLogger("site2pdf.browser")

HTML_TYPES = ("text/html", "application/xhtml+xml")
RETRY_STATUSES = [500, 502, 503, 504]
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*%\x00-\x1f]')
SAFE_EXT_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")
CHALLENGE_MARKERS = (
    "just a moment",
    "checking your browser",
    "cf-browser-verification",
    "challenge-platform",
    "ddos-guard",
    "attention required",
)


# -------------------- Utils --------------------


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:100]


def guess_ext_from_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    ct = content_type.split(";")[0].strip().lower()
    if ct == "image/svg+xml":
        return ".svg"
    if ct == "text/css":
        return ".css"
    if ct == "font/woff2":
        return ".woff2"
    if ct == "font/woff":
        return ".woff"
    return mimetypes.guess_extension(ct)


def asset_filename(url: str, content_type: Optional[str]) -> str:
    path = urlparse(url).path
    name = os.path.basename(path.rstrip("/")) or "file"
    base, ext = os.path.splitext(name)
    if not SAFE_EXT_RE.match(ext):
        ext = guess_ext_from_type(content_type) or ""
    return f"{sanitize_filename(base)}_{short_h(url)}{ext}"


def charset_of(content_type: Optional[str]) -> Optional[str]:
    for part in (content_type or "").split(";")[1:]:
        k, _, v = part.strip().partition("=")
        if k.lower() == "charset" and v:
            return v.strip("\"'")
    return None


def looks_like_challenge(html: str, title: str = "") -> bool:
    head = (title + " " + html[:20000]).lower()
    return any(m in head for m in CHALLENGE_MARKERS)


# -------------------- Session --------------------


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        connect=settings.retries,
        read=settings.retries,
        status=settings.retries,
        backoff_factor=settings.backoff_factor,
        status_forcelist=RETRY_STATUSES,
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    size = max(10, settings.workers * 2)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=size, pool_maxsize=size)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    apply_session_options(s, settings)
    return s


def apply_session_options(session: requests.Session, settings: Settings) -> None:
    for h in settings.extra_headers:
        if ":" not in h:
            logger.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()
    if settings.cookies_file:
        try:
            jar = MozillaCookieJar()
            jar.load(settings.cookies_file, ignore_discard=True, ignore_expires=True)
            session.cookies.update(jar)
            logger.info("loaded cookies: %s", settings.cookies_file)
        except (OSError, LoadError) as e:
            logger.error("failed to load cookies: %s", e)


# -------------------- Strategies --------------------


@dataclass
class FetchResult:
    url: str
    final_url: str
    content: bytes
    content_type: Optional[str] = None
    strategy: str = "http"

    @property
    def text(self) -> str:
        declared = [charset_of(self.content_type)] if self.content_type else []
        dammit = UnicodeDammit(self.content, [d for d in declared if d])
        if dammit.unicode_markup is None:
            return self.content.decode("utf-8", errors="replace")
        return dammit.unicode_markup


class FetchStrategy:
    name = "base"

    def fetch(self, url: str) -> FetchResult:
        raise NotImplementedError

    def close(self) -> None:
        pass


class HttpFetcher(FetchStrategy):
    """GET with bounded retries; the body read has a wall-clock deadline."""

    name = "http"

    def __init__(
        self,
        session: requests.Session,
        *,
        timeout: float = 15.0,
        max_bytes: int = 50_000_000,
        delay: float = 0.0,
    ):
        self.session = session
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.delay = delay

    def _get(self, url: str, failure: type) -> requests.Response:
        if self.delay > 0:
            time.sleep(self.delay)
        try:
            resp = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.Timeout as e:
            raise failure(url, "timeout", str(e))
        except requests.RequestException as e:
            raise failure(url, "connection", str(e))
        if resp.status_code >= 400:
            resp.close()
            kind = "http-5xx" if resp.status_code >= 500 else "http-4xx"
            raise failure(url, kind, f"HTTP {resp.status_code}")
        cl = resp.headers.get("Content-Length")
        if cl and cl.isdigit() and int(cl) > self.max_bytes:
            resp.close()
            raise failure(url, "too-large", f"{cl} bytes")
        return resp

    def _iter_body(self, resp: requests.Response, url: str, failure: type) -> Iterator[bytes]:
        deadline = time.monotonic() + self.timeout
        written = 0
        try:
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                written += len(chunk)
                if written > self.max_bytes:
                    raise failure(url, "too-large", f"over {self.max_bytes} bytes")
                if time.monotonic() > deadline:
                    raise failure(url, "timeout", f"body not read within {self.timeout}s")
                yield chunk
        except requests.RequestException as e:
            raise failure(url, "connection", str(e))
        if written == 0:
            raise failure(url, "empty", "empty response")

    def fetch(self, url: str) -> FetchResult:
        resp = self._get(url, FetchFailed)
        with resp:
            ct = resp.headers.get("Content-Type") or ""
            if not any(t in ct.lower() for t in HTML_TYPES):
                raise FetchFailed(url, "not-html", ct or "no content type")
            body = b"".join(self._iter_body(resp, url, FetchFailed))
            final_url = resp.url or url
        return FetchResult(url, final_url, body, ct, self.name)

    def download(self, url: str, dest_dir: Path) -> Path:
        resp = self._get(url, AssetFetchFailed)
        with resp:
            dest = dest_dir / asset_filename(url, resp.headers.get("Content-Type"))
            tmp = dest.with_name(dest.name + ".part")
            try:
                if dest.exists():
                    return dest
                dest_dir.mkdir(parents=True, exist_ok=True)
                try:
                    with open(tmp, "wb") as f:
                        for chunk in self._iter_body(resp, url, AssetFetchFailed):
                            f.write(chunk)
                    os.replace(tmp, dest)
                finally:
                    if tmp.exists():
                        tmp.unlink()
            except OSError as e:
                raise AssetFetchFailed(url, "io", str(e))
        logger.debug("downloaded asset: %s -> %s", url, dest)
        return dest


class BrowserFetcher(FetchStrategy):
    """Headless Chromium via Playwright; waits out anti-bot challenge pages.

    Playwright's sync API is bound to the thread that started it, so every
    browser call runs on one dedicated thread.
    """

    name = "browser"

    def __init__(
        self,
        scratch_dir: Path,
        *,
        timeout: float = 60.0,
        poll: float = 1.0,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Iterable[Cookie]] = None,
    ):
        self.scratch_dir = scratch_dir
        self.timeout = timeout
        self.poll = poll
        self.headers = dict(headers or {})
        self.cookies: List[Cookie] = list(cookies or [])
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="browser")
        self._pl = None
        self._browser = None

    def _ensure_browser(self) -> None:
        if self._browser is not None:
            return
        from playwright.sync_api import sync_playwright

        self._pl = sync_playwright().start()
        self._browser = self._pl.chromium.launch(headless=True)

    def cookies_for_url(self, url: str) -> List[dict]:
        u = urlparse(url)
        host = u.hostname or ""
        path = u.path or "/"
        secure = u.scheme == "https"
        out = []
        for c in self.cookies:
            dom = (c.domain or "").lstrip(".")
            host_ok = host == dom or bool(dom and host.endswith("." + dom))
            path_ok = path.startswith(c.path or "/")
            sec_ok = not c.secure or secure
            if host_ok and path_ok and sec_ok:
                out.append(
                    {
                        "name": c.name,
                        "value": c.value or "",
                        "domain": c.domain or host,
                        "path": c.path or "/",
                        "secure": bool(c.secure),
                        "httpOnly": False,
                    }
                )
        return out

    def _fetch_in_thread(self, url: str, output_path: Path, timeout: float) -> str:
        try:
            from playwright.sync_api import Error as PlaywrightError
        except ImportError:
            raise FetchFailed(url, "browser", "playwright is not installed")

        try:
            self._ensure_browser()
            context = self._browser.new_context(
                user_agent=self.headers.get("User-Agent"),
            )
            cookies = self.cookies_for_url(url)
            if cookies:
                context.add_cookies(cookies)
            context.set_extra_http_headers(self.headers)
        except PlaywrightError as e:
            raise FetchFailed(url, "browser", f"launch failed: {e}")
        try:
            page = context.new_page()
            page.goto(url, wait_until="load", timeout=timeout * 1000)
            deadline = time.monotonic() + timeout
            html = page.content()
            while looks_like_challenge(html, page.title()):
                if time.monotonic() >= deadline:
                    raise FetchFailed(url, "browser", "challenge page did not resolve")
                page.wait_for_timeout(self.poll * 1000)
                html = page.content()
            final_url = page.url
        except PlaywrightError as e:
            raise FetchFailed(url, "browser", str(e))
        finally:
            context.close()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(html, encoding="utf-8")
        return final_url

    def fetch_to(self, url: str, output_path: Path, timeout: float) -> str:
        """Write the post-challenge HTML of ``url`` to ``output_path``."""
        return self._executor.submit(self._fetch_in_thread, url, output_path, timeout).result()

    def fetch(self, url: str) -> FetchResult:
        out = self.scratch_dir / f"{short_h(url)}.html"
        final_url = self.fetch_to(url, out, self.timeout)
        return FetchResult(
            url, final_url, out.read_bytes(), "text/html; charset=utf-8", self.name
        )

    def _shutdown(self) -> None:
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._pl is not None:
            self._pl.stop()
            self._pl = None

    def close(self) -> None:
        try:
            self._executor.submit(self._shutdown).result()
        finally:
            self._executor.shutdown(wait=True)


class Fetcher:
    """Tries each strategy in order; the first success wins."""

    def __init__(self, strategies: Sequence[FetchStrategy]):
        self.strategies: List[FetchStrategy] = list(strategies)

    def fetch(self, url: str) -> FetchResult:
        last: Optional[FetchFailed] = None
        for i, strategy in enumerate(self.strategies):
            try:
                return strategy.fetch(url)
            except FetchFailed as e:
                last = e
                log = browser_logger if strategy.name == "browser" else logger
                if i + 1 < len(self.strategies):
                    log.warning("%s fetch failed, falling back: %s", strategy.name, e)
        if last is None:
            raise FetchFailed(url, "connection", "no fetch strategy configured")
        raise last

    def http(self) -> Optional[HttpFetcher]:
        for s in self.strategies:
            if isinstance(s, HttpFetcher):
                return s
        return None

    def close(self) -> None:
        for s in self.strategies:
            s.close()


def build_fetcher(settings: Settings, scratch_dir: Path) -> Tuple[Fetcher, HttpFetcher]:
    session = build_session(settings)
    http = HttpFetcher(
        session,
        timeout=settings.timeout,
        max_bytes=settings.max_bytes,
        delay=settings.delay,
    )
    strategies: List[FetchStrategy] = []
    if settings.browser:
        strategies.append(
            BrowserFetcher(
                scratch_dir,
                timeout=settings.browser_timeout,
                poll=settings.challenge_poll,
                headers=dict(session.headers),
                cookies=session.cookies,
            )
        )
    strategies.append(http)
    return Fetcher(strategies), http
