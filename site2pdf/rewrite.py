"""In-place rewriting of saved pages.

Links and asset references are found with a small tolerant scanner over tag
and attribute boundaries rather than a full HTML parse, so malformed pages
survive untouched outside the attributes that are rewritten. Replacement
values are spliced in by position; no pattern is ever built from URL text.
"""

import html as htmllib
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

from bs4 import BeautifulSoup

from .errors import AssetFetchFailed
from .urls import canonicalize, in_scope, is_navigable_reference, resolve_reference, to_local_path

logger = logging.getLogger("site2pdf.crawl")

TAG_RE = re.compile(
    r"<(?P<name>[a-zA-Z][a-zA-Z0-9:-]*)(?P<attrs>(?:[^>\"']|\"[^\"]*\"|'[^']*')*)>",
    re.DOTALL,
)
ATTR_RE = re.compile(
    r"(?P<key>[^\s\"'<>/=]+)"
    r"(?:\s*=\s*(?:\"(?P<dq>[^\"]*)\"|'(?P<sq>[^']*)'|(?P<uq>[^\s\"'=<>`]+)))?",
)
CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
RAW_TEXT_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)

LINK_TAGS = {"a": "href", "area": "href"}
ASSET_TAGS = {"img": "src", "input": "src", "source": "src", "link": "href", "video": "poster"}
ASSET_LINK_RELS = {"stylesheet", "icon", "shortcut", "apple-touch-icon"}


# -------------------- Scanner --------------------


@dataclass
class Attr:
    key: str
    value: Optional[str]
    # absolute offsets of the raw value (without quotes) in the document
    start: int
    end: int
    quote: str


@dataclass
class Tag:
    name: str
    start: int
    end: int
    attrs: Dict[str, Attr] = field(default_factory=dict)

    def get(self, key: str) -> Optional[str]:
        a = self.attrs.get(key)
        return None if a is None or a.value is None else htmllib.unescape(a.value)


def _skipped_spans(text: str) -> List[Tuple[int, int]]:
    spans = [(m.start(), m.end()) for m in COMMENT_RE.finditer(text)]
    for m in RAW_TEXT_RE.finditer(text):
        # the opening tag itself stays scannable (<script src=...>)
        open_end = text.index(">", m.start()) + 1
        spans.append((open_end, m.end()))
    return sorted(spans)


def scan_tags(text: str) -> Iterator[Tag]:
    skip = _skipped_spans(text)
    si = 0
    for m in TAG_RE.finditer(text):
        while si < len(skip) and skip[si][1] <= m.start():
            si += 1
        if si < len(skip) and skip[si][0] <= m.start() < skip[si][1]:
            continue
        tag = Tag(m.group("name").lower(), m.start(), m.end())
        base = m.start("attrs")
        for am in ATTR_RE.finditer(m.group("attrs")):
            key = am.group("key").lower()
            if key in tag.attrs:
                continue
            for grp, q in (("dq", '"'), ("sq", "'"), ("uq", "")):
                if am.group(grp) is not None:
                    tag.attrs[key] = Attr(
                        key, am.group(grp), base + am.start(grp), base + am.end(grp), q
                    )
                    break
            else:
                pos = base + am.end()
                tag.attrs[key] = Attr(key, None, pos, pos, "")
        yield tag


def splice(text: str, edits: List[Tuple[Attr, str]]) -> str:
    """Replace attribute values by offset, last first."""
    out = text
    for attr, value in sorted(edits, key=lambda e: e[0].start, reverse=True):
        escaped = htmllib.escape(value, quote=True)
        if attr.quote:
            out = out[: attr.start] + escaped + out[attr.end :]
        else:
            out = out[: attr.start] + '"' + escaped + '"' + out[attr.end :]
    return out


def strip_base_tags(text: str) -> str:
    tags = [t for t in scan_tags(text) if t.name == "base"]
    for t in reversed(tags):
        text = text[: t.start] + text[t.end :]
    return text


# -------------------- Metadata --------------------


@dataclass
class PageMeta:
    base_href: Optional[str]
    title: Optional[str]


def read_page_meta(text: str) -> PageMeta:
    soup = BeautifulSoup(text, "html.parser")
    base = soup.find("base", href=True)
    title = soup.title.get_text(" ", strip=True) if soup.title else None
    return PageMeta(base["href"] if base else None, title or None)


def effective_page_url(page_url: str, base_href: Optional[str], seed_url: str) -> str:
    if not base_href:
        return page_url
    resolved = resolve_reference(base_href, seed_url, page_url)
    return resolved or page_url


def relative_href(target: Path, from_dir: Path) -> str:
    return quote(Path(os.path.relpath(target, from_dir)).as_posix())


# -------------------- Link rewriter --------------------


@dataclass
class LinkRewrite:
    html: str
    # in-scope canonical targets, in document order, deduplicated
    links: List[str]
    rewritten: int
    # local page file -> canonical URL it stands for
    targets: Dict[Path, str] = field(default_factory=dict)


def rewrite_links(
    text: str,
    *,
    page_url: str,
    seed_url: str,
    page_path: Path,
    pages_dir: Path,
    no_parent: bool = False,
) -> LinkRewrite:
    edits: List[Tuple[Attr, str]] = []
    links: Dict[str, None] = {}
    targets: Dict[Path, str] = {}
    for tag in scan_tags(text):
        key = LINK_TAGS.get(tag.name)
        if key is None or key not in tag.attrs:
            continue
        raw = tag.get(key)
        if not is_navigable_reference(raw):
            continue
        target = canonicalize(raw, seed_url, page_url)
        if target is None or not in_scope(target, seed_url, no_parent=no_parent):
            continue
        links.setdefault(target, None)
        local = pages_dir / to_local_path(target)
        targets[local] = target
        href = relative_href(local, page_path.parent)
        frag = raw.partition("#")[2]
        if frag:
            href = f"{href}#{frag}"
        edits.append((tag.attrs[key], href))
    return LinkRewrite(splice(text, edits), list(links), len(edits), targets)


def restore_links(text: str, page_path: Path, missing: Dict[Path, str]) -> Tuple[str, int]:
    """Point links at pages that were never saved back to their absolute URLs."""
    edits: List[Tuple[Attr, str]] = []
    for tag in scan_tags(text):
        key = LINK_TAGS.get(tag.name)
        if key is None or key not in tag.attrs:
            continue
        href = tag.get(key)
        if not is_navigable_reference(href) or urlparse(href).scheme or href.startswith("/"):
            continue
        rel, _, frag = href.partition("#")
        target = missing.get(Path(os.path.normpath(page_path.parent / unquote(rel))))
        if target is None:
            continue
        edits.append((tag.attrs[key], f"{target}#{frag}" if frag else target))
    return splice(text, edits), len(edits)


# -------------------- Asset localizer --------------------


def assets_dir_for(page_path: Path) -> Path:
    return page_path.with_name(page_path.stem + ".assets")


def _is_asset_tag(tag: Tag) -> Optional[str]:
    key = ASSET_TAGS.get(tag.name)
    if key is None or key not in tag.attrs:
        return None
    if tag.name == "link":
        rels = set((tag.get("rel") or "").lower().split())
        if not rels & ASSET_LINK_RELS:
            return None
    if tag.name == "input" and (tag.get("type") or "").lower() != "image":
        return None
    return key


Downloader = Callable[[str, Path], Path]


class AssetLocalizer:
    """Downloads page images and stylesheets into ``<page>.assets/``.

    References that cannot be fetched stay as they are; the page then renders
    without them.
    """

    def __init__(self, download: Downloader, seed_url: str):
        self.download = download
        self.seed_url = seed_url

    def _fetch(self, url: str, dest_dir: Path, cache: Dict[str, Optional[Path]]) -> Optional[Path]:
        if url not in cache:
            try:
                cache[url] = self.download(url, dest_dir)
            except AssetFetchFailed as e:
                logger.debug("asset not localized: %s", e)
                cache[url] = None
        return cache[url]

    def localize(self, text: str, page_url: str, page_path: Path) -> str:
        dest_dir = assets_dir_for(page_path)
        cache: Dict[str, Optional[Path]] = {}
        edits: List[Tuple[Attr, str]] = []
        for tag in scan_tags(text):
            key = _is_asset_tag(tag)
            if key is None:
                continue
            absu = resolve_reference(tag.get(key), self.seed_url, page_url)
            if absu is None or urlparse(absu).scheme not in ("http", "https"):
                continue
            local = self._fetch(absu, dest_dir, cache)
            if local is None:
                continue
            if local.suffix.lower() == ".css":
                self.localize_stylesheet(local, absu, cache)
            edits.append((tag.attrs[key], relative_href(local, page_path.parent)))
        return splice(text, edits)

    def localize_stylesheet(
        self, css_path: Path, css_url: str, cache: Dict[str, Optional[Path]]
    ) -> None:
        try:
            css = css_path.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            logger.debug("cannot read stylesheet %s: %s", css_path, e)
            return

        def repl(m: re.Match) -> str:
            q = m.group(1) or ""
            u = m.group(2).strip()
            absu = resolve_reference(u, self.seed_url, css_url)
            if absu is None:
                return m.group(0)
            local = self._fetch(absu, css_path.parent, cache)
            if local is None or local == css_path:
                return m.group(0)
            return f"url({q}{relative_href(local, css_path.parent)}{q})"

        new_css = CSS_URL_RE.sub(repl, css)
        if new_css != css:
            try:
                css_path.write_text(new_css, encoding="utf-8")
            except OSError as e:
                logger.debug("cannot rewrite stylesheet %s: %s", css_path, e)
