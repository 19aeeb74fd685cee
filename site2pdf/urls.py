"""URL canonicalization and the URL -> local file name mapping.

Canonical URLs are absolute and carry only scheme, host and path: the query,
the fragment and any trailing slash are removed. They are the only keys used
for crawl deduplication. Nothing here touches the network.
"""

import hashlib
import re
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urljoin, urlparse

NON_NAVIGABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")
CRAWLABLE_SCHEMES = {"http", "https"}

# Local page names: path segments joined with SEPARATOR. '%', the separator
# itself and characters that are unsafe in file names are percent-encoded
# first, so a segment never contains a bare SEPARATOR and the mapping stays
# injective.
SEPARATOR = "_"
INDEX_NAME = "index"
PAGE_SUFFIX = ".html"
MAX_NAME_BYTES = 180
UNSAFE_CHARS_RE = re.compile(r'[%_<>:"\\|?*\x00-\x1f\x7f]')


def is_navigable_reference(raw: Optional[str]) -> bool:
    if not raw:
        return False
    r = raw.strip().lower()
    if not r:
        return False
    return not r.startswith(NON_NAVIGABLE_PREFIXES)


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def resolve_reference(
    raw: Optional[str], base_url: str, origin_url: Optional[str] = None
) -> Optional[str]:
    """Resolve ``raw`` to an absolute URL, keeping any query string.

    ``base_url`` is the seed (its scheme and host are the site origin) and
    ``origin_url`` is the page the reference was found on. Returns None for
    references that cannot be navigated.
    """
    if not raw or not is_navigable_reference(raw):
        return None
    raw = raw.strip()
    try:
        base = urlparse(base_url)
        if not base.scheme or not base.netloc:
            return None
        if raw.startswith("//"):
            absu = f"{base.scheme}:{raw}"
        elif raw.startswith("/"):
            absu = f"{base.scheme}://{base.netloc}{raw}"
        elif urlparse(raw).scheme:
            absu = raw
        else:
            page = origin_url or base_url
            if not urlparse(page).netloc:
                return None
            absu = urljoin(page, raw)
        absu = absu.split("#", 1)[0]
        p = urlparse(absu)
    except ValueError:
        # e.g. an unbalanced IPv6 bracket in the host
        return None
    if not p.scheme or not p.netloc:
        return None
    return absu


def canonicalize(
    raw: Optional[str], base_url: str, origin_url: Optional[str] = None
) -> Optional[str]:
    absu = resolve_reference(raw, base_url, origin_url)
    if absu is None:
        return None
    cut = absu.find("?")
    if cut != -1:
        absu = absu[:cut]
    # all of them, otherwise "//" would not be idempotent
    absu = absu.rstrip("/")
    if not urlparse(absu).netloc:
        return None
    return absu


def crawl_depth(url: str) -> int:
    return len([seg for seg in urlparse(url).path.split("/") if seg])


def relative_depth(url: str, seed_url: str) -> int:
    return max(0, crawl_depth(url) - crawl_depth(seed_url))


def in_scope(url: str, seed_url: str, *, no_parent: bool = False) -> bool:
    u, s = urlparse(url), urlparse(seed_url)
    if u.scheme not in CRAWLABLE_SCHEMES or u.netloc != s.netloc:
        return False
    if no_parent:
        prefix = s.path.rstrip("/")
        path = u.path.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")
    return True


def _escape_segment(seg: str) -> str:
    return UNSAFE_CHARS_RE.sub(lambda m: "%%%02X" % ord(m.group(0)), seg)


def to_local_path(url: str) -> PurePosixPath:
    """Map an in-scope canonical URL to a page file name, unique per path.

    ``https://ex.com/docs/a_b`` becomes ``docs_a%5Fb.html``; the site root
    becomes ``index.html`` and a literal ``/index`` page ``%69ndex.html``.
    """
    p = urlparse(url)
    path = p.path.rstrip("/")
    body = path[1:] if path.startswith("/") else path
    if not body:
        name = INDEX_NAME
    else:
        name = SEPARATOR.join(_escape_segment(seg) for seg in body.split("/"))
        if name == INDEX_NAME:
            name = "%%%02X%s" % (ord(name[0]), name[1:])
    raw = name.encode("utf-8")
    if len(raw) > MAX_NAME_BYTES:
        digest = hashlib.sha1(raw).hexdigest()[:16]
        head = raw[:MAX_NAME_BYTES].decode("utf-8", errors="ignore")
        name = f"{head}-{digest}"
    return PurePosixPath(name + PAGE_SUFFIX)
