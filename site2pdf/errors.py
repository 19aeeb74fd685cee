from pathlib import Path
from typing import List, Optional, Sequence


class Site2PdfError(Exception):
    pass


class FetchFailed(Site2PdfError):
    def __init__(self, url: str, kind: str, detail: str = ""):
        self.url = url
        self.kind = kind
        self.detail = detail
        msg = f"{kind}: {url}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class AssetFetchFailed(FetchFailed):
    pass


class RenderFailed(Site2PdfError):
    def __init__(self, path: Path, attempts: Sequence["object"]):
        self.path = path
        self.attempts: List[object] = list(attempts)
        reasons = "; ".join(str(a) for a in self.attempts) or "no strategies"
        super().__init__(f"all render strategies failed for {path}: {reasons}")

    @property
    def timed_out(self) -> bool:
        return any(getattr(a, "timed_out", False) for a in self.attempts)


class MergeFailed(Site2PdfError):
    def __init__(self, message: str, log_path: Optional[Path] = None):
        self.log_path = log_path
        super().__init__(message)


class NoInputFound(Site2PdfError):
    def __init__(self, message: str, log_path: Optional[Path] = None):
        self.log_path = log_path
        super().__init__(message)


class RunInterrupted(Site2PdfError):
    pass
