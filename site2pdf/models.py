import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class ArtifactKind(enum.Enum):
    HTML = "html"
    ASSET = "asset"
    RENDERED = "rendered"


@dataclass(frozen=True)
class Artifact:
    source_url: Optional[str]
    local_path: Path
    kind: ArtifactKind
    title: Optional[str] = None

    def derive(self, local_path: Path, kind: ArtifactKind) -> "Artifact":
        return Artifact(self.source_url, local_path, kind, self.title)
