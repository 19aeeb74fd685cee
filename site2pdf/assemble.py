import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from .errors import MergeFailed, NoInputFound
from .models import Artifact

logger = logging.getLogger("site2pdf.merge")


class PdfMerger:
    """Concatenates PDFs in the given order; the output appears atomically."""

    def __call__(
        self,
        paths: Sequence[Path],
        output: Path,
        titles: Optional[Sequence[Optional[str]]] = None,
    ) -> None:
        titles = list(titles) if titles is not None else [None] * len(paths)
        writer = PdfWriter()
        for path, title in zip(paths, titles):
            try:
                reader = PdfReader(str(path))
                first = len(writer.pages)
                for page in reader.pages:
                    writer.add_page(page)
            except (PyPdfError, OSError) as e:
                raise MergeFailed(f"cannot read {path}: {e}")
            if len(writer.pages) > first:
                writer.add_outline_item(title or path.stem, first)
            logger.info("appended %s (%d pages)", path, len(writer.pages) - first)

        output.parent.mkdir(parents=True, exist_ok=True)
        tmp = output.with_name(output.name + ".part")
        try:
            with open(tmp, "wb") as f:
                writer.write(f)
            os.replace(tmp, output)
        except (PyPdfError, OSError) as e:
            raise MergeFailed(f"cannot write {output}: {e}")
        finally:
            if tmp.exists():
                tmp.unlink()


def merge_order(artifacts: Sequence[Artifact]) -> List[Artifact]:
    return sorted(artifacts, key=lambda a: a.local_path.as_posix())


def assemble(
    artifacts: Sequence[Artifact],
    output: Path,
    merger: Optional[PdfMerger] = None,
    *,
    excluded: int = 0,
) -> Path:
    if not artifacts:
        raise NoInputFound("no pages were rendered, nothing to merge")
    merger = merger or PdfMerger()
    ordered = merge_order(artifacts)
    logger.info(
        "merging %d rendered page(s) into %s (%d excluded)",
        len(ordered),
        output,
        excluded,
    )
    merger([a.local_path for a in ordered], output, [a.title for a in ordered])
    if not output.is_file() or output.stat().st_size == 0:
        raise MergeFailed(f"merge produced no output at {output}")
    return output
