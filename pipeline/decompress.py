"""Stream a downloaded dump through gunzip into the temp directory."""

import gzip
import logging
import shutil
from pathlib import Path

from pipeline.errors import LoadError

logger = logging.getLogger(__name__)

COPY_BUFFER = 1024 * 1024


def decompressed_name(file_name: str) -> str:
    """``variant_summary.txt.gz`` -> ``variant_summary.txt``."""
    return file_name[:-3] if file_name.endswith(".gz") else file_name


def decompress_file(src: Path, dest_dir: Path) -> Path:
    """Decompress *src* into *dest_dir* using a bounded buffer.

    Files without a ``.gz`` suffix are copied as-is. Returns the output path.

    Raises:
        LoadError: if the archive is corrupt or the copy fails.
    """
    src = Path(src)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / decompressed_name(src.name)

    try:
        if src.suffix == ".gz":
            with gzip.open(src, "rb") as fin, open(dest, "wb") as fout:
                shutil.copyfileobj(fin, fout, COPY_BUFFER)
        else:
            shutil.copyfile(src, dest)
    except (OSError, EOFError) as exc:
        dest.unlink(missing_ok=True)
        raise LoadError(f"Could not decompress {src.name}: {exc}") from exc

    logger.info("Decompressed %s -> %s (%d bytes)", src.name, dest.name, dest.stat().st_size)
    return dest
