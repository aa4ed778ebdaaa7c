"""
Streaming downloads for the ClinVar dumps.

The data files run from hundreds of megabytes to a few gigabytes, so the body
is written to disk chunk by chunk and never held in memory. Any transport,
HTTP or write error, or a body shorter than the advertised Content-Length, is
a hard failure for that file and leaves no partial file behind.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

import requests

from pipeline.errors import NetworkFailure
from utils import format_bytes
from utils.http import SessionManager

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 120

_MAGIC_BYTES = {
    ".gz": b"\x1f\x8b",
}

_session_manager: SessionManager | None = None


def get_session() -> requests.Session:
    """Get or create the process-wide HTTP session with retry/pooling config."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager()
    return _session_manager.session


def close_session() -> None:
    """Close the process-wide session; the next get_session() builds a fresh one."""
    global _session_manager
    if _session_manager is not None:
        _session_manager.close()
    _session_manager = None


def _get_chunk_size(total_size: int) -> int:
    """Determine chunk size based on file size."""
    if total_size <= 0:
        return 65536  # unknown size: assume large
    if total_size < 5 * 1024 * 1024:  # < 5 MB
        return 8192
    if total_size < 1024 * 1024 * 1024:  # < 1 GB
        return 65536
    return 262144  # 256 KB for huge files


def _verify_download(dest_path: Path) -> bool:
    """Check that a downloaded file is non-empty and has the expected magic bytes.

    Catches the classic failure where an HTML error page is saved under a
    ``.gz`` name. Unknown extensions pass as long as the file is non-empty.
    """
    try:
        size = dest_path.stat().st_size
    except OSError:
        return False
    if size == 0:
        return False

    expected_magic = _MAGIC_BYTES.get(dest_path.suffix.lower())
    if expected_magic is None:
        return True
    with open(dest_path, "rb") as fh:
        return fh.read(len(expected_magic)) == expected_magic


@dataclass
class DownloadResult:
    path: Path
    bytes_written: int
    seconds: float


def download_file(session: requests.Session, url: str, dest_path: Path,
                  timeout: int = DOWNLOAD_TIMEOUT) -> DownloadResult:
    """Stream *url* to *dest_path*.

    Args:
        session: Active requests.Session.
        url: Source URL.
        dest_path: Local destination; parent directories are created.
        timeout: Connect/read timeout in seconds.

    Returns:
        DownloadResult with the byte count and elapsed time.

    Raises:
        NetworkFailure: on any request, write or truncation error.
    """
    dest_path = Path(dest_path)
    fname = dest_path.name
    file_start = time.time()
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    resp = None
    try:
        resp = session.get(url, timeout=timeout, stream=True)
        resp.raise_for_status()

        expected = int(resp.headers.get("content-length", 0) or 0)
        chunk_size = _get_chunk_size(expected)
        downloaded = 0
        with open(dest_path, "wb") as f:
            for chunk in resp.iter_content(chunk_size=chunk_size):
                if chunk:
                    f.write(chunk)
                    downloaded += len(chunk)

        if expected and downloaded < expected:
            raise NetworkFailure(
                f"Incomplete download of {fname}: {downloaded} of {expected} bytes",
                url=url,
            )
        if not _verify_download(dest_path):
            raise NetworkFailure(
                f"{fname}: empty file or unexpected format (HTML error page?)",
                url=url,
            )
    except requests.RequestException as exc:
        dest_path.unlink(missing_ok=True)
        raise NetworkFailure(f"Download failed for {fname}: {exc}", url=url) from exc
    except OSError as exc:
        dest_path.unlink(missing_ok=True)
        raise NetworkFailure(f"Could not write {dest_path}: {exc}", url=url) from exc
    except NetworkFailure:
        dest_path.unlink(missing_ok=True)
        raise
    finally:
        # stream=True holds the pooled connection until the body is released
        if resp is not None:
            resp.close()

    seconds = time.time() - file_start
    logger.info("[OK] %s (%s in %.1fs)", fname, format_bytes(downloaded), seconds)
    return DownloadResult(path=dest_path, bytes_written=downloaded, seconds=seconds)
