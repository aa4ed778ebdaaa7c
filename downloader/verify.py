"""
MD5 verification against the ``<file>.md5`` companions NCBI publishes.

Policy: a mismatch aborts the file, but an unreachable checksum does not.
When the ``.md5`` resource cannot be fetched (network error or non-200
status) the verifier logs a warning and passes, so that a flaky checksum
endpoint never blocks the weekly load.
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

import requests

from pipeline.errors import ChecksumUnavailable, IntegrityMismatch

logger = logging.getLogger(__name__)

CHECKSUM_TIMEOUT = 10


def compute_md5(file_path: Path) -> str:
    """Compute the MD5 hex digest of a file.

    Reads in 64 KB chunks to avoid loading large files into memory.
    """
    h = hashlib.md5()
    with open(file_path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass
class VerificationResult:
    passed: bool
    verified: bool          # False when the check was skipped (fail-open)
    expected: str = ""
    actual: str = ""
    detail: str = ""


def fetch_expected_md5(session: requests.Session, url: str) -> str:
    """Return the published digest for *url*.

    The ``.md5`` body looks like ``<hex>  <filename>``; the first token is
    the digest.

    Raises:
        ChecksumUnavailable: if the resource cannot be fetched or is empty.
    """
    md5_url = f"{url}.md5"
    try:
        resp = session.get(md5_url, timeout=CHECKSUM_TIMEOUT)
    except requests.RequestException as exc:
        raise ChecksumUnavailable(f"Checksum fetch failed: {exc}", url=md5_url) from exc
    if resp.status_code != 200:
        raise ChecksumUnavailable(
            f"Checksum fetch returned HTTP {resp.status_code}", url=md5_url
        )
    tokens = resp.text.strip().split()
    if not tokens:
        raise ChecksumUnavailable("Checksum file is empty", url=md5_url)
    return tokens[0].lower()


def verify_checksum(session: requests.Session, url: str,
                    local_path: Path) -> VerificationResult:
    """Compare the published MD5 for *url* against *local_path*.

    Raises:
        IntegrityMismatch: when both digests are known and differ.
    """
    local_path = Path(local_path)
    try:
        expected = fetch_expected_md5(session, url)
    except ChecksumUnavailable as exc:
        logger.warning("Could not verify %s (%s); continuing without checksum",
                       local_path.name, exc)
        return VerificationResult(passed=True, verified=False, detail=str(exc))

    actual = compute_md5(local_path)
    if actual != expected:
        raise IntegrityMismatch(local_path.name, expected, actual)

    logger.info("MD5 verified for %s", local_path.name)
    return VerificationResult(passed=True, verified=True, expected=expected, actual=actual)
