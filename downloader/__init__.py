"""
ClinVar source download package.

Lists the published tab-delimited dumps, streams them to disk and checks
them against their published MD5 companions.
"""

from downloader.core import DownloadResult, close_session, download_file, get_session
from downloader.sources import RemoteFileDescriptor, list_remote_files, parse_index
from downloader.verify import VerificationResult, compute_md5, verify_checksum

__all__ = [
    "DownloadResult",
    "close_session",
    "download_file",
    "get_session",
    "RemoteFileDescriptor",
    "list_remote_files",
    "parse_index",
    "VerificationResult",
    "compute_md5",
    "verify_checksum",
]
