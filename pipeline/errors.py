"""
Error taxonomy for the sync pipeline.

Each class maps to one failure scope:

    NetworkFailure      one file (listing / download) or one gene (E-utilities)
    IntegrityMismatch   one file; aborts that file's chain
    ChecksumUnavailable one file; the verifier swallows it and passes (fail-open)
    ParseFailure        one row; written to the parse-failure log, row skipped
    LoadError           one file; staging rolled back, canonical untouched
    EnrichmentFailure   one gene; logged, loop continues

Anything that is not a SyncError and escapes Orchestrator.trigger() is a
fatal run failure.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all expected pipeline failures."""


class NetworkFailure(SyncError):
    """A listing, download or API request failed."""

    def __init__(self, message: str, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class ChecksumUnavailable(NetworkFailure):
    """The published checksum could not be fetched."""


class IntegrityMismatch(SyncError):
    """Local digest differs from the published checksum."""

    def __init__(self, file_name: str, expected: str, actual: str) -> None:
        super().__init__(
            f"MD5 mismatch for {file_name}: expected {expected}, got {actual}"
        )
        self.file_name = file_name
        self.expected = expected
        self.actual = actual


class LoadError(SyncError):
    """Staging or promotion of a table failed."""


class EnrichmentFailure(SyncError):
    """Counting variants for one gene failed."""

    def __init__(self, gene_symbol: str, message: str) -> None:
        super().__init__(f"{gene_symbol}: {message}")
        self.gene_symbol = gene_symbol


# Reason code -> message written to the parse-failure log
PARSE_REASONS = {
    "empty_name": "Empty or null fullName",
    "invalid_structure": "Invalid format - missing required structure",
    "no_transcript_gene": "Invalid format - could not extract transcript ID and gene symbol",
    "no_dna_change": "Missing or invalid DNA change",
}


class ParseFailure(SyncError):
    """A variant name did not match the expected nomenclature."""

    def __init__(self, reason: str, name: str | None) -> None:
        self.reason = reason
        self.name = name
        super().__init__(PARSE_REASONS.get(reason, reason))

    @property
    def message(self) -> str:
        return PARSE_REASONS.get(self.reason, self.reason)
