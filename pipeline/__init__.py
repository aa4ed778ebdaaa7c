"""
Pipeline package -- ClinVar sync stages.

Submodules are imported directly (``from pipeline.orchestrator import
Orchestrator``); only the error types are re-exported here, because the
downloader package depends on them and must not pull in the orchestrator.
"""

from pipeline.errors import (
    EnrichmentFailure,
    IntegrityMismatch,
    LoadError,
    NetworkFailure,
    ParseFailure,
    SyncError,
)

__all__ = [
    "EnrichmentFailure",
    "IntegrityMismatch",
    "LoadError",
    "NetworkFailure",
    "ParseFailure",
    "SyncError",
]
