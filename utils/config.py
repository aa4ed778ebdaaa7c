"""Configuration management utilities for the ClinVar sync tools.

Provides reusable pieces for:
- Loading and saving configuration as JSON
- Reading environment-specific settings with sensible defaults
- Known values for the ClinVar source layout (required files, table specs)
"""

from pathlib import Path
from typing import Dict, Optional, Any
import json
import os as _os


# ── ClinVar source constants ─────────────────────────────────────────────────
# Order matters: files are synchronized sequentially in this order.

DEFAULT_BASE_URL = "https://ftp.ncbi.nlm.nih.gov/pub/clinvar/tab_delimited/"

REQUIRED_FILES = (
    "variant_summary.txt.gz",
    "submission_summary.txt.gz",
)

# Remote file name -> canonical table name
FILE_TABLE_MAP = {
    "variant_summary.txt.gz": "variant_summary",
    "submission_summary.txt.gz": "submission_summary",
}

DEFAULT_SYNC_SCHEDULE = "45 21 * * 5"     # Fridays 21:45
DEFAULT_HEALTH_SCHEDULE = "0 9 * * *"     # daily 09:00


class Config:
    """Base configuration class for organizing application settings."""

    def __init__(self):
        """Initialize configuration with default values."""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary.

        Returns:
            Dictionary of all public config attributes
        """
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Config instance with values from dictionary
        """
        config = cls()
        for key, value in data.items():
            setattr(config, key, value)
        return config

    def save_json(self, path: Path) -> None:
        """Save configuration to JSON file.

        Args:
            path: Path to save configuration file
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

    @classmethod
    def load_json(cls, path: Path) -> "Config":
        """Load configuration from JSON file.

        Raises:
            FileNotFoundError: If file doesn't exist
            json.JSONDecodeError: If file is not valid JSON
        """
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)


def _env_path(name: str, default: Optional[str]) -> Optional[Path]:
    raw = _os.getenv(name, default)
    return Path(raw) if raw else None


class SyncConfig(Config):
    """Pipeline configuration loaded from environment variables.

    All env vars have defaults so a bare ``python refresh_clinvar.py`` works
    against the public NCBI mirror with a local SQLite file.

    Environment variables:
        CLINVAR_BASE_URL: Directory index holding the tab-delimited dumps
        CLINVAR_DB_PATH: Path to the SQLite database (default: clinvar.sqlite)
        DOWNLOAD_DIR: Where compressed downloads land (default: data/downloads)
        TEMP_DIR: Where decompressed files land (default: data/temp)
        LOG_DIR: Root of all logs (default: logs)
        LOAD_BATCH_SIZE: Rows per bulk-insert batch (default: 25000)
        COMPONENT_PAGE_SIZE: Keyset page size for component parsing (default: 10000)
        ENRICH_DELAY_SECONDS: Pause between E-utilities calls (default: 0.5)
        NCBI_API_KEY: Optional E-utilities API key
        SYNC_SCHEDULE: Cron expression for the full sync (default: 45 21 * * 5)
        HEALTH_SCHEDULE: Cron expression for the heartbeat (default: 0 9 * * *)
        LOG_RETENTION_RUNS: Per-run log directories to keep (default: 5)
        SENDGRID_API_KEY / SENDGRID_FROM_EMAIL / NOTIFICATION_EMAIL: summary mail
        GENE_SYMBOLS_FILE: Optional gene symbol list used to seed enrichment
    """

    def __init__(self) -> None:
        super().__init__()
        self.base_url = _os.getenv("CLINVAR_BASE_URL", DEFAULT_BASE_URL)
        self.db_path = Path(_os.getenv("CLINVAR_DB_PATH", "clinvar.sqlite"))
        self.download_dir = Path(_os.getenv("DOWNLOAD_DIR", "data/downloads"))
        self.temp_dir = Path(_os.getenv("TEMP_DIR", "data/temp"))
        self.log_dir = Path(_os.getenv("LOG_DIR", "logs"))
        self.load_batch_size = int(_os.getenv("LOAD_BATCH_SIZE", "25000"))
        self.component_page_size = int(_os.getenv("COMPONENT_PAGE_SIZE", "10000"))
        self.enrich_delay = float(_os.getenv("ENRICH_DELAY_SECONDS", "0.5"))
        self.ncbi_api_key = _os.getenv("NCBI_API_KEY") or None
        self.sync_schedule = _os.getenv("SYNC_SCHEDULE", DEFAULT_SYNC_SCHEDULE)
        self.health_schedule = _os.getenv("HEALTH_SCHEDULE", DEFAULT_HEALTH_SCHEDULE)
        self.log_retention_runs = int(_os.getenv("LOG_RETENTION_RUNS", "5"))
        self.sendgrid_api_key = _os.getenv("SENDGRID_API_KEY") or None
        self.sendgrid_from_email = _os.getenv("SENDGRID_FROM_EMAIL") or None
        self.notification_email = _os.getenv("NOTIFICATION_EMAIL") or None
        self.gene_symbols_file = _env_path("GENE_SYMBOLS_FILE", None)
        self.required_files = list(REQUIRED_FILES)

    @property
    def failure_log_path(self) -> Path:
        """The one log file that survives every cleanup."""
        return self.log_dir / "componentPartFailures.log"

    @property
    def pipeline_log_dir(self) -> Path:
        return self.log_dir / "pipeline"

    @property
    def ledger_path(self) -> Path:
        return self.log_dir / "ledger.jsonl"

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Create a SyncConfig instance populated from environment variables."""
        return cls()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        config = cls()
        path_keys = {"db_path", "download_dir", "temp_dir", "log_dir", "gene_symbols_file"}
        for key, value in data.items():
            if key in path_keys and value is not None:
                value = Path(value)
            setattr(config, key, value)
        return config
