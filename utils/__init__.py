"""Shared utilities for the ClinVar sync tools."""

# Common utilities
from utils.common import format_bytes, sanitize_column

# Database utilities
from utils.database import (
    init_pragmas,
    connect,
    quote_ident,
    batch_insert,
    get_table_count,
    table_exists,
    list_tables_like,
)

# HTTP utilities
from utils.http import RetryStrategy, SessionManager

# Configuration
from utils.config import Config, SyncConfig

__all__ = [
    "format_bytes",
    "sanitize_column",
    "init_pragmas",
    "connect",
    "quote_ident",
    "batch_insert",
    "get_table_count",
    "table_exists",
    "list_tables_like",
    "RetryStrategy",
    "SessionManager",
    "Config",
    "SyncConfig",
]
