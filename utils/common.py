"""Small helpers shared by the downloader and the pipeline."""

import re

_UNITS = ("KB", "MB", "GB", "TB")
_NON_IDENT = re.compile(r"[^0-9A-Za-z_]+")


def format_bytes(b: int) -> str:
    """Human-readable size: ``512 KB``, ``1.5 MB``, ``2.34 GB``.

    Sizes below one megabyte are shown in whole kilobytes; ClinVar dumps are
    never that small, so anything that is usually means a truncated download.
    """
    size = b / 1024
    for unit in _UNITS:
        if size < 1024 or unit == _UNITS[-1]:
            break
        size /= 1024
    decimals = {"KB": 0, "MB": 1}.get(unit, 2)
    return f"{size:.{decimals}f} {unit}"


def sanitize_column(name: str) -> str:
    """Turn a dump header field into a safe column identifier.

    ``#AlleleID`` -> ``AlleleID``, ``RS# (dbSNP)`` -> ``RS_dbSNP``,
    ``nsv/esv (dbVar)`` -> ``nsv_esv_dbVar``.
    """
    name = _NON_IDENT.sub("_", name.strip().lstrip("#")).strip("_")
    if not name:
        return "col"
    if name[0].isdigit():
        return "c_" + name
    return name
