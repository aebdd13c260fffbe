from __future__ import annotations

import gzip
import json
from pathlib import Path
from typing import Any


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def safe_filename(identifier: Any, limit: int = 80) -> str:
    safe_id = "".join(ch if ch.isalnum() else "_" for ch in str(identifier))
    return safe_id[:limit] if safe_id else "unknown"


def save_gzip_json(path: Path, payload: Any) -> None:
    ensure_dir(path.parent)
    with gzip.open(path, "wt", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=True)


def archive_payload(raw_dir: Path | None, source: str, identifier: Any, payload: Any) -> Path | None:
    """Keep a raw API page as ``<source>_<identifier>.json.gz`` under ``raw_dir``."""
    if raw_dir is None:
        return None
    path = raw_dir / f"{source}_{safe_filename(identifier)}.json.gz"
    save_gzip_json(path, payload)
    return path


def write_error_dump(
    error_dir: Path | None,
    label: str,
    identifier: Any,
    status: str,
    record: dict[str, Any],
) -> Path | None:
    if error_dir is None:
        return None
    ensure_dir(error_dir)
    path = error_dir / f"{label}_{safe_filename(identifier)}_{status}.txt"
    path.write_text(json.dumps(record, ensure_ascii=True, indent=2), encoding="utf-8")
    return path
