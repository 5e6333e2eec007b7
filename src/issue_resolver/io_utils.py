"""File helpers for the optional YAML config and the JSONL session archive."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterator

import yaml
from filelock import FileLock

from .utils import _now_iso


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse and IO failures are reported instead of raised so a broken config
    file never crashes startup.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _lock_path(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".lock")


def _append_record(archive_path: Path, record: dict[str, Any]) -> None:
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(record)
    payload.setdefault("archived_at", _now_iso())
    line = json.dumps(payload) + "\n"
    with FileLock(str(_lock_path(archive_path))):
        with open(archive_path, "a", encoding="utf-8") as handle:
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())


def _iter_records(archive_path: Path) -> Iterator[dict[str, Any]]:
    if not archive_path.exists():
        return
    with open(archive_path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                yield record
