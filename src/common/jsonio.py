import json
import os
import time
from pathlib import Path
from typing import Any


def atomic_write_json(path: str | Path, data: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(f"{target.suffix}.{os.getpid()}.tmp")
    payload = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False)
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, target)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def quarantine_file(path: str | Path, *, timestamp: int | None = None) -> Path:
    """Move ``path`` aside as ``<stem>.corrupt.<ts><suffix>`` and return the new path.

    The file is renamed, never deleted, so it stays available for manual
    recovery. A numeric counter is appended when the timestamped name is taken.
    """
    source = Path(path)
    ts = int(time.time()) if timestamp is None else int(timestamp)
    candidate = source.with_name(f"{source.stem}.corrupt.{ts}{source.suffix}")
    counter = 1
    while candidate.exists():
        candidate = source.with_name(f"{source.stem}.corrupt.{ts}-{counter}{source.suffix}")
        counter += 1
    os.replace(source, candidate)
    return candidate
