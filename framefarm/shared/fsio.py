"""
fsio.py

Small filesystem helpers shared by the lease, ledger and queue services.
Every persisted JSON document in a job folder goes through atomic_write_json so
that readers never observe a half-written file.
"""

from __future__ import annotations

import json
import pathlib
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def now_ts() -> str:
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def atomic_write_json(path: pathlib.Path, payload: Any, tmp_path: Optional[pathlib.Path] = None) -> None:
    tmp_path = tmp_path or path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def load_json(path: pathlib.Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def append_event(
    events_path: pathlib.Path,
    event: str,
    from_state: Optional[str],
    to_state: Optional[str],
    worker_id: Optional[str],
    details: Optional[Dict[str, Any]] = None,
) -> None:
    record = {
        "ts": now_ts(),
        "event": event,
        "from_state": from_state,
        "to_state": to_state,
        "worker_id": worker_id,
        "details": details or {},
    }
    with events_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record) + "\n")
