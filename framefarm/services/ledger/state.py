"""
state.py

Persisted per-job progress record (`state.json`) plus the per-unit metadata
accumulation file (`meta.json`).

Only the current lease holder writes a job's ledger. Readers (scans, the
reconciler's inspection pass) never need the lease.
"""

from __future__ import annotations

import enum
import logging
import pathlib
import threading
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from framefarm.shared.fsio import atomic_write_json, load_json, now_ms

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
META_FILENAME = "meta.json"

DEFAULT_MAX_RETRIES = 5
DEFAULT_COOLDOWN_MS = 60_000
DEFAULT_COOLDOWN_CAP_MS = 3_600_000

UnitId = Union[int, str]


class LedgerError(RuntimeError):
    """Missing or corrupt ledger."""


class Stage(str, enum.Enum):
    INITIALIZING = "initializing"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


def cooldown_ms(
    failed_attempts: int,
    base_ms: int = DEFAULT_COOLDOWN_MS,
    cap_ms: int = DEFAULT_COOLDOWN_CAP_MS,
) -> int:
    """Exponential cooldown: min(base * 2**attempts, cap)."""
    attempts = max(0, failed_attempts)
    # avoid huge ints for absurd attempt counts
    if attempts >= 63:
        return cap_ms
    return min(base_ms * (2 ** attempts), cap_ms)


@dataclass
class LedgerRecord:
    worker_id: str
    start_time: int
    last_updated: int
    current_stage: Stage = Stage.INITIALIZING
    completed_units: List[UnitId] = field(default_factory=list)
    current_unit: Optional[UnitId] = None
    failed_attempts: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    error: str = ""
    cooldown_until: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "workerId": self.worker_id,
            "startTime": self.start_time,
            "lastUpdated": self.last_updated,
            "currentStage": self.current_stage.value,
            "completedUnits": list(self.completed_units),
            "currentUnit": self.current_unit,
            "failedAttempts": self.failed_attempts,
            "maxRetries": self.max_retries,
            "error": self.error,
        }
        if self.cooldown_until is not None:
            payload["cooldownUntil"] = self.cooldown_until
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerRecord":
        completed: List[UnitId] = []
        for unit in data.get("completedUnits", []):
            if unit not in completed:
                completed.append(unit)
        cooldown = data.get("cooldownUntil")
        return cls(
            worker_id=str(data["workerId"]),
            start_time=int(data["startTime"]),
            last_updated=int(data["lastUpdated"]),
            current_stage=Stage(data.get("currentStage", Stage.INITIALIZING.value)),
            completed_units=completed,
            current_unit=data.get("currentUnit"),
            failed_attempts=int(data.get("failedAttempts", 0)),
            max_retries=int(data.get("maxRetries", DEFAULT_MAX_RETRIES)),
            error=str(data.get("error") or ""),
            cooldown_until=int(cooldown) if cooldown is not None else None,
        )


_FIELD_NAMES = frozenset(f.name for f in fields(LedgerRecord))


class JobLedger:
    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self.clock = clock
        # state.json and meta.json are read-modify-write; units finish on threads
        self._state_lock = threading.Lock()
        self._meta_lock = threading.Lock()

    @staticmethod
    def state_path(job_path: pathlib.Path) -> pathlib.Path:
        return pathlib.Path(job_path) / STATE_FILENAME

    @staticmethod
    def meta_path(job_path: pathlib.Path) -> pathlib.Path:
        return pathlib.Path(job_path) / META_FILENAME

    def get(self, job_path: pathlib.Path) -> Optional[LedgerRecord]:
        path = self.state_path(job_path)
        if not path.exists():
            return None
        try:
            data = load_json(path)
            return LedgerRecord.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise LedgerError(f"Corrupt ledger at {path}: {e}") from e

    def _require(self, job_path: pathlib.Path) -> LedgerRecord:
        record = self.get(job_path)
        if record is None:
            raise LedgerError(f"No ledger for {pathlib.Path(job_path).name}")
        return record

    def _save(self, job_path: pathlib.Path, record: LedgerRecord) -> LedgerRecord:
        record.last_updated = self.clock()
        atomic_write_json(self.state_path(job_path), record.to_dict())
        return record

    def initialize(
        self,
        job_path: pathlib.Path,
        holder_id: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> LedgerRecord:
        """
        Creates a fresh ledger, or re-stamps an existing one for a resumed job.
        Resuming counts as a failed attempt.
        """
        with self._state_lock:
            existing = self.get(job_path)
            if existing is None:
                ts = self.clock()
                record = LedgerRecord(
                    worker_id=holder_id,
                    start_time=ts,
                    last_updated=ts,
                    max_retries=max_retries,
                )
                logger.info(f"Initialized ledger for {pathlib.Path(job_path).name}")
                return self._save(job_path, record)

            existing.worker_id = holder_id
            existing.failed_attempts += 1
            logger.info(
                f"Resuming {pathlib.Path(job_path).name} (attempt {existing.failed_attempts}, "
                f"{len(existing.completed_units)} units complete)"
            )
            return self._save(job_path, existing)

    def update(self, job_path: pathlib.Path, **fields: Any) -> LedgerRecord:
        with self._state_lock:
            record = self._require(job_path)
            for key, value in fields.items():
                if key not in _FIELD_NAMES:
                    raise ValueError(f"Unknown ledger field: {key}")
                if key == "current_stage":
                    value = Stage(value)
                setattr(record, key, value)
            return self._save(job_path, record)

    def mark_unit_started(self, job_path: pathlib.Path, unit_id: UnitId) -> LedgerRecord:
        return self.update(job_path, current_unit=unit_id, current_stage=Stage.PROCESSING)

    def mark_unit_completed(self, job_path: pathlib.Path, unit_id: UnitId) -> LedgerRecord:
        with self._state_lock:
            record = self._require(job_path)
            if unit_id in record.completed_units:
                return record
            record.completed_units.append(unit_id)
            record.current_unit = None
            return self._save(job_path, record)

    def set_completed_units(self, job_path: pathlib.Path, units: Iterable[UnitId]) -> LedgerRecord:
        deduped: List[UnitId] = []
        for unit in units:
            if unit not in deduped:
                deduped.append(unit)
        return self.update(job_path, completed_units=deduped)

    def mark_failed(
        self,
        job_path: pathlib.Path,
        reason: str,
        cooldown: int = DEFAULT_COOLDOWN_MS,
    ) -> LedgerRecord:
        with self._state_lock:
            record = self._require(job_path)
            record.current_stage = Stage.FAILED
            record.error = reason
            record.cooldown_until = self.clock() + cooldown
            logger.info(f"Ledger for {pathlib.Path(job_path).name} marked failed ({reason}); cooldown {cooldown}ms")
            return self._save(job_path, record)

    def mark_completed(self, job_path: pathlib.Path) -> LedgerRecord:
        with self._state_lock:
            record = self._require(job_path)
            record.current_stage = Stage.COMPLETED
            record.current_unit = None
            record.error = ""
            record.cooldown_until = None
            return self._save(job_path, record)

    def has_exceeded_max_retries(self, job_path: pathlib.Path) -> bool:
        record = self.get(job_path)
        if record is None:
            return False
        return record.failed_attempts >= record.max_retries

    def is_in_cooldown(self, job_path: pathlib.Path) -> bool:
        record = self.get(job_path)
        if record is None or record.cooldown_until is None:
            return False
        return record.cooldown_until > self.clock()

    # -- per-unit metadata ----------------------------------------------------

    def load_meta(self, job_path: pathlib.Path) -> List[Dict[str, Any]]:
        path = self.meta_path(job_path)
        if not path.exists():
            return []
        try:
            data = load_json(path)
        except ValueError as e:
            raise LedgerError(f"Corrupt metadata at {path}: {e}") from e
        if not isinstance(data, list):
            raise LedgerError(f"Metadata at {path} is not a list")
        return data

    def record_unit_result(
        self,
        job_path: pathlib.Path,
        unit_id: UnitId,
        kind: str,
        result: Dict[str, Any],
    ) -> None:
        """Read-merge-write of one unit's result into meta.json."""
        with self._meta_lock:
            entries = self.load_meta(job_path)
            entry = next((e for e in entries if e.get("unit") == unit_id), None)
            if entry is None:
                entry = {"unit": unit_id}
                entries.append(entry)
            entry[kind] = result
            atomic_write_json(self.meta_path(job_path), entries)

    # -- scans ----------------------------------------------------------------

    def _scan(self, queue_dir: pathlib.Path, keep: Callable[[LedgerRecord], bool]) -> List[pathlib.Path]:
        found: List[pathlib.Path] = []
        if not queue_dir.exists():
            return found
        for job_path in sorted(p for p in queue_dir.iterdir() if p.is_dir()):
            try:
                record = self.get(job_path)
            except LedgerError as e:
                logger.warning(str(e))
                continue
            if record is not None and keep(record):
                found.append(job_path)
        return found

    def find_failed(self, queue_dir: pathlib.Path) -> List[pathlib.Path]:
        return self._scan(queue_dir, lambda r: r.current_stage == Stage.FAILED)

    def find_incomplete(self, queue_dir: pathlib.Path) -> List[pathlib.Path]:
        return self._scan(
            queue_dir,
            lambda r: r.current_stage not in (Stage.COMPLETED, Stage.FAILED),
        )

