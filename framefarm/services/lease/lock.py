"""
lock.py

Per-job lease lock stored as a `.lock` JSON file inside the job folder.

A lease is valid while its lastHeartbeat is younger than the staleness
threshold. The holder renews it from a background heartbeat thread owned by
the LeaseLock instance. Any worker may overwrite a stale lease, but only
after winning the `.lock.reclaim-<digest>` gate for the exact bytes it saw.

Filesystem errors never escape acquire/release: contention and transient I/O
trouble are reported as "not acquired".
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import pathlib
import socket
import threading
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from framefarm.shared.fsio import atomic_write_json, now_ms

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"
RECLAIM_GATE_PREFIX = f"{LOCK_FILENAME}.reclaim-"
DEFAULT_STALE_THRESHOLD_MS = 5 * 60 * 1000
DEFAULT_HEARTBEAT_INTERVAL_S = 30.0


class LeaseNotHeldError(RuntimeError):
    """Raised when an operation requires the caller to hold the job lease."""


@dataclass
class LeaseRecord:
    holderId: str
    hostname: str
    pid: int
    createdAt: int
    lastHeartbeat: int

    @classmethod
    def from_dict(cls, data: Dict) -> "LeaseRecord":
        return cls(
            holderId=str(data["holderId"]),
            hostname=str(data.get("hostname", "")),
            pid=int(data.get("pid", 0)),
            createdAt=int(data["createdAt"]),
            lastHeartbeat=int(data["lastHeartbeat"]),
        )


class Heartbeat:
    """Background renewal task for one held lease."""

    def __init__(self, lock: "LeaseLock", job_path: pathlib.Path, interval_s: float) -> None:
        self.lock = lock
        self.job_path = job_path
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-heartbeat-{job_path.name}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            if not self.lock._renew(self.job_path):
                # lease vanished or changed hands; never recreate it
                self._stop.set()
                self.lock._forget(self.job_path, self)
                return


class LeaseLock:
    def __init__(
        self,
        holder_id: Optional[str] = None,
        stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS,
        heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if heartbeat_interval_s * 1000 >= stale_threshold_ms:
            raise ValueError("heartbeat interval must be shorter than the staleness threshold")
        self.holder_id = holder_id or f"worker-{uuid.uuid4().hex[:12]}"
        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self.stale_threshold_ms = stale_threshold_ms
        self.heartbeat_interval_s = heartbeat_interval_s
        self.clock = clock
        self._heartbeats: Dict[pathlib.Path, Heartbeat] = {}
        self._guard = threading.Lock()

    # -- file helpers -------------------------------------------------------

    @staticmethod
    def lease_path(job_path: pathlib.Path) -> pathlib.Path:
        return pathlib.Path(job_path) / LOCK_FILENAME

    def _tmp_path(self, job_path: pathlib.Path) -> pathlib.Path:
        return pathlib.Path(job_path) / f"{LOCK_FILENAME}.{self.holder_id}.tmp"

    @staticmethod
    def _gate_path(job_path: pathlib.Path, snapshot: bytes) -> pathlib.Path:
        digest = hashlib.sha1(snapshot).hexdigest()[:16]
        return pathlib.Path(job_path) / f"{RECLAIM_GATE_PREFIX}{digest}"

    def _read_raw(self, job_path: pathlib.Path) -> Optional[bytes]:
        try:
            return self.lease_path(job_path).read_bytes()
        except FileNotFoundError:
            return None

    def _parse(self, job_path: pathlib.Path, raw: bytes) -> LeaseRecord:
        try:
            return LeaseRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise ValueError(f"unreadable lease at {self.lease_path(job_path)}: {e}") from e

    def read(self, job_path: pathlib.Path) -> Optional[LeaseRecord]:
        """Returns the lease record, or None when there is no lease file.

        Raises ValueError for an unreadable lease file.
        """
        raw = self._read_raw(job_path)
        if raw is None:
            return None
        return self._parse(job_path, raw)

    def is_stale(self, record: LeaseRecord) -> bool:
        return self.clock() - record.lastHeartbeat > self.stale_threshold_ms

    def _new_record(self) -> LeaseRecord:
        ts = self.clock()
        return LeaseRecord(
            holderId=self.holder_id,
            hostname=self.hostname,
            pid=self.pid,
            createdAt=ts,
            lastHeartbeat=ts,
        )

    def _write(self, job_path: pathlib.Path, record: LeaseRecord) -> None:
        atomic_write_json(self.lease_path(job_path), asdict(record), tmp_path=self._tmp_path(job_path))

    def _create_exclusive(self, job_path: pathlib.Path, record: LeaseRecord) -> bool:
        # Link a fully written temp file into place: the link fails if any
        # other worker created the lease first.
        tmp = self._tmp_path(job_path)
        tmp.write_text(json.dumps(asdict(record), indent=2, sort_keys=True), encoding="utf-8")
        try:
            os.link(tmp, self.lease_path(job_path))
            return True
        except FileExistsError:
            return False
        finally:
            tmp.unlink(missing_ok=True)

    def _reclaim(self, job_path: pathlib.Path, snapshot: bytes, current: Optional[LeaseRecord]) -> bool:
        """Overwrites the stale lease whose bytes were `snapshot`.

        Only the worker that creates the reclaim gate for that exact snapshot
        may replace it, so concurrent reclaimers of one stale lease get a
        single winner while the lease file itself never goes missing.
        """
        gate = self._gate_path(job_path, snapshot)
        try:
            fd = os.open(gate, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            logger.debug(f"Lost stale lease race on {job_path.name}")
            return False
        try:
            os.write(fd, self.holder_id.encode("utf-8"))
        finally:
            os.close(fd)

        if self._read_raw(job_path) != snapshot:
            # renewed, released or replaced since we looked
            gate.unlink(missing_ok=True)
            logger.debug(f"Lease on {job_path.name} changed before reclaim")
            return False

        self._write(job_path, self._new_record())
        holder = current.holderId if current else "unknown"
        logger.warning(f"Reclaimed stale lease on {job_path.name} from {holder}")
        return True

    def _clear_gates(self, job_path: pathlib.Path) -> None:
        for gate in pathlib.Path(job_path).glob(f"{RECLAIM_GATE_PREFIX}*"):
            gate.unlink(missing_ok=True)

    # -- public API ---------------------------------------------------------

    def acquire(self, job_path: pathlib.Path) -> bool:
        job_path = pathlib.Path(job_path)
        try:
            raw = self._read_raw(job_path)
            current: Optional[LeaseRecord] = None
            stale_takeover = False
            if raw is not None:
                try:
                    current = self._parse(job_path, raw)
                except ValueError as e:
                    logger.warning(f"Treating unreadable lease as stale: {e}")
                    stale_takeover = True
                else:
                    stale_takeover = self.is_stale(current)

            if current is not None and not stale_takeover:
                if current.holderId != self.holder_id:
                    logger.debug(f"Lease on {job_path.name} held by {current.holderId}")
                    return False
                current.lastHeartbeat = self.clock()
                self._write(job_path, current)
            elif stale_takeover:
                if not self._reclaim(job_path, raw, current):
                    return False
            elif not self._create_exclusive(job_path, self._new_record()):
                logger.debug(f"Lost lease race on {job_path.name}")
                return False
        except OSError as e:
            logger.error(f"Failed to acquire lease on {job_path}: {e}")
            return False

        self._start_heartbeat(job_path)
        logger.info(f"Acquired lease on {job_path.name} as {self.holder_id}")
        return True

    def release(self, job_path: pathlib.Path) -> None:
        job_path = pathlib.Path(job_path)
        self._stop_heartbeat(job_path)
        try:
            current = self.read(job_path)
        except ValueError as e:
            logger.warning(f"Not releasing {job_path.name}: {e}")
            return
        except OSError as e:
            logger.error(f"Failed to read lease on {job_path}: {e}")
            return
        if current is None:
            return
        if current.holderId != self.holder_id:
            logger.warning(
                f"Cannot release lease on {job_path.name}: held by {current.holderId}, not {self.holder_id}"
            )
            return
        try:
            self.lease_path(job_path).unlink(missing_ok=True)
            self._clear_gates(job_path)
            logger.info(f"Released lease on {job_path.name}")
        except OSError as e:
            logger.error(f"Failed to release lease on {job_path}: {e}")

    def force_release(self, job_path: pathlib.Path) -> None:
        job_path = pathlib.Path(job_path)
        self._stop_heartbeat(job_path)
        try:
            self.lease_path(job_path).unlink(missing_ok=True)
            self._clear_gates(job_path)
        except OSError as e:
            logger.error(f"Failed to force-release lease on {job_path}: {e}")

    def is_held(self, job_path: pathlib.Path) -> bool:
        try:
            current = self.read(job_path)
        except (ValueError, OSError):
            return False
        return current is not None and not self.is_stale(current)

    def owns(self, job_path: pathlib.Path) -> bool:
        try:
            current = self.read(job_path)
        except (ValueError, OSError):
            return False
        return current is not None and current.holderId == self.holder_id and not self.is_stale(current)

    def heartbeat_running(self, job_path: pathlib.Path) -> bool:
        hb = self._heartbeats.get(self._key(job_path))
        return hb is not None and hb.running

    def shutdown(self) -> None:
        with self._guard:
            heartbeats = list(self._heartbeats.values())
            self._heartbeats.clear()
        for hb in heartbeats:
            hb.stop()

    # -- scans --------------------------------------------------------------

    def find_stale(self, queue_dir: pathlib.Path) -> List[pathlib.Path]:
        """Job folders whose lease exists but is stale or unreadable."""
        found: List[pathlib.Path] = []
        if not queue_dir.exists():
            return found
        for job_path in sorted(p for p in queue_dir.iterdir() if p.is_dir()):
            if not self.lease_path(job_path).exists():
                continue
            try:
                current = self.read(job_path)
            except ValueError:
                found.append(job_path)
                continue
            except OSError:
                continue
            if current is not None and self.is_stale(current):
                found.append(job_path)
        return found

    def find_unleased(self, queue_dir: pathlib.Path, min_age_ms: int = 0) -> List[pathlib.Path]:
        """Job folders without any lease file, untouched for at least min_age_ms."""
        found: List[pathlib.Path] = []
        if not queue_dir.exists():
            return found
        now = self.clock()
        for job_path in sorted(p for p in queue_dir.iterdir() if p.is_dir()):
            if self.lease_path(job_path).exists():
                continue
            try:
                age_ms = now - int(job_path.stat().st_mtime * 1000)
            except OSError:
                continue
            if min_age_ms and age_ms < min_age_ms:
                continue
            found.append(job_path)
        return found

    # -- heartbeat plumbing ---------------------------------------------------

    @staticmethod
    def _key(job_path: pathlib.Path) -> pathlib.Path:
        # relative and absolute spellings of one job share a heartbeat
        return pathlib.Path(job_path).resolve()

    def _start_heartbeat(self, job_path: pathlib.Path) -> None:
        key = self._key(job_path)
        with self._guard:
            existing = self._heartbeats.get(key)
            if existing is not None and existing.running:
                return
            hb = Heartbeat(self, key, self.heartbeat_interval_s)
            self._heartbeats[key] = hb
        hb.start()

    def _stop_heartbeat(self, job_path: pathlib.Path) -> None:
        with self._guard:
            hb = self._heartbeats.pop(self._key(job_path), None)
        if hb is not None:
            hb.stop()

    def _forget(self, job_path: pathlib.Path, hb: Heartbeat) -> None:
        key = self._key(job_path)
        with self._guard:
            if self._heartbeats.get(key) is hb:
                del self._heartbeats[key]

    def _renew(self, job_path: pathlib.Path) -> bool:
        try:
            current = self.read(job_path)
        except (ValueError, OSError) as e:
            logger.warning(f"Heartbeat stopping for {job_path.name}: {e}")
            return False
        if current is None:
            logger.warning(f"Lease on {job_path.name} disappeared; heartbeat stopping")
            return False
        if current.holderId != self.holder_id:
            logger.warning(f"Lease on {job_path.name} taken over by {current.holderId}; heartbeat stopping")
            return False
        current.lastHeartbeat = self.clock()
        try:
            self._write(job_path, current)
        except OSError as e:
            # transient; try again next tick
            logger.error(f"Heartbeat write failed for {job_path.name}: {e}")
        return True
