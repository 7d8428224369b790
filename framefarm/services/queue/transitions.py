"""
transitions.py

Moves job folders between the four queue directories:

    intake/  ->  active/  ->  done/ | failed/

A job is one folder named after the submitted payload's base name. Before a
claim, an intake item may also be a bare `<name>.json` file.
"""

from __future__ import annotations

import logging
import os
import pathlib
import shutil
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from framefarm.services.lease.lock import LeaseLock
from framefarm.shared.fsio import atomic_write_json

logger = logging.getLogger(__name__)

INTAKE = "intake"
ACTIVE = "active"
DONE = "done"
FAILED = "failed"
QUEUES = (INTAKE, ACTIVE, DONE, FAILED)


@dataclass(frozen=True)
class Job:
    name: str
    path: pathlib.Path


def job_name_for(item: pathlib.Path) -> str:
    return item.stem if item.is_file() else item.name


class QueueManager:
    def __init__(self, base_dir: pathlib.Path, lease: LeaseLock) -> None:
        self.base_dir = pathlib.Path(base_dir)
        self.lease = lease

    def queue_dir(self, queue: str) -> pathlib.Path:
        if queue not in QUEUES:
            raise ValueError(f"Unknown queue: {queue}")
        return self.base_dir / queue

    def ensure_dirs(self) -> None:
        for queue in QUEUES:
            self.queue_dir(queue).mkdir(parents=True, exist_ok=True)

    def job_path(self, queue: str, job_name: str) -> pathlib.Path:
        return self.queue_dir(queue) / job_name

    def list_intake(self) -> List[pathlib.Path]:
        intake = self.queue_dir(INTAKE)
        if not intake.exists():
            return []
        items = [
            p for p in intake.iterdir()
            if not p.name.startswith(".") and (p.is_dir() or p.suffix == ".json")
        ]
        return sorted(items, key=lambda p: p.name)

    def list_jobs(self, queue: str) -> List[pathlib.Path]:
        qdir = self.queue_dir(queue)
        if not qdir.exists():
            return []
        return sorted((p for p in qdir.iterdir() if p.is_dir()), key=lambda p: p.name)

    def submit(self, payload: Dict[str, Any], job_name: str) -> pathlib.Path:
        """Drops a payload into intake as `<job_name>.json`."""
        if not job_name or "/" in job_name or job_name.startswith("."):
            raise ValueError(f"Invalid job name: {job_name!r}")
        intake = self.queue_dir(INTAKE)
        intake.mkdir(parents=True, exist_ok=True)
        dst = intake / f"{job_name}.json"
        if dst.exists() or (intake / job_name).exists():
            raise FileExistsError(f"Job {job_name} is already queued")
        atomic_write_json(dst, payload)
        logger.info(f"Submitted {job_name} to intake")
        return dst

    def claim(self, job_name: str) -> Optional[Job]:
        """
        Moves an intake item into active. Returns None without side effects when
        the item is gone or a same-named active folder already exists.
        """
        active = self.job_path(ACTIVE, job_name)
        if active.exists():
            logger.debug(f"{job_name} already active; skipping claim")
            return None
        self.queue_dir(ACTIVE).mkdir(parents=True, exist_ok=True)

        folder = self.job_path(INTAKE, job_name)
        single = self.queue_dir(INTAKE) / f"{job_name}.json"
        try:
            if folder.is_dir():
                # rename is the atomic gate: only one worker can move the folder
                os.rename(folder, active)
            elif single.is_file():
                return self._claim_file(single, active)
            else:
                return None
        except FileNotFoundError:
            logger.debug(f"{job_name} vanished from intake before claim")
            return None
        except OSError as e:
            logger.warning(f"Could not claim {job_name}: {e}")
            return None

        logger.info(f"Claimed {job_name}")
        return Job(name=job_name, path=active)

    def _claim_file(self, src: pathlib.Path, active: pathlib.Path) -> Optional[Job]:
        try:
            os.mkdir(active)
        except FileExistsError:
            return None
        try:
            os.rename(src, active / src.name)
        except OSError as e:
            logger.debug(f"Could not move {src.name} into {active}: {e}")
            shutil.rmtree(active, ignore_errors=True)
            return None
        logger.info(f"Claimed {active.name} from {src.name}")
        return Job(name=active.name, path=active)

    def complete(self, job_name: str) -> Optional[pathlib.Path]:
        return self._finish(job_name, DONE)

    def fail(self, job_name: str) -> Optional[pathlib.Path]:
        return self._finish(job_name, FAILED)

    def fail_or_discard(self, job_name: str) -> Optional[pathlib.Path]:
        """Moves a job to failed; if even that fails, deletes the orphaned active folder."""
        try:
            return self.fail(job_name)
        except OSError as e:
            logger.error(f"Failed to move {job_name} to failed ({e}); removing active folder")
            shutil.rmtree(self.job_path(ACTIVE, job_name), ignore_errors=True)
            return None

    def requeue(self, job_name: str) -> Optional[pathlib.Path]:
        """Moves a failed job back to intake for another attempt."""
        src = self.job_path(FAILED, job_name)
        dst = self.job_path(INTAKE, job_name)
        if dst.exists() or self.job_path(ACTIVE, job_name).exists():
            logger.warning(f"Not requeueing {job_name}: already queued or active")
            return None
        try:
            self.queue_dir(INTAKE).mkdir(parents=True, exist_ok=True)
            os.rename(src, dst)
        except FileNotFoundError:
            return None
        logger.info(f"Requeued {job_name} from failed")
        return dst

    def _finish(self, job_name: str, queue: str) -> Optional[pathlib.Path]:
        src = self.job_path(ACTIVE, job_name)
        if not src.exists():
            logger.warning(f"{job_name} is no longer active; nothing to move to {queue}")
            return None

        dst_dir = self.queue_dir(queue)
        dst_dir.mkdir(parents=True, exist_ok=True)
        self.lease.force_release(src)

        if not src.exists():
            logger.warning(f"{job_name} vanished before move to {queue}")
            return None

        dst = dst_dir / job_name
        if dst.exists():
            shutil.rmtree(dst)
        shutil.move(str(src), str(dst))
        logger.info(f"Moved {job_name} to {queue}")
        return dst
