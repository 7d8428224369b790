"""
reconciler.py

Heals drift between a job's ledger and the artifacts actually on disk.

Artifact writes and ledger updates are separate filesystem operations, so a
crash between them leaves the ledger either overclaiming (unit listed, files
missing) or underclaiming (files present, unit not listed). Reconciliation runs
once, with the lease held, before a resumed job processes any new unit.
"""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass, field
from typing import List, Mapping, Sequence

from framefarm.services.lease.lock import LeaseLock, LeaseNotHeldError
from framefarm.services.ledger.state import JobLedger, UnitId

logger = logging.getLogger(__name__)

ArtifactMap = Mapping[UnitId, Sequence[pathlib.Path]]


@dataclass
class Drift:
    completed: List[UnitId] = field(default_factory=list)
    removed: List[UnitId] = field(default_factory=list)
    added: List[UnitId] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.added)


def artifacts_present(paths: Sequence[pathlib.Path]) -> bool:
    return bool(paths) and all(p.exists() and p.stat().st_size > 0 for p in paths)


def inspect(declared: Sequence[UnitId], artifacts: ArtifactMap) -> Drift:
    """
    Computes the corrected completed set without writing anything.
    Declared units that have no entry in the artifact map cannot be verified
    and are kept as-is.
    """
    drift = Drift()
    for unit in declared:
        if unit in drift.completed:
            continue
        expected = artifacts.get(unit)
        if expected is not None and not artifacts_present(expected):
            drift.removed.append(unit)
            continue
        drift.completed.append(unit)

    for unit, expected in artifacts.items():
        if unit in drift.completed or unit in drift.removed:
            continue
        if artifacts_present(expected):
            drift.added.append(unit)
            drift.completed.append(unit)
    return drift


class Reconciler:
    def __init__(self, lease: LeaseLock, ledger: JobLedger) -> None:
        self.lease = lease
        self.ledger = ledger

    def reconcile(
        self,
        job_path: pathlib.Path,
        declared: Sequence[UnitId],
        artifacts: ArtifactMap,
    ) -> List[UnitId]:
        if not self.lease.owns(job_path):
            raise LeaseNotHeldError(f"Reconciling {pathlib.Path(job_path).name} requires the lease")

        drift = inspect(declared, artifacts)
        if not drift.changed:
            return drift.completed

        for unit in drift.removed:
            logger.warning(f"{pathlib.Path(job_path).name}: unit {unit} marked complete but artifacts missing")
        for unit in drift.added:
            logger.info(f"{pathlib.Path(job_path).name}: unit {unit} has artifacts but was not recorded")
        self.ledger.set_completed_units(job_path, drift.completed)
        return drift.completed
