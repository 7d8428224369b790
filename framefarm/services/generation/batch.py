"""
batch.py

Bounded-concurrency executor for independent generation units.

Units run in sequential batches of at most `batch_size`; the members of one
batch are dispatched concurrently and the whole batch is awaited before the
next starts. A unit failure is collected into its UnitResult and never aborts
its siblings. Each outcome is persisted to the job's meta.json (and, on
success, the ledger) as soon as that unit finishes.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from framefarm.services.generation.providers.base import BaseGenerationProvider
from framefarm.services.ledger.state import JobLedger, UnitId
from framefarm.services.orchestrator.reconciler import artifacts_present
from framefarm.shared.fsio import append_event

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 12


class SuccessPolicy(str, enum.Enum):
    ALL = "all"  # zero failures
    ANY = "any"  # at least one unit succeeded


@dataclass
class WorkUnit:
    unit_id: UnitId
    kind: str
    prompt: str
    output_path: pathlib.Path
    input_path: Optional[pathlib.Path] = None
    params: Dict[str, Any] = field(default_factory=dict)
    meta_key: Optional[UnitId] = None

    @property
    def meta_unit(self) -> UnitId:
        return self.unit_id if self.meta_key is None else self.meta_key


@dataclass
class UnitResult:
    unit_id: UnitId
    success: bool
    error: Optional[str] = None
    skipped: bool = False
    result: Optional[Dict[str, Any]] = None


def route(results: Sequence[UnitResult], policy: SuccessPolicy = SuccessPolicy.ALL) -> bool:
    """True when the job should go to done, False for failed."""
    if not results:
        return True
    if SuccessPolicy(policy) == SuccessPolicy.ANY:
        return any(r.success for r in results)
    return all(r.success for r in results)


def failure_summary(results: Sequence[UnitResult]) -> str:
    failed = [r for r in results if not r.success]
    return "; ".join(f"unit {r.unit_id}: {r.error}" for r in failed)


class BatchExecutor:
    def __init__(
        self,
        ledger: JobLedger,
        providers: Mapping[str, BaseGenerationProvider],
        batch_size: int = DEFAULT_BATCH_SIZE,
        worker_id: Optional[str] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.ledger = ledger
        self.providers = providers
        self.batch_size = batch_size
        self.worker_id = worker_id

    async def run(
        self,
        job_path: pathlib.Path,
        units: Sequence[WorkUnit],
        concurrency_limit: Optional[int] = None,
    ) -> List[UnitResult]:
        limit = concurrency_limit or self.batch_size
        results: List[UnitResult] = []
        for start in range(0, len(units), limit):
            batch = units[start:start + limit]
            logger.info(
                f"{job_path.name}: batch {start // limit + 1} with {len(batch)} unit(s)"
            )
            results.extend(await asyncio.gather(*(self._run_unit(job_path, u) for u in batch)))
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"{job_path.name}: {succeeded}/{len(results)} unit(s) succeeded")
        return results

    async def _run_unit(self, job_path: pathlib.Path, unit: WorkUnit) -> UnitResult:
        if artifacts_present([unit.output_path]):
            await asyncio.to_thread(self.ledger.mark_unit_completed, job_path, unit.unit_id)
            return UnitResult(unit.unit_id, success=True, skipped=True)

        if unit.input_path is not None and not artifacts_present([unit.input_path]):
            error = f"missing input {unit.input_path.name}"
            await asyncio.to_thread(self._record_failure, job_path, unit, error)
            return UnitResult(unit.unit_id, success=False, error=error)

        provider = self.providers.get(unit.kind)
        if provider is None:
            error = f"no provider configured for {unit.kind}"
            await asyncio.to_thread(self._record_failure, job_path, unit, error)
            return UnitResult(unit.unit_id, success=False, error=error)

        params = dict(unit.params)
        params["kind"] = unit.kind
        if unit.input_path is not None:
            params["image_path"] = str(unit.input_path)

        try:
            result = await asyncio.to_thread(provider.generate, unit.prompt, params, unit.output_path)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"{job_path.name}: unit {unit.unit_id} ({unit.kind}) failed: {error}")
            await asyncio.to_thread(self._record_failure, job_path, unit, error)
            return UnitResult(unit.unit_id, success=False, error=error)

        await asyncio.to_thread(self._record_success, job_path, unit, result)
        return UnitResult(unit.unit_id, success=True, result=result)

    # ledger and event writes block on disk, so they run off the event loop

    def _record_success(self, job_path: pathlib.Path, unit: WorkUnit, result: Dict[str, Any]) -> None:
        self.ledger.record_unit_result(job_path, unit.meta_unit, unit.kind, {"status": "success", **result})
        self.ledger.mark_unit_completed(job_path, unit.unit_id)
        append_event(
            job_path / "events.ndjson",
            "UNIT_COMPLETED",
            None,
            None,
            self.worker_id,
            {"unit": unit.unit_id, "kind": unit.kind},
        )

    def _record_failure(self, job_path: pathlib.Path, unit: WorkUnit, error: str) -> None:
        self.ledger.record_unit_result(job_path, unit.meta_unit, unit.kind, {"status": "failed", "error": error})
        append_event(
            job_path / "events.ndjson",
            "UNIT_FAILED",
            None,
            None,
            self.worker_id,
            {"unit": unit.unit_id, "kind": unit.kind, "error": error},
        )
