from __future__ import annotations

import enum
import logging
import pathlib
import traceback
from typing import Optional

from framefarm.services.generation.batch import SuccessPolicy
from framefarm.services.lease.lock import LeaseLock, LeaseNotHeldError
from framefarm.services.ledger.state import JobLedger, LedgerError, Stage, cooldown_ms
from framefarm.services.orchestrator.reconciler import Reconciler
from framefarm.services.queue.transitions import Job, QueueManager
from framefarm.shared.fsio import append_event
from framefarm.shared.job_payload import PayloadError, SceneBatchJob, SceneSequenceJob, load_job_payload
from framefarm.shared.settings import WorkerSettings
from framefarm.worker.batch_pipeline import SceneBatchPipeline, batch_artifacts
from framefarm.worker.scene_pipeline import PipelineOutcome, SceneSequencePipeline, sequence_artifacts

logger = logging.getLogger(__name__)


class JobOutcome(str, enum.Enum):
    DONE = "done"
    FAILED = "failed"
    PARKED = "parked"
    SKIPPED = "skipped"


class JobRunner:
    """
    Drives one active job from lease acquisition to its resting queue.

    Ordinary failures come back from the pipelines as PipelineOutcome values;
    anything raised here (corrupt ledger, I/O faults) is logged and the job is
    routed to failed as well.
    """

    def __init__(
        self,
        settings: WorkerSettings,
        lease: LeaseLock,
        ledger: JobLedger,
        queue: QueueManager,
        reconciler: Reconciler,
        sequence_pipeline: SceneSequencePipeline,
        batch_pipeline: SceneBatchPipeline,
    ) -> None:
        self.settings = settings
        self.lease = lease
        self.ledger = ledger
        self.queue = queue
        self.reconciler = reconciler
        self.sequence_pipeline = sequence_pipeline
        self.batch_pipeline = batch_pipeline

    def _event(self, job: Job, event: str, from_state: Optional[str], to_state: Optional[str], **details) -> None:
        try:
            append_event(job.path / "events.ndjson", event, from_state, to_state, self.lease.holder_id, details)
        except OSError as e:
            logger.warning(f"Could not append {event} event for {job.name}: {e}")

    async def run(self, job: Job) -> JobOutcome:
        if not self.lease.acquire(job.path):
            logger.info(f"{job.name} is leased by another worker; skipping")
            return JobOutcome.SKIPPED

        try:
            return await self._run_leased(job)
        except LeaseNotHeldError as e:
            # the new holder owns the job's ledger and queue placement now
            logger.warning(f"{job.name}: {e}; leaving it to the current holder")
            return JobOutcome.SKIPPED
        except Exception as e:
            logger.error(f"Unexpected error processing {job.name}: {e}")
            logger.error(traceback.format_exc())
            return self._fail(job, f"{type(e).__name__}: {e}")
        finally:
            self.lease.release(job.path)

    async def _run_leased(self, job: Job) -> JobOutcome:
        resumed = self.ledger.get(job.path) is not None
        record = self.ledger.initialize(job.path, self.lease.holder_id, self.settings.max_retries)
        self._event(
            job,
            "RESUMED" if resumed else "CLAIMED",
            None,
            Stage.INITIALIZING.value,
            failed_attempts=record.failed_attempts,
        )

        if self.ledger.has_exceeded_max_retries(job.path):
            self._require_lease(job)
            cooldown = self._cooldown(record.failed_attempts)
            reason = f"exceeded max retries ({record.failed_attempts}/{record.max_retries})"
            self.ledger.mark_failed(job.path, reason, cooldown)
            self._event(job, "PARKED", Stage.INITIALIZING.value, Stage.FAILED.value, reason=reason, cooldown_ms=cooldown)
            self.queue.fail_or_discard(job.name)
            logger.warning(f"{job.name}: {reason}; parked for {cooldown // 1000}s")
            return JobOutcome.PARKED

        try:
            payload = load_job_payload(job.path)
        except PayloadError as e:
            return self._fail(job, f"invalid payload: {e}")

        if isinstance(payload, SceneSequenceJob):
            artifacts = sequence_artifacts(job.path, payload)
        else:
            artifacts = batch_artifacts(job.path, payload)
        before = list(record.completed_units)
        completed = self.reconciler.reconcile(job.path, before, artifacts)
        if completed != before:
            self._event(job, "RECONCILED", None, None, before=before, after=completed)

        self.ledger.update(job.path, current_stage=Stage.PROCESSING)
        outcome = await self._dispatch(job, payload)

        if not outcome.success:
            return self._fail(job, outcome.error or "pipeline failed")

        self._require_lease(job)
        self.ledger.update(job.path, current_stage=Stage.FINALIZING)
        self.ledger.mark_completed(job.path)
        self._event(job, "COMPLETED", Stage.FINALIZING.value, Stage.COMPLETED.value, units=len(outcome.completed_units))
        self.queue.complete(job.name)
        logger.info(f"{job.name} completed ({len(outcome.completed_units)} units)")
        return JobOutcome.DONE

    async def _dispatch(self, job: Job, payload) -> PipelineOutcome:
        if isinstance(payload, SceneSequenceJob):
            return await self.sequence_pipeline.run(job.path, payload)
        if isinstance(payload, SceneBatchJob):
            return await self.batch_pipeline.run(job.path, payload)
        raise PayloadError(f"no pipeline for {type(payload).__name__}")

    def _cooldown(self, attempts: int) -> int:
        return cooldown_ms(attempts, self.settings.cooldown_base_ms, self.settings.cooldown_cap_ms)

    def _require_lease(self, job: Job) -> None:
        if not self.lease.owns(job.path):
            raise LeaseNotHeldError(f"lease on {job.name} no longer held by {self.lease.holder_id}")

    def _fail(self, job: Job, reason: str) -> JobOutcome:
        if not self.lease.owns(job.path):
            logger.warning(f"{job.name} failed ({reason}) after its lease was lost; not recording")
            return JobOutcome.SKIPPED
        logger.error(f"{job.name} failed: {reason}")
        try:
            record = self.ledger.get(job.path)
            if record is not None:
                cooldown = self._cooldown(record.failed_attempts)
                self.ledger.mark_failed(job.path, reason, cooldown)
        except (LedgerError, OSError) as e:
            logger.error(f"Could not record failure for {job.name}: {e}")
        self._event(job, "FAILED", None, Stage.FAILED.value, reason=reason)
        self.queue.fail_or_discard(job.name)
        return JobOutcome.FAILED


def default_policy(settings: WorkerSettings) -> SuccessPolicy:
    return SuccessPolicy(settings.success_policy)


def job_from_path(path: pathlib.Path) -> Job:
    return Job(name=path.name, path=path)
