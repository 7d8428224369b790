import argparse
import asyncio
import logging
import os
import pathlib
import random
import signal
import socket
import sys
import traceback
import uuid
from typing import Dict, List, Optional

from framefarm.services.generation.batch import BatchExecutor
from framefarm.services.generation.providers import get_provider
from framefarm.services.generation.providers.base import BaseGenerationProvider
from framefarm.services.lease.lock import LeaseLock
from framefarm.services.ledger.state import JobLedger, LedgerError
from framefarm.services.orchestrator.job_runner import JobOutcome, JobRunner, default_policy, job_from_path
from framefarm.services.orchestrator.reconciler import Reconciler
from framefarm.services.queue.transitions import ACTIVE, FAILED, QueueManager, job_name_for
from framefarm.shared.settings import WorkerSettings, load_env
from framefarm.worker.batch_pipeline import SceneBatchPipeline
from framefarm.worker.frames import FrameExtractor
from framefarm.worker.scene_pipeline import SceneSequencePipeline

logger = logging.getLogger("run_worker")

STARTUP_STAGGER_SEC = 2


def build_providers(settings: WorkerSettings) -> Dict[str, BaseGenerationProvider]:
    return {
        "video": get_provider(settings.video_provider, model=settings.video_model),
        "image": get_provider(settings.image_provider, model=settings.image_model),
    }


class Worker:
    def __init__(
        self,
        settings: WorkerSettings,
        providers: Dict[str, BaseGenerationProvider],
        index: int = 0,
        frames: Optional[FrameExtractor] = None,
    ) -> None:
        self.settings = settings
        holder = f"{socket.gethostname()}-{os.getpid()}-w{index}-{uuid.uuid4().hex[:6]}"
        self.lease = LeaseLock(
            holder_id=holder,
            stale_threshold_ms=settings.stale_threshold_ms,
            heartbeat_interval_s=settings.heartbeat_interval_s,
        )
        self.ledger = JobLedger()
        self.queue = QueueManager(settings.generations_dir, self.lease)
        executor = BatchExecutor(self.ledger, providers, batch_size=settings.batch_size, worker_id=holder)
        policy = default_policy(settings)
        self.runner = JobRunner(
            settings,
            self.lease,
            self.ledger,
            self.queue,
            Reconciler(self.lease, self.ledger),
            SceneSequencePipeline(
                self.ledger,
                executor,
                frames or FrameExtractor(),
                main_duration=settings.main_duration,
                final_duration=settings.final_duration,
                aspect_ratio=settings.aspect_ratio,
                default_policy=policy,
            ),
            SceneBatchPipeline(
                self.ledger,
                executor,
                default_duration=settings.main_duration,
                aspect_ratio=settings.aspect_ratio,
                default_policy=policy,
            ),
        )

    @property
    def worker_id(self) -> str:
        return self.lease.holder_id

    def requeue_cooled_down(self) -> List[str]:
        """Sends failed jobs whose cooldown has elapsed back to intake."""
        requeued: List[str] = []
        for path in self.queue.list_jobs(FAILED):
            try:
                record = self.ledger.get(path)
            except LedgerError as e:
                logger.warning(f"Skipping {path.name}: {e}")
                continue
            if record is None or record.cooldown_until is None:
                continue
            if self.ledger.is_in_cooldown(path):
                continue
            if self.queue.requeue(path.name) is not None:
                requeued.append(path.name)
        return requeued

    def find_abandoned(self) -> List[pathlib.Path]:
        active = self.queue.queue_dir(ACTIVE)
        stale = self.lease.find_stale(active)
        unleased = self.lease.find_unleased(active, min_age_ms=self.settings.stale_threshold_ms)
        return stale + [p for p in unleased if p not in stale]

    async def run_once(self) -> bool:
        """Processes at most one job. Returns True if a job was run."""
        self.queue.ensure_dirs()
        for name in self.requeue_cooled_down():
            logger.info(f"[{self.worker_id}] requeued {name} after cooldown")

        for path in self.find_abandoned():
            logger.info(f"[{self.worker_id}] resuming abandoned job {path.name}")
            outcome = await self.runner.run(job_from_path(path))
            if outcome != JobOutcome.SKIPPED:
                return True

        for item in self.queue.list_intake():
            job = self.queue.claim(job_name_for(item))
            if job is None:
                continue
            outcome = await self.runner.run(job)
            if outcome != JobOutcome.SKIPPED:
                return True
        return False

    async def run_forever(self, stop: asyncio.Event) -> None:
        logger.info(f"Worker {self.worker_id} watching {self.settings.generations_dir}")
        try:
            while not stop.is_set():
                try:
                    worked = await self.run_once()
                except Exception as e:
                    logger.error(f"[{self.worker_id}] loop error: {e}")
                    logger.error(traceback.format_exc())
                    await _sleep(stop, self.settings.error_sleep_s)
                    continue
                if not worked:
                    idle = self.settings.poll_idle_s + random.uniform(0, self.settings.poll_jitter_s)
                    await _sleep(stop, idle)
        finally:
            self.lease.shutdown()
            logger.info(f"Worker {self.worker_id} stopped")

    async def drain(self) -> int:
        """Runs jobs until there is nothing left to do. Returns the job count."""
        count = 0
        try:
            while await self.run_once():
                count += 1
        finally:
            self.lease.shutdown()
        return count


async def _sleep(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def run_workers(settings: WorkerSettings, workers: int, once: bool) -> int:
    providers = build_providers(settings)
    pool = [Worker(settings, providers, index=i) for i in range(workers)]

    if once:
        total = 0
        for w in pool:
            total += await w.drain()
        logger.info(f"Processed {total} job(s)")
        return 0

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    tasks = []
    for i, w in enumerate(pool):
        if i and not stop.is_set():
            await _sleep(stop, STARTUP_STAGGER_SEC)
        tasks.append(asyncio.create_task(w.run_forever(stop)))
    logger.info(f"Started {len(tasks)} worker(s)")
    await asyncio.gather(*tasks)
    logger.info("All workers stopped")
    return 0


def main(argv: List[str]) -> int:
    parser = argparse.ArgumentParser(description="Run framefarm generation workers")
    parser.add_argument("--base-dir", type=pathlib.Path, help="Generations directory (overrides env)")
    parser.add_argument("--workers", type=int, help="Number of worker loops")
    parser.add_argument("--once", action="store_true", help="Drain available jobs, then exit")
    parser.add_argument("--env-file", type=pathlib.Path, default=pathlib.Path(".env"))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s"
    )

    load_env(args.env_file)
    try:
        settings = WorkerSettings.from_env(args.base_dir)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    workers = args.workers or settings.worker_count
    if workers < 1:
        parser.error("--workers must be >= 1")

    try:
        return asyncio.run(run_workers(settings, workers, args.once))
    except KeyboardInterrupt:
        logger.info("Worker stopped by user.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
