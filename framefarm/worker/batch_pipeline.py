"""
batch_pipeline.py

Two-phase generation for `scene_batch` jobs: every scene's image first
(scene_{n}.png), then every scene's video from that image (scene_{n}.mp4).
Scenes are independent of each other, so both phases go through the batch
executor at full concurrency.
"""

from __future__ import annotations

import logging
import pathlib
from typing import Dict, List

from framefarm.services.generation.batch import (
    BatchExecutor,
    SuccessPolicy,
    WorkUnit,
    failure_summary,
    route,
)
from framefarm.services.ledger.state import JobLedger, UnitId
from framefarm.shared.job_payload import SceneBatchJob
from framefarm.worker.scene_pipeline import PipelineOutcome, compose_prompt

logger = logging.getLogger(__name__)


def image_unit_id(scene: int) -> str:
    return f"image_{scene}"


def batch_artifacts(job_path: pathlib.Path, payload: SceneBatchJob) -> Dict[UnitId, List[pathlib.Path]]:
    artifacts: Dict[UnitId, List[pathlib.Path]] = {}
    for s in payload.scenes:
        image = job_path / f"scene_{s.scene}.png"
        artifacts[image_unit_id(s.scene)] = [image]
        artifacts[s.scene] = [image, job_path / f"scene_{s.scene}.mp4"]
    return artifacts


class SceneBatchPipeline:
    def __init__(
        self,
        ledger: JobLedger,
        executor: BatchExecutor,
        default_duration: int = 6,
        aspect_ratio: str = "9:16",
        default_policy: SuccessPolicy = SuccessPolicy.ALL,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.default_duration = default_duration
        self.aspect_ratio = aspect_ratio
        self.default_policy = default_policy

    def build_units(self, job_path: pathlib.Path, payload: SceneBatchJob):
        images: List[WorkUnit] = []
        videos: List[WorkUnit] = []
        for s in payload.scenes:
            image = job_path / f"scene_{s.scene}.png"
            images.append(
                WorkUnit(
                    unit_id=image_unit_id(s.scene),
                    kind="image",
                    prompt=compose_prompt(payload.global_style, s.image_prompt),
                    output_path=image,
                    params={"aspect_ratio": self.aspect_ratio},
                    meta_key=s.scene,
                )
            )
            videos.append(
                WorkUnit(
                    unit_id=s.scene,
                    kind="video",
                    prompt=s.video_prompt,
                    output_path=job_path / f"scene_{s.scene}.mp4",
                    input_path=image,
                    params={
                        "duration": s.duration or self.default_duration,
                        "aspect_ratio": self.aspect_ratio,
                    },
                )
            )
        return images, videos

    async def run(self, job_path: pathlib.Path, payload: SceneBatchJob) -> PipelineOutcome:
        policy = SuccessPolicy(payload.success_policy or self.default_policy)
        images, videos = self.build_units(job_path, payload)

        image_results = await self.executor.run(job_path, images)
        video_results = await self.executor.run(job_path, videos)
        results = image_results + video_results

        if policy == SuccessPolicy.ANY:
            ok = route(video_results, SuccessPolicy.ANY)
        else:
            ok = route(results, SuccessPolicy.ALL)

        record = self.ledger.get(job_path)
        completed = list(record.completed_units) if record else []
        if not ok:
            return PipelineOutcome(
                success=False,
                completed_units=completed,
                error=failure_summary(results),
                results=results,
            )
        return PipelineOutcome(success=True, completed_units=completed, results=results)
