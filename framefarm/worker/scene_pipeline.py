"""
scene_pipeline.py

Continuation-style video generation for `scene_sequence` jobs.

Scene i+1 starts from the last frame of scene i, so the chain is strictly
sequential:

    base_0.png (supplied) -> scene_0.mp4 -> base_1.png -> scene_1.mp4 -> ...
    ... -> base_final.png -> scene_final.mp4

Additional frames are independent of the chain and run through the batch
executor afterwards (image phase, then video phase).

The pipeline reports a PipelineOutcome; it does not raise for ordinary
failures such as a missing base image or a failed generation.
"""

from __future__ import annotations

import asyncio
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from framefarm.services.generation.batch import (
    BatchExecutor,
    SuccessPolicy,
    UnitResult,
    WorkUnit,
    failure_summary,
    route,
)
from framefarm.services.ledger.state import JobLedger, UnitId
from framefarm.services.orchestrator.reconciler import artifacts_present
from framefarm.shared.job_payload import SceneSequenceJob, SceneSpec
from framefarm.worker.frames import FrameExtractionError, FrameExtractor

logger = logging.getLogger(__name__)

FINAL = "final"


@dataclass
class PipelineOutcome:
    success: bool
    completed_units: List[UnitId] = field(default_factory=list)
    failed_unit: Optional[UnitId] = None
    error: Optional[str] = None
    results: List[UnitResult] = field(default_factory=list)


def compose_prompt(global_style: str, prompt: str) -> str:
    style = (global_style or "").strip()
    if not style:
        return prompt
    return f"{style}. {prompt}"


def base_image_path(job_path: pathlib.Path, unit_id: UnitId) -> pathlib.Path:
    return job_path / f"base_{unit_id}.png"


def scene_video_path(job_path: pathlib.Path, unit_id: UnitId) -> pathlib.Path:
    return job_path / f"scene_{unit_id}.mp4"


def additional_frame_id(index: int) -> str:
    return f"additional_frame_{index}"


def sequence_artifacts(job_path: pathlib.Path, payload: SceneSequenceJob) -> Dict[UnitId, List[pathlib.Path]]:
    artifacts: Dict[UnitId, List[pathlib.Path]] = {}
    units: List[UnitId] = list(range(len(payload.scenes)))
    if payload.final_scene is not None:
        units.append(FINAL)
    for unit_id in units:
        artifacts[unit_id] = [base_image_path(job_path, unit_id), scene_video_path(job_path, unit_id)]
    for frame in payload.additional_frames:
        frame_id = additional_frame_id(frame.index)
        image = job_path / f"{frame_id}.png"
        artifacts[f"{frame_id}_image"] = [image]
        artifacts[frame_id] = [image, job_path / f"{frame_id}.mp4"]
    return artifacts


class SceneSequencePipeline:
    def __init__(
        self,
        ledger: JobLedger,
        executor: BatchExecutor,
        frames: FrameExtractor,
        main_duration: int = 6,
        final_duration: int = 10,
        aspect_ratio: str = "9:16",
        default_policy: SuccessPolicy = SuccessPolicy.ALL,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.frames = frames
        self.main_duration = main_duration
        self.final_duration = final_duration
        self.aspect_ratio = aspect_ratio
        self.default_policy = default_policy

    def _completed(self, job_path: pathlib.Path) -> List[UnitId]:
        record = self.ledger.get(job_path)
        return list(record.completed_units) if record else []

    def _chain(self, payload: SceneSequenceJob) -> List[Tuple[UnitId, SceneSpec]]:
        chain: List[Tuple[UnitId, SceneSpec]] = list(enumerate(payload.scenes))
        if payload.final_scene is not None:
            chain.append((FINAL, payload.final_scene))
        return chain

    async def run(self, job_path: pathlib.Path, payload: SceneSequenceJob) -> PipelineOutcome:
        completed = self._completed(job_path)
        previous: Optional[UnitId] = None

        for unit_id, spec in self._chain(payload):
            if unit_id in completed:
                previous = unit_id
                continue

            base = base_image_path(job_path, unit_id)
            if previous is None:
                if not artifacts_present([base]):
                    return PipelineOutcome(
                        success=False,
                        completed_units=completed,
                        failed_unit=unit_id,
                        error=f"missing base image {base.name}",
                    )
            else:
                prev_video = scene_video_path(job_path, previous)
                if previous not in completed:
                    # artifacts may exist without a ledger entry after a crash
                    if artifacts_present([base_image_path(job_path, previous), prev_video]):
                        self.ledger.mark_unit_completed(job_path, previous)
                        completed = self._completed(job_path)
                    else:
                        return PipelineOutcome(
                            success=False,
                            completed_units=completed,
                            failed_unit=unit_id,
                            error=f"scene {previous} is not complete",
                        )
                if not artifacts_present([base]):
                    try:
                        await asyncio.to_thread(self.frames.extract_last_frame, prev_video, base)
                    except FrameExtractionError as e:
                        return PipelineOutcome(
                            success=False,
                            completed_units=completed,
                            failed_unit=unit_id,
                            error=str(e),
                        )

            duration = spec.duration or (self.final_duration if unit_id == FINAL else self.main_duration)
            self.ledger.mark_unit_started(job_path, unit_id)
            logger.info(f"{job_path.name}: generating scene {unit_id} ({duration}s)")
            results = await self.executor.run(
                job_path,
                [
                    WorkUnit(
                        unit_id=unit_id,
                        kind="video",
                        prompt=spec.prompt,
                        output_path=scene_video_path(job_path, unit_id),
                        input_path=base,
                        params={"duration": duration, "aspect_ratio": self.aspect_ratio},
                    )
                ],
                concurrency_limit=1,
            )
            result = results[0]
            completed = self._completed(job_path)
            if not result.success:
                return PipelineOutcome(
                    success=False,
                    completed_units=completed,
                    failed_unit=unit_id,
                    error=result.error,
                    results=results,
                )
            previous = unit_id

        if payload.additional_frames:
            policy = SuccessPolicy(payload.success_policy or self.default_policy)
            results = await self._run_additional_frames(job_path, payload)
            completed = self._completed(job_path)
            if not route(results, policy):
                return PipelineOutcome(
                    success=False,
                    completed_units=completed,
                    error=failure_summary(results),
                    results=results,
                )
            return PipelineOutcome(success=True, completed_units=completed, results=results)

        return PipelineOutcome(success=True, completed_units=completed)

    async def _run_additional_frames(self, job_path: pathlib.Path, payload: SceneSequenceJob) -> List[UnitResult]:
        images: List[WorkUnit] = []
        videos: List[WorkUnit] = []
        for frame in payload.additional_frames:
            frame_id = additional_frame_id(frame.index)
            image = job_path / f"{frame_id}.png"
            images.append(
                WorkUnit(
                    unit_id=f"{frame_id}_image",
                    kind="image",
                    prompt=compose_prompt(payload.global_style, frame.image_prompt),
                    output_path=image,
                    params={"aspect_ratio": self.aspect_ratio},
                    meta_key=frame_id,
                )
            )
            videos.append(
                WorkUnit(
                    unit_id=frame_id,
                    kind="video",
                    prompt=frame.video_prompt,
                    output_path=job_path / f"{frame_id}.mp4",
                    input_path=image,
                    params={
                        "duration": frame.duration or self.final_duration,
                        "aspect_ratio": self.aspect_ratio,
                    },
                )
            )
        image_results = await self.executor.run(job_path, images)
        video_results = await self.executor.run(job_path, videos)
        return _merge_phases(image_results, video_results)


def _merge_phases(image_results: Sequence[UnitResult], video_results: Sequence[UnitResult]) -> List[UnitResult]:
    """
    One result per frame: the video result, unless the image phase already
    failed, in which case the image error is the more useful one.
    """
    failed_images = {str(r.unit_id)[: -len("_image")]: r for r in image_results if not r.success}
    merged: List[UnitResult] = []
    for r in video_results:
        image_failure = failed_images.get(str(r.unit_id))
        if image_failure is not None and not r.success:
            r = UnitResult(r.unit_id, success=False, error=f"image phase: {image_failure.error}")
        merged.append(r)
    return merged
