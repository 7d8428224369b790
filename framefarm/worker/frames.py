from __future__ import annotations

import logging
import pathlib
import subprocess
import time
from typing import Callable

from framefarm.services.generation.retry import retry_call

logger = logging.getLogger(__name__)

LAST_FRAME_OFFSET_S = 0.2


class FrameExtractionError(RuntimeError):
    pass


class FrameExtractor:
    """ffprobe/ffmpeg wrapper used to derive the next scene's base image."""

    def __init__(
        self,
        ffprobe: str = "ffprobe",
        ffmpeg: str = "ffmpeg",
        attempts: int = 3,
        retry_delay_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ffprobe = ffprobe
        self.ffmpeg = ffmpeg
        self.attempts = attempts
        self.retry_delay_s = retry_delay_s
        self.sleep = sleep

    def duration(self, video_path: pathlib.Path) -> float:
        cmd = [
            self.ffprobe,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(video_path),
        ]
        try:
            out = subprocess.check_output(cmd, text=True, stderr=subprocess.PIPE).strip()
            return float(out)
        except (subprocess.CalledProcessError, OSError) as e:
            raise FrameExtractionError(f"ffprobe failed for {video_path.name}: {e}") from e
        except ValueError as e:
            raise FrameExtractionError(f"ffprobe returned no duration for {video_path.name}") from e

    def extract_frame(self, video_path: pathlib.Path, timestamp: float, output_path: pathlib.Path) -> None:
        cmd = [
            self.ffmpeg,
            "-ss",
            f"{max(0.0, timestamp):.3f}",
            "-i",
            str(video_path),
            "-frames:v",
            "1",
            "-q:v",
            "2",
            "-y",
            str(output_path),
        ]
        proc = subprocess.run(cmd, capture_output=True, text=True)
        if proc.returncode != 0:
            raise FrameExtractionError(
                f"ffmpeg failed for {video_path.name} at {timestamp:.3f}s: {proc.stderr.strip()[-400:]}"
            )
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise FrameExtractionError(f"ffmpeg produced no frame at {output_path.name}")

    def extract_last_frame(
        self,
        video_path: pathlib.Path,
        output_path: pathlib.Path,
        offset_s: float = LAST_FRAME_OFFSET_S,
    ) -> None:
        """Writes the frame `offset_s` before the end of video_path, retrying."""
        if not video_path.exists():
            raise FrameExtractionError(f"video not found: {video_path}")

        def _once() -> None:
            ts = self.duration(video_path) - offset_s
            self.extract_frame(video_path, ts, output_path)

        retry_call(
            _once,
            is_retryable=lambda e: isinstance(e, FrameExtractionError),
            max_attempts=self.attempts,
            label=f"frame extraction {video_path.name}",
            sleep=self.sleep,
            delay_fn=lambda attempt: self.retry_delay_s * attempt,
        )
        logger.info(f"Extracted last frame of {video_path.name} to {output_path.name}")
