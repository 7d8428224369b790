from __future__ import annotations

import logging
import os
import pathlib
from typing import Any, Dict, Optional

from google import genai
from google.genai import types

from .base import COMPLETED, FAILED, IN_PROGRESS, BaseGenerationProvider, GenerationError

logger = logging.getLogger(__name__)


class VertexVeoProvider(BaseGenerationProvider):
    """Image-to-video through Vertex AI Veo (google-genai long-running operations)."""

    @property
    def name(self) -> str:
        return "vertex_veo"

    @property
    def default_model(self) -> str:
        return "veo-2.0-generate-001"

    def __init__(self, model: Optional[str] = None, client: Any = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.model = (model or "").strip() or self.default_model
        if client is None:
            project = os.environ.get("GOOGLE_CLOUD_PROJECT") or os.environ.get("GCP_PROJECT_ID")
            location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
            if not project:
                raise GenerationError("GOOGLE_CLOUD_PROJECT is not set")
            client = genai.Client(vertexai=True, project=project, location=location)
        self.client = client
        self._operations: Dict[str, Any] = {}
        self._videos: Dict[str, Any] = {}
        self._locators: Dict[str, str] = {}

    def submit(self, prompt: str, params: Dict[str, Any]) -> str:
        if params.get("kind", "video") != "video":
            raise GenerationError("vertex_veo only generates video")
        image_path = params.get("image_path")
        if not image_path:
            raise GenerationError("video generation requires an input image")
        p = pathlib.Path(image_path)
        mime = "image/png" if p.suffix.lower() == ".png" else "image/jpeg"
        operation = self.client.models.generate_videos(
            model=self.model,
            prompt=prompt,
            image=types.Image(image_bytes=p.read_bytes(), mime_type=mime),
            config={
                "aspect_ratio": params.get("aspect_ratio", "9:16"),
                "duration_seconds": int(params.get("duration", 6)),
            },
        )
        self._operations[operation.name] = operation
        return operation.name

    def poll_status(self, request_id: str) -> str:
        operation = self.client.operations.get(operation=self._operations[request_id])
        self._operations[request_id] = operation
        if not operation.done:
            return IN_PROGRESS
        if operation.error:
            logger.error(f"Veo operation {request_id} failed: {operation.error}")
            return FAILED
        return COMPLETED

    def fetch_result(self, request_id: str) -> str:
        operation = self._operations[request_id]
        result = operation.result
        if not result or not result.generated_videos:
            raise GenerationError(f"no generated_videos in Veo result for {request_id}")
        video = result.generated_videos[0].video
        if video is None or not (video.video_bytes or video.uri):
            raise GenerationError(f"no video content in Veo result for {request_id}")
        locator = video.uri or f"veo://{request_id}"
        self._videos[locator] = video
        self._locators[request_id] = locator
        return locator

    def download(self, url: str, output_path: pathlib.Path) -> None:
        video = self._videos.get(url)
        if video is None or not video.video_bytes:
            raise GenerationError(f"Veo returned {url} without inline bytes; download not supported")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(video.video_bytes)

    def forget(self, request_id: str) -> None:
        self._operations.pop(request_id, None)
        locator = self._locators.pop(request_id, None)
        if locator is not None:
            self._videos.pop(locator, None)
