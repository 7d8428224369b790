from __future__ import annotations

import itertools
import logging
import os
import pathlib
import shutil
from typing import Any, Dict, Iterable, Optional

from PIL import Image

from .base import COMPLETED, FAILED, BaseGenerationProvider

logger = logging.getLogger(__name__)


class MockProvider(BaseGenerationProvider):
    """
    Offline provider. Images are solid-colour PNGs; videos are copied from
    FRAMEFARM_MOCK_VIDEO when it points to a real file, otherwise a placeholder
    blob is written.

    Prompts containing any of `fail_markers` complete with a failed status.
    """

    _ids = itertools.count(1)

    @property
    def name(self) -> str:
        return "mock"

    @property
    def default_model(self) -> str:
        return "mock-1"

    def __init__(
        self,
        model: Optional[str] = None,
        fail_markers: Iterable[str] = (),
        demo_video: Optional[pathlib.Path] = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("sleep", lambda _s: None)
        super().__init__(**kwargs)
        self.model = model or self.default_model
        self.fail_markers = tuple(fail_markers)
        env_demo = os.environ.get("FRAMEFARM_MOCK_VIDEO", "").strip()
        self.demo_video = demo_video or (pathlib.Path(env_demo) if env_demo else None)
        self._requests: Dict[str, Dict[str, Any]] = {}

    def submit(self, prompt: str, params: Dict[str, Any]) -> str:
        request_id = f"mock-{next(self._ids)}"
        failed = any(marker in prompt for marker in self.fail_markers)
        self._requests[request_id] = {"kind": params.get("kind", "video"), "failed": failed}
        return request_id

    def poll_status(self, request_id: str) -> str:
        return FAILED if self._requests[request_id]["failed"] else COMPLETED

    def fetch_result(self, request_id: str) -> str:
        kind = self._requests[request_id]["kind"]
        return f"mock://{kind}/{request_id}"

    def download(self, url: str, output_path: pathlib.Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if url.startswith("mock://image/"):
            Image.new("RGB", (72, 128), (40, 40, 40)).save(output_path, format="PNG")
            return
        if self.demo_video and self.demo_video.exists():
            logger.info(f"Mocking output by copying {self.demo_video} to {output_path}")
            shutil.copy2(self.demo_video, output_path)
            return
        output_path.write_bytes(b"framefarm-mock-video")
