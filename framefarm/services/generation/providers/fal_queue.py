from __future__ import annotations

import base64
import json
import logging
import os
import pathlib
import urllib.request
from typing import Any, Dict, Optional

from PIL import Image

from .base import (
    COMPLETED,
    FAILED,
    IN_PROGRESS,
    PENDING,
    BaseGenerationProvider,
    GenerationError,
    redact_debug,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "IN_QUEUE": PENDING,
    "IN_PROGRESS": IN_PROGRESS,
    "COMPLETED": COMPLETED,
    "FAILED": FAILED,
    "ERROR": FAILED,
}


def _find_first_url(payload: Any) -> Optional[str]:
    if isinstance(payload, str):
        lower = payload.lower()
        if lower.startswith("http://") or lower.startswith("https://"):
            return payload
        return None
    if isinstance(payload, list):
        for item in payload:
            hit = _find_first_url(item)
            if hit:
                return hit
        return None
    if isinstance(payload, dict):
        for key in ("video", "images", "image", "url", "file_url"):
            hit = _find_first_url(payload.get(key))
            if hit:
                return hit
        for v in payload.values():
            hit = _find_first_url(v)
            if hit:
                return hit
    return None


def _http_json(
    *,
    url: str,
    method: str,
    headers: Dict[str, str],
    payload: Optional[Dict[str, Any]] = None,
    timeout_s: int = 60,
) -> Dict[str, Any]:
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(url=url, data=data, method=method)
    for k, v in headers.items():
        req.add_header(k, v)
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read().decode("utf-8")
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise GenerationError("non-object JSON response")
    return parsed


def _download_file(*, url: str, dst_path: pathlib.Path, timeout_s: int = 300) -> None:
    req = urllib.request.Request(url=url, method="GET")
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        data = resp.read()
    if not data:
        raise GenerationError(f"empty download from {url}", transient=True)
    dst_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dst_path.with_suffix(dst_path.suffix + ".part")
    tmp_path.write_bytes(data)
    tmp_path.replace(dst_path)


def image_data_url(path: pathlib.Path) -> str:
    """Encodes an image file as a base64 data URL, validating it with Pillow."""
    try:
        with Image.open(path) as img:
            img.verify()
            fmt = (img.format or "PNG").lower()
    except (OSError, SyntaxError) as e:
        raise GenerationError(f"invalid input image {path.name}: {e}") from e
    mime = "image/jpeg" if fmt in ("jpeg", "jpg") else f"image/{fmt}"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


class FalQueueProvider(BaseGenerationProvider):
    @property
    def name(self) -> str:
        return "fal_queue"

    @property
    def default_model(self) -> str:
        return "fal-ai/minimax/hailuo-02/standard/image-to-video"

    def __init__(self, model: Optional[str] = None, api_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.model = (model or "").strip() or self.default_model
        self.base_url = os.environ.get("FAL_QUEUE_BASE_URL", "https://queue.fal.run").strip().rstrip("/")
        self.api_key = (api_key if api_key is not None else os.environ.get("FAL_KEY", "")).strip()
        self.timeout_s = max(10, min(300, int(os.environ.get("FAL_HTTP_TIMEOUT", "60"))))
        # request id -> {"status_url", "response_url"}
        self._requests: Dict[str, Dict[str, str]] = {}
        logger.debug(f"fal_queue model={self.model} key={redact_debug(self.api_key)}")

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise GenerationError("FAL_KEY is not set")
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def build_input(self, prompt: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if params.get("kind", "video") == "image":
            return {
                "prompt": prompt,
                "aspect_ratio": params.get("aspect_ratio", "9:16"),
                "num_images": 1,
            }
        image_path = params.get("image_path")
        if not image_path:
            raise GenerationError("video generation requires an input image")
        return {
            "prompt": prompt,
            "image_url": image_data_url(pathlib.Path(image_path)),
            "duration": str(params.get("duration", 6)),
            "prompt_optimizer": True,
        }

    def submit(self, prompt: str, params: Dict[str, Any]) -> str:
        resp = _http_json(
            url=f"{self.base_url}/{self.model}",
            method="POST",
            headers=self._headers(),
            payload=self.build_input(prompt, params),
            timeout_s=self.timeout_s,
        )
        request_id = resp.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            raise GenerationError(f"fal submit returned no request_id: {sorted(resp.keys())}")
        base = f"{self.base_url}/{self.model}/requests/{request_id}"
        self._requests[request_id] = {
            "status_url": resp.get("status_url") or f"{base}/status",
            "response_url": resp.get("response_url") or base,
        }
        return request_id

    def _urls(self, request_id: str) -> Dict[str, str]:
        urls = self._requests.get(request_id)
        if urls is None:
            base = f"{self.base_url}/{self.model}/requests/{request_id}"
            urls = {"status_url": f"{base}/status", "response_url": base}
        return urls

    def poll_status(self, request_id: str) -> str:
        resp = _http_json(
            url=self._urls(request_id)["status_url"],
            method="GET",
            headers=self._headers(),
            timeout_s=self.timeout_s,
        )
        raw = str(resp.get("status", "")).upper()
        status = _STATUS_MAP.get(raw)
        if status is None:
            raise GenerationError(f"unexpected fal status {raw!r} for {request_id}")
        return status

    def fetch_result(self, request_id: str) -> str:
        resp = _http_json(
            url=self._urls(request_id)["response_url"],
            method="GET",
            headers=self._headers(),
            timeout_s=self.timeout_s,
        )
        url = _find_first_url(resp)
        if not url:
            raise GenerationError(f"no artifact URL in fal result for {request_id}")
        return url

    def forget(self, request_id: str) -> None:
        self._requests.pop(request_id, None)

    def download(self, url: str, output_path: pathlib.Path) -> None:
        _download_file(url=url, dst_path=output_path, timeout_s=max(self.timeout_s, 300))
