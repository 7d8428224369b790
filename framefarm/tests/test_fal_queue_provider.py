import io
import json
import urllib.error
import urllib.request

import pytest
from PIL import Image

from framefarm.services.generation.providers.base import GenerationError
from framefarm.services.generation.providers.fal_queue import FalQueueProvider, _find_first_url, image_data_url


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeFal:
    """Scripted stand-in for urlopen keyed by (method, url suffix)."""

    def __init__(self, submit_failures=0, statuses=("IN_QUEUE", "IN_PROGRESS", "COMPLETED")):
        self.requests = []
        self.submit_failures = submit_failures
        self.statuses = list(statuses)

    def __call__(self, req, timeout=None):
        url = req.full_url
        self.requests.append(req)
        if req.get_method() == "POST":
            if self.submit_failures:
                self.submit_failures -= 1
                raise urllib.error.HTTPError(url, 503, "Service Unavailable", {}, None)
            return FakeResponse(json.dumps({"request_id": "req-1"}).encode("utf-8"))
        if url.endswith("/status"):
            return FakeResponse(json.dumps({"status": self.statuses.pop(0)}).encode("utf-8"))
        if url.startswith("https://cdn.example"):
            return FakeResponse(b"mp4-bytes")
        return FakeResponse(json.dumps({"video": {"url": "https://cdn.example/out.mp4"}}).encode("utf-8"))


@pytest.fixture
def base_image(tmp_path):
    path = tmp_path / "base_0.png"
    Image.new("RGB", (8, 8), (255, 0, 0)).save(path, format="PNG")
    return path


@pytest.fixture
def fal(monkeypatch):
    fake = FakeFal()
    monkeypatch.setattr(urllib.request, "urlopen", fake)
    return fake


def _provider(**kwargs):
    return FalQueueProvider(model="fal-ai/test-model", api_key="secret", sleep=lambda _s: None, **kwargs)


def test_generate_video_end_to_end(fal, base_image, tmp_path):
    out = tmp_path / "scene_0.mp4"

    result = _provider().generate("cat jumps", {"kind": "video", "duration": 10, "image_path": str(base_image)}, out)

    assert out.read_bytes() == b"mp4-bytes"
    assert result["requestId"] == "req-1"
    assert result["url"] == "https://cdn.example/out.mp4"
    submit = fal.requests[0]
    assert submit.full_url == "https://queue.fal.run/fal-ai/test-model"
    assert submit.get_header("Authorization") == "Key secret"
    body = json.loads(submit.data.decode("utf-8"))
    assert body["duration"] == "10"
    assert body["image_url"].startswith("data:image/png;base64,")
    assert not (tmp_path / "scene_0.mp4.part").exists()


def test_submit_retries_service_unavailable(fal, base_image, tmp_path):
    fal.submit_failures = 2

    _provider().generate("cat jumps", {"image_path": str(base_image)}, tmp_path / "scene_0.mp4")

    posts = [r for r in fal.requests if r.get_method() == "POST"]
    assert len(posts) == 3


def test_failed_status_raises(fal, base_image, tmp_path):
    fal.statuses = ["IN_QUEUE", "FAILED"]
    provider = _provider()

    with pytest.raises(GenerationError, match="failed"):
        provider.generate("cat jumps", {"image_path": str(base_image)}, tmp_path / "scene_0.mp4")
    assert provider._requests == {}


def test_image_request_shape(fal, tmp_path):
    _provider().generate("a cat", {"kind": "image", "aspect_ratio": "16:9"}, tmp_path / "scene_0.png")

    body = json.loads(fal.requests[0].data.decode("utf-8"))
    assert body == {"prompt": "a cat", "aspect_ratio": "16:9", "num_images": 1}


def test_missing_key_and_long_prompt_fail_fast(fal, base_image, tmp_path, monkeypatch):
    monkeypatch.delenv("FAL_KEY", raising=False)
    with pytest.raises(GenerationError, match="FAL_KEY"):
        FalQueueProvider(sleep=lambda _s: None).generate("p", {"image_path": str(base_image)}, tmp_path / "x.mp4")

    with pytest.raises(GenerationError, match="too long"):
        _provider().generate("x" * 1951, {"image_path": str(base_image)}, tmp_path / "x.mp4")
    assert fal.requests == []


def test_image_data_url_rejects_non_images(tmp_path):
    bogus = tmp_path / "base_0.png"
    bogus.write_bytes(b"not a png")

    with pytest.raises(GenerationError, match="invalid input image"):
        image_data_url(bogus)


def test_find_first_url_prefers_known_keys():
    payload = {"meta": {"log": "https://logs.example"}, "images": [{"url": "https://cdn.example/a.png"}]}
    assert _find_first_url(payload) == "https://cdn.example/a.png"
    assert _find_first_url({"nothing": 1}) is None
