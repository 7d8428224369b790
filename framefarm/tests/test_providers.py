from types import SimpleNamespace

import pytest
from PIL import Image

from framefarm.services.generation.providers import get_provider, list_providers
from framefarm.services.generation.providers.base import GenerationError
from framefarm.services.generation.providers.mock import MockProvider


def test_registry_lists_and_builds_providers():
    assert list_providers() == ["fal_queue", "mock", "vertex_veo"]
    assert isinstance(get_provider("mock"), MockProvider)


def test_unknown_provider_names_the_alternatives():
    with pytest.raises(ValueError, match="Available: fal_queue, mock, vertex_veo"):
        get_provider("runway")


def test_mock_image_is_a_real_png(tmp_path):
    out = tmp_path / "scene_0.png"

    result = MockProvider().generate("a cat", {"kind": "image"}, out)

    assert result["provider"] == "mock"
    with Image.open(out) as img:
        assert img.format == "PNG"


def test_mock_video_copies_demo_clip(tmp_path, monkeypatch):
    demo = tmp_path / "demo.mp4"
    demo.write_bytes(b"demo-video")
    monkeypatch.setenv("FRAMEFARM_MOCK_VIDEO", str(demo))
    out = tmp_path / "scene_0.mp4"

    MockProvider().generate("cat jumps", {"kind": "video"}, out)

    assert out.read_bytes() == b"demo-video"


def test_mock_fail_markers(tmp_path):
    provider = MockProvider(fail_markers=["explode"])

    with pytest.raises(GenerationError):
        provider.generate("cat should explode", {"kind": "video"}, tmp_path / "scene_0.mp4")
    assert not (tmp_path / "scene_0.mp4").exists()


class FakeOperations:
    def __init__(self, finished_after=2):
        self.polls = 0
        self.finished_after = finished_after

    def get(self, operation):
        self.polls += 1
        operation.done = self.polls >= self.finished_after
        return operation


class FakeModels:
    def __init__(self):
        self.calls = []

    def generate_videos(self, **kwargs):
        self.calls.append(kwargs)
        video = SimpleNamespace(video_bytes=b"veo-video", uri=None)
        result = SimpleNamespace(generated_videos=[SimpleNamespace(video=video)])
        return SimpleNamespace(name="operations/veo-1", done=False, error=None, result=result)


def test_vertex_veo_generates_from_operation(tmp_path):
    image = tmp_path / "base_0.png"
    Image.new("RGB", (8, 8)).save(image, format="PNG")
    client = SimpleNamespace(models=FakeModels(), operations=FakeOperations())
    provider = get_provider("vertex_veo", client=client, sleep=lambda _s: None)
    out = tmp_path / "scene_0.mp4"

    result = provider.generate("cat jumps", {"kind": "video", "duration": 6, "image_path": str(image)}, out)

    assert out.read_bytes() == b"veo-video"
    assert result["requestId"] == "operations/veo-1"
    assert client.models.calls[0]["config"]["duration_seconds"] == 6
    assert client.operations.polls == 2


class FailingOperations(FakeOperations):
    def get(self, operation):
        operation = super().get(operation)
        operation.error = {"code": 3, "message": "prompt rejected"} if operation.done else None
        return operation


def test_vertex_veo_drops_failed_operation(tmp_path):
    image = tmp_path / "base_0.png"
    Image.new("RGB", (8, 8)).save(image, format="PNG")
    client = SimpleNamespace(models=FakeModels(), operations=FailingOperations(finished_after=1))
    provider = get_provider("vertex_veo", client=client, sleep=lambda _s: None)

    with pytest.raises(GenerationError, match="failed"):
        provider.generate("cat jumps", {"kind": "video", "image_path": str(image)}, tmp_path / "scene_0.mp4")
    assert provider._operations == {}
    assert provider._videos == {}


def test_vertex_veo_forgets_finished_operation(tmp_path):
    image = tmp_path / "base_0.png"
    Image.new("RGB", (8, 8)).save(image, format="PNG")
    client = SimpleNamespace(models=FakeModels(), operations=FakeOperations())
    provider = get_provider("vertex_veo", client=client, sleep=lambda _s: None)

    provider.generate("cat jumps", {"kind": "video", "image_path": str(image)}, tmp_path / "scene_0.mp4")

    assert (provider._operations, provider._videos, provider._locators) == ({}, {}, {})
