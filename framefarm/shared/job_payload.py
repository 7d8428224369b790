"""
job_payload.py

Parses job payloads into a closed set of typed variants.

Every payload carries an explicit `kind` discriminant and is validated against
job_payload.v1.schema.json before it is turned into a dataclass. Anything that
does not match one of the known shapes raises PayloadError.
"""

from __future__ import annotations

import functools
import json
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import jsonschema

SCHEMA_PATH = pathlib.Path(__file__).with_name("job_payload.v1.schema.json")

SCENE_SEQUENCE = "scene_sequence"
SCENE_BATCH = "scene_batch"
KINDS = (SCENE_SEQUENCE, SCENE_BATCH)

RESERVED_FILES = frozenset({"state.json", "meta.json"})


class PayloadError(ValueError):
    """The job payload is missing, unreadable, or not a known shape."""


@dataclass(frozen=True)
class SceneSpec:
    prompt: str
    duration: Optional[int] = None


@dataclass(frozen=True)
class AdditionalFrame:
    index: int
    image_prompt: str
    video_prompt: str
    duration: Optional[int] = None


@dataclass(frozen=True)
class SceneSequenceJob:
    scenes: List[SceneSpec]
    final_scene: Optional[SceneSpec] = None
    additional_frames: List[AdditionalFrame] = field(default_factory=list)
    global_style: str = ""
    title: str = ""
    success_policy: Optional[str] = None
    kind: str = SCENE_SEQUENCE


@dataclass(frozen=True)
class BatchScene:
    scene: int
    image_prompt: str
    video_prompt: str
    duration: Optional[int] = None


@dataclass(frozen=True)
class SceneBatchJob:
    scenes: List[BatchScene]
    global_style: str = ""
    title: str = ""
    success_policy: Optional[str] = None
    kind: str = SCENE_BATCH


JobPayload = Union[SceneSequenceJob, SceneBatchJob]


@functools.lru_cache(maxsize=1)
def load_schema() -> Dict[str, Any]:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


def _validate(data: Dict[str, Any], kind: str) -> None:
    schema = dict(load_schema())
    schema.pop("oneOf", None)
    # validate against the variant directly for readable errors
    schema["$ref"] = f"#/$defs/{kind}"
    validator_cls = jsonschema.validators.validator_for(schema)
    errors = sorted(validator_cls(schema).iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        e = errors[0]
        path = " -> ".join(str(p) for p in e.absolute_path) if e.absolute_path else "root"
        raise PayloadError(f"Schema validation failed at '{path}': {e.message}")


def _duplicates(values: List[int]) -> List[int]:
    seen: set = set()
    dupes: List[int] = []
    for v in values:
        if v in seen and v not in dupes:
            dupes.append(v)
        seen.add(v)
    return dupes


def parse_payload(data: Any) -> JobPayload:
    if not isinstance(data, dict):
        raise PayloadError(f"payload must be a JSON object, got {type(data).__name__}")
    kind = data.get("kind")
    if kind is None:
        raise PayloadError("payload has no 'kind' discriminant")
    if kind not in KINDS:
        raise PayloadError(f"unknown payload kind {kind!r}; expected one of {', '.join(KINDS)}")
    _validate(data, kind)

    if kind == SCENE_SEQUENCE:
        frames = [AdditionalFrame(**f) for f in data.get("additional_frames", [])]
        dupes = _duplicates([f.index for f in frames])
        if dupes:
            raise PayloadError(f"duplicate additional frame index: {dupes}")
        final = data.get("final_scene")
        return SceneSequenceJob(
            scenes=[SceneSpec(**s) for s in data["scenes"]],
            final_scene=SceneSpec(**final) if final else None,
            additional_frames=frames,
            global_style=data.get("global_style", ""),
            title=data.get("title", ""),
            success_policy=data.get("success_policy"),
        )

    scenes = [BatchScene(**s) for s in data["scenes"]]
    dupes = _duplicates([s.scene for s in scenes])
    if dupes:
        raise PayloadError(f"duplicate scene number: {dupes}")
    return SceneBatchJob(
        scenes=scenes,
        global_style=data.get("global_style", ""),
        title=data.get("title", ""),
        success_policy=data.get("success_policy"),
    )


def find_payload_file(job_path: pathlib.Path) -> pathlib.Path:
    preferred = job_path / f"{job_path.name}.json"
    if preferred.is_file():
        return preferred
    candidates = sorted(
        p for p in job_path.glob("*.json")
        if p.is_file() and p.name not in RESERVED_FILES and not p.name.startswith(".")
    )
    if not candidates:
        raise PayloadError(f"no payload JSON in {job_path.name}")
    if len(candidates) > 1:
        names = ", ".join(p.name for p in candidates)
        raise PayloadError(f"ambiguous payload in {job_path.name}: {names}")
    return candidates[0]


def load_job_payload(job_path: pathlib.Path) -> JobPayload:
    path = find_payload_file(job_path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except ValueError as e:
        raise PayloadError(f"{path.name} is not valid JSON: {e}") from e
    return parse_payload(data)
