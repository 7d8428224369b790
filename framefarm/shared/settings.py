from __future__ import annotations

import logging
import os
import pathlib
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

ALLOWED_DURATIONS = (6, 10)
SUCCESS_POLICIES = ("all", "any")


def load_env(env_path: pathlib.Path = pathlib.Path(".env")) -> None:
    """Load environment variables from a .env file."""
    if not env_path.exists():
        return

    logger.info(f"Loading environment from {env_path}")
    with open(env_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if not os.environ.get(key):
                    os.environ[key] = value


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    raw = os.environ.get(name, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}; using {default}")
        value = default
    return max(lo, min(hi, value))


def _env_bool(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


def _env_duration(name: str, default: int) -> int:
    value = _env_int(name, default, 1, 60)
    if value not in ALLOWED_DURATIONS:
        logger.warning(f"{name}={value} is not one of {ALLOWED_DURATIONS}; using {default}")
        return default
    return value


def resolve_generations_dir(cwd: Optional[pathlib.Path] = None) -> pathlib.Path:
    """
    GENERATIONS_DIR_PATH wins when set; otherwise GENERATIONS_DIR_RELATIVE_PATH
    (default "generations") is resolved against the working directory.
    """
    absolute = os.environ.get("GENERATIONS_DIR_PATH", "").strip()
    if absolute:
        return pathlib.Path(absolute)
    relative = os.environ.get("GENERATIONS_DIR_RELATIVE_PATH", "").strip() or "generations"
    return (cwd or pathlib.Path.cwd()) / relative


@dataclass(frozen=True)
class WorkerSettings:
    generations_dir: pathlib.Path
    worker_count: int = 5
    batch_size: int = 12
    max_retries: int = 5
    stale_threshold_s: int = 300
    heartbeat_interval_s: int = 30
    cooldown_base_s: int = 60
    cooldown_cap_s: int = 3600
    poll_idle_s: int = 25
    poll_jitter_s: int = 5
    error_sleep_s: int = 10
    video_provider: str = "fal_queue"
    image_provider: str = "fal_queue"
    video_model: str = "fal-ai/minimax/hailuo-02/standard/image-to-video"
    image_model: str = "fal-ai/minimax/image-01"
    aspect_ratio: str = "9:16"
    main_duration: int = 6
    final_duration: int = 10
    success_policy: str = "all"
    mock: bool = False

    @property
    def stale_threshold_ms(self) -> int:
        return self.stale_threshold_s * 1000

    @property
    def cooldown_base_ms(self) -> int:
        return self.cooldown_base_s * 1000

    @property
    def cooldown_cap_ms(self) -> int:
        return self.cooldown_cap_s * 1000

    @classmethod
    def from_env(cls, generations_dir: Optional[pathlib.Path] = None) -> "WorkerSettings":
        stale = _env_int("FRAMEFARM_LEASE_STALE_SECONDS", 300, 10, 3600)
        # heartbeat must stay well inside the staleness window
        heartbeat = _env_int("FRAMEFARM_HEARTBEAT_SECONDS", 30, 1, max(1, stale // 2))

        policy = os.environ.get("FRAMEFARM_SUCCESS_POLICY", "all").strip().lower() or "all"
        if policy not in SUCCESS_POLICIES:
            raise ValueError(f"FRAMEFARM_SUCCESS_POLICY must be one of {SUCCESS_POLICIES}, got {policy!r}")

        mock = _env_bool("FRAMEFARM_MOCK")
        video_provider = os.environ.get("FRAMEFARM_VIDEO_PROVIDER", "fal_queue").strip() or "fal_queue"
        image_provider = os.environ.get("FRAMEFARM_IMAGE_PROVIDER", "fal_queue").strip() or "fal_queue"
        if mock:
            video_provider = image_provider = "mock"

        return cls(
            generations_dir=generations_dir or resolve_generations_dir(),
            worker_count=_env_int("FRAMEFARM_WORKER_COUNT", 5, 1, 32),
            batch_size=_env_int("FRAMEFARM_BATCH_SIZE", 12, 1, 64),
            max_retries=_env_int("FRAMEFARM_MAX_RETRIES", 5, 1, 100),
            stale_threshold_s=stale,
            heartbeat_interval_s=heartbeat,
            cooldown_base_s=_env_int("FRAMEFARM_COOLDOWN_BASE_SECONDS", 60, 1, 3600),
            cooldown_cap_s=_env_int("FRAMEFARM_COOLDOWN_CAP_SECONDS", 3600, 1, 86400),
            poll_idle_s=_env_int("FRAMEFARM_POLL_IDLE_SECONDS", 25, 0, 600),
            poll_jitter_s=_env_int("FRAMEFARM_POLL_JITTER_SECONDS", 5, 0, 60),
            error_sleep_s=_env_int("FRAMEFARM_ERROR_SLEEP_SECONDS", 10, 0, 600),
            video_provider=video_provider,
            image_provider=image_provider,
            video_model=os.environ.get("FRAMEFARM_VIDEO_MODEL", "").strip() or cls.video_model,
            image_model=os.environ.get("FRAMEFARM_IMAGE_MODEL", "").strip() or cls.image_model,
            aspect_ratio=os.environ.get("FRAMEFARM_ASPECT_RATIO", "").strip() or "9:16",
            main_duration=_env_duration("FRAMEFARM_MAIN_DURATION", 6),
            final_duration=_env_duration("FRAMEFARM_FINAL_DURATION", 10),
            success_policy=policy,
            mock=mock,
        )
