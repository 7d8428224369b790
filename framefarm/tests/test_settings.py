import pathlib

import pytest

from framefarm.shared.settings import WorkerSettings, load_env, resolve_generations_dir

ENV_VARS = (
    "GENERATIONS_DIR_PATH",
    "GENERATIONS_DIR_RELATIVE_PATH",
    "FRAMEFARM_LEASE_STALE_SECONDS",
    "FRAMEFARM_HEARTBEAT_SECONDS",
    "FRAMEFARM_BATCH_SIZE",
    "FRAMEFARM_SUCCESS_POLICY",
    "FRAMEFARM_MOCK",
    "FRAMEFARM_MAIN_DURATION",
    "FRAMEFARM_WORKER_COUNT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path):
    settings = WorkerSettings.from_env(tmp_path)

    assert settings.generations_dir == tmp_path
    assert settings.worker_count == 5
    assert settings.batch_size == 12
    assert settings.stale_threshold_ms == 300_000
    assert settings.heartbeat_interval_s == 30
    assert settings.success_policy == "all"
    assert settings.video_provider == "fal_queue"


def test_values_are_clamped(tmp_path, monkeypatch):
    monkeypatch.setenv("FRAMEFARM_BATCH_SIZE", "500")
    monkeypatch.setenv("FRAMEFARM_WORKER_COUNT", "0")
    monkeypatch.setenv("FRAMEFARM_LEASE_STALE_SECONDS", "60")
    monkeypatch.setenv("FRAMEFARM_HEARTBEAT_SECONDS", "45")

    settings = WorkerSettings.from_env(tmp_path)

    assert settings.batch_size == 64
    assert settings.worker_count == 1
    assert settings.heartbeat_interval_s == 30


def test_bad_values_fall_back(tmp_path, monkeypatch):
    monkeypatch.setenv("FRAMEFARM_BATCH_SIZE", "lots")
    monkeypatch.setenv("FRAMEFARM_MAIN_DURATION", "8")

    settings = WorkerSettings.from_env(tmp_path)

    assert settings.batch_size == 12
    assert settings.main_duration == 6


def test_invalid_policy_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("FRAMEFARM_SUCCESS_POLICY", "most")
    with pytest.raises(ValueError, match="FRAMEFARM_SUCCESS_POLICY"):
        WorkerSettings.from_env(tmp_path)


def test_mock_switches_both_providers(tmp_path, monkeypatch):
    monkeypatch.setenv("FRAMEFARM_MOCK", "true")

    settings = WorkerSettings.from_env(tmp_path)

    assert (settings.video_provider, settings.image_provider) == ("mock", "mock")


def test_generations_dir_resolution(tmp_path, monkeypatch):
    assert resolve_generations_dir(tmp_path) == tmp_path / "generations"

    monkeypatch.setenv("GENERATIONS_DIR_RELATIVE_PATH", "out/gen")
    assert resolve_generations_dir(tmp_path) == tmp_path / "out" / "gen"

    monkeypatch.setenv("GENERATIONS_DIR_PATH", "/srv/generations")
    assert resolve_generations_dir(tmp_path) == pathlib.Path("/srv/generations")


def test_load_env_keeps_existing_values(tmp_path, monkeypatch):
    monkeypatch.setenv("FRAMEFARM_BATCH_SIZE", "4")
    # empty counts as unset; monkeypatch restores it afterwards
    monkeypatch.setenv("FRAMEFARM_SUCCESS_POLICY", "")
    env = tmp_path / ".env"
    env.write_text('# local\nFRAMEFARM_BATCH_SIZE=8\nFRAMEFARM_SUCCESS_POLICY="any"\n', encoding="utf-8")

    load_env(env)

    settings = WorkerSettings.from_env(tmp_path)
    assert settings.batch_size == 4
    assert settings.success_policy == "any"
