import asyncio
import json
import os
import time

import pytest

from framefarm.services.ledger.state import JobLedger
from framefarm.shared.settings import WorkerSettings
from framefarm.tests.fakes import FakeFrames, FakeProvider
from framefarm.tools.submit_job import main as submit_main
from framefarm.worker.run_worker import Worker, build_providers


@pytest.fixture
def worker(tmp_path):
    settings = WorkerSettings(generations_dir=tmp_path / "generations")
    provider = FakeProvider()
    w = Worker(settings, {"video": provider, "image": provider}, frames=FakeFrames())
    w.queue.ensure_dirs()
    yield w
    w.lease.shutdown()


def _payload(n=1):
    return {
        "kind": "scene_batch",
        "scenes": [{"scene": i, "image_prompt": f"img-{i}", "video_prompt": f"vid-{i}"} for i in range(n)],
    }


def _age(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


def test_drain_processes_every_intake_job(worker):
    worker.queue.submit(_payload(2), "alpha")
    worker.queue.submit(_payload(1), "beta")

    assert asyncio.run(worker.drain()) == 2

    done = worker.queue.queue_dir("done")
    assert sorted(p.name for p in done.iterdir()) == ["alpha", "beta"]
    assert (done / "alpha" / "alpha.json").exists()
    assert list(worker.queue.queue_dir("intake").iterdir()) == []


def test_drain_with_nothing_to_do(worker):
    assert asyncio.run(worker.drain()) == 0


def test_requeue_cooled_down_only_after_cooldown(worker):
    ledger = JobLedger()
    cooling = worker.queue.queue_dir("failed") / "cooling"
    ready = worker.queue.queue_dir("failed") / "ready"
    for path, cooldown in ((cooling, 60_000), (ready, 0)):
        path.mkdir()
        ledger.initialize(path, "worker-old")
        ledger.mark_failed(path, "boom", cooldown=cooldown)
    ready_state = JobLedger.state_path(ready)
    state = json.loads(ready_state.read_text(encoding="utf-8"))
    state["cooldownUntil"] -= 1
    ready_state.write_text(json.dumps(state), encoding="utf-8")
    (worker.queue.queue_dir("failed") / "no-ledger").mkdir()

    assert worker.requeue_cooled_down() == ["ready"]
    assert (worker.queue.queue_dir("intake") / "ready").is_dir()
    assert cooling.is_dir()


def test_find_abandoned_sees_stale_and_old_unleased_jobs(worker):
    active = worker.queue.queue_dir("active")
    stale = active / "stale"
    stale.mkdir()
    (stale / ".lock").write_text(
        json.dumps({"holderId": "dead", "hostname": "h", "pid": 1, "createdAt": 1000, "lastHeartbeat": 1000}),
        encoding="utf-8",
    )
    orphan = active / "orphan"
    orphan.mkdir()
    _age(orphan, 3600)
    fresh = active / "fresh"
    fresh.mkdir()

    found = [p.name for p in worker.find_abandoned()]

    assert sorted(found) == ["orphan", "stale"]


def test_abandoned_job_is_resumed_before_intake(worker):
    active = worker.queue.queue_dir("active") / "alpha"
    active.mkdir()
    (active / "alpha.json").write_text(json.dumps(_payload(1)), encoding="utf-8")
    JobLedger().initialize(active, "dead")
    (active / ".lock").write_text(
        json.dumps({"holderId": "dead", "hostname": "h", "pid": 1, "createdAt": 1000, "lastHeartbeat": 1000}),
        encoding="utf-8",
    )
    worker.queue.submit(_payload(1), "beta")

    assert asyncio.run(worker.run_once()) is True

    assert (worker.queue.queue_dir("done") / "alpha").is_dir()
    assert (worker.queue.queue_dir("intake") / "beta.json").exists()


def test_build_providers_uses_registry(tmp_path):
    settings = WorkerSettings(generations_dir=tmp_path, video_provider="mock", image_provider="mock")

    providers = build_providers(settings)

    assert providers["video"].name == "mock"
    assert providers["image"].name == "mock"


def test_submit_job_cli(tmp_path, capsys):
    payload = tmp_path / "gamma.json"
    payload.write_text(json.dumps(_payload(1)), encoding="utf-8")
    base = tmp_path / "generations"

    assert submit_main([str(payload), "--base-dir", str(base), "--env-file", str(tmp_path / "none.env")]) == 0
    assert (base / "intake" / "gamma.json").exists()
    assert "OK: queued" in capsys.readouterr().out

    assert submit_main([str(payload), "--base-dir", str(base), "--env-file", str(tmp_path / "none.env")]) == 1
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"kind": "scene_batch", "scenes": []}), encoding="utf-8")
    assert submit_main([str(bad), "--base-dir", str(base), "--env-file", str(tmp_path / "none.env")]) == 1
    assert "ERROR:" in capsys.readouterr().err
