import pytest

from framefarm.services.lease.lock import LeaseLock
from framefarm.services.ledger.state import JobLedger
from framefarm.tests.fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_dir(tmp_path):
    d = tmp_path / "alpha"
    d.mkdir()
    return d


@pytest.fixture
def ledger(clock):
    return JobLedger(clock=clock)


@pytest.fixture
def lease(clock):
    lock = LeaseLock(holder_id="worker-a", clock=clock)
    yield lock
    lock.shutdown()
