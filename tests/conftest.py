"""
Shared pytest fixtures.

Every test gets its own SQLite file under tmp_path, a fresh cache and a
simulated hardware gateway, wired the same way the CLI and server wire them.
"""

import pytest

from engine import build_services
from hardware import SimulatedGateway
from models import MachineStatus
from router import Router
from storage import Storage


@pytest.fixture
def storage(tmp_path):
    db = Storage(str(tmp_path / "machines.db"))
    yield db
    db.close()


@pytest.fixture
def gateway():
    return SimulatedGateway()


@pytest.fixture
def services(storage, gateway):
    return build_services(storage, gateway=gateway)


@pytest.fixture
def router(services):
    return Router(services)


@pytest.fixture
def laundromat(storage):
    """Location L1 with M1 available and M2 running, plus L2 with M3 available."""
    storage.add_machine("M1", "L1")
    storage.add_machine("M2", "L1", status=MachineStatus.RUNNING, current_job_id="job-1")
    storage.add_machine("M3", "L2")
    return storage
