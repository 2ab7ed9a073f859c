import sqlite3
from datetime import timedelta

import pytest

from models import MachineStatus
from storage import Storage, utcnow


def test_add_and_get_machine(storage):
    added = storage.add_machine("M1", "L1")
    assert added.status is MachineStatus.AVAILABLE
    assert added.current_job_id is None

    fetched = storage.get_machine("M1")
    assert fetched.machine_id == "M1"
    assert fetched.location_id == "L1"


def test_get_missing_machine_returns_none(storage):
    assert storage.get_machine("nope") is None


def test_duplicate_machine_rejected(storage):
    storage.add_machine("M1", "L1")
    with pytest.raises(sqlite3.IntegrityError):
        storage.add_machine("M1", "L2")


def test_add_machine_enforces_job_invariant(storage):
    with pytest.raises(ValueError):
        storage.add_machine("M1", "L1", status=MachineStatus.RUNNING)
    with pytest.raises(ValueError):
        storage.add_machine("M2", "L1", current_job_id="job-1")
    # ERROR may keep or lack a job id
    storage.add_machine("M3", "L1", status=MachineStatus.ERROR)


def test_list_at_location_keeps_insertion_order(storage):
    for machine_id in ["Z9", "A1", "M5"]:
        storage.add_machine(machine_id, "L1")
    storage.add_machine("B2", "L2")
    assert [m.machine_id for m in storage.list_at_location("L1")] == ["Z9", "A1", "M5"]
    assert storage.list_at_location("L3") == []


def test_set_job_and_status(storage):
    storage.add_machine("M1", "L1")
    assert storage.set_job("M1", "job-7") is True
    assert storage.set_status("M1", MachineStatus.AWAITING_DROPOFF) is True
    m = storage.get_machine("M1")
    assert m.current_job_id == "job-7"
    assert m.status is MachineStatus.AWAITING_DROPOFF


def test_setters_report_not_found(storage):
    assert storage.set_job("ghost", "job-1") is False
    assert storage.set_status("ghost", MachineStatus.RUNNING) is False


def test_reserve_first_available_picks_first_in_order(storage):
    storage.add_machine("M1", "L1", status=MachineStatus.RUNNING, current_job_id="old")
    storage.add_machine("M2", "L1")
    storage.add_machine("M3", "L1")

    m = storage.reserve_first_available("L1", "job-7", hold_seconds=60)
    assert m.machine_id == "M2"
    assert m.status is MachineStatus.AWAITING_DROPOFF
    assert m.current_job_id == "job-7"
    assert m.hold_expires_at is not None


def test_reserve_without_hold_leaves_expiry_empty(storage):
    storage.add_machine("M1", "L1")
    m = storage.reserve_first_available("L1", "job-7", hold_seconds=0)
    assert m.hold_expires_at is None


def test_reserve_first_available_none_left(storage):
    storage.add_machine("M1", "L1", status=MachineStatus.ERROR)
    assert storage.reserve_first_available("L1", "job-7") is None
    assert storage.get_machine("M1").status is MachineStatus.ERROR


def test_transition_is_compare_and_swap(storage):
    storage.add_machine("M1", "L1", status=MachineStatus.AWAITING_DROPOFF, current_job_id="job-1")

    assert storage.transition("M1", MachineStatus.AVAILABLE, MachineStatus.RUNNING) is None
    assert storage.get_machine("M1").status is MachineStatus.AWAITING_DROPOFF

    m = storage.transition("M1", MachineStatus.AWAITING_DROPOFF, MachineStatus.ERROR)
    assert m.status is MachineStatus.ERROR
    assert m.current_job_id == "job-1"


def test_transition_job_guard(storage):
    storage.add_machine("M1", "L1", status=MachineStatus.AWAITING_DROPOFF, current_job_id="job-1")
    assert storage.transition("M1", MachineStatus.AWAITING_DROPOFF, MachineStatus.AVAILABLE,
                              clear_job=True, job_id="job-2") is None
    m = storage.transition("M1", MachineStatus.AWAITING_DROPOFF, MachineStatus.AVAILABLE,
                           clear_job=True, job_id="job-1")
    assert m.status is MachineStatus.AVAILABLE
    assert m.current_job_id is None


def test_list_expired_holds(storage):
    storage.add_machine("M1", "L1")
    storage.add_machine("M2", "L1")
    start = utcnow()
    storage.reserve_first_available("L1", "short", hold_seconds=10, now=start)
    storage.reserve_first_available("L1", "long", hold_seconds=1000, now=start)

    assert storage.list_expired_holds(start) == []
    expired = storage.list_expired_holds(start + timedelta(seconds=11))
    assert [m.machine_id for m in expired] == ["M1"]


def test_status_counts(laundromat):
    assert laundromat.status_counts() == {"AVAILABLE": 2, "RUNNING": 1}


def test_config_roundtrip(storage):
    assert storage.get_config("hold_seconds", default="900") == "900"
    storage.set_config("hold_seconds", 30)
    storage.set_config("hold_seconds", 45)
    assert storage.get_config("hold_seconds") == "45"
    assert [row["key"] for row in storage.list_config()] == ["hold_seconds"]


def test_state_survives_reopen(tmp_path):
    path = str(tmp_path / "state.db")
    first = Storage(path)
    first.add_machine("M1", "L1")
    first.reserve_first_available("L1", "job-1")
    first.close()

    second = Storage(path)
    assert second.get_machine("M1").current_job_id == "job-1"
    second.close()
