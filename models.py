# models.py
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional


class MachineStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    AWAITING_DROPOFF = "AWAITING_DROPOFF"
    RUNNING = "RUNNING"
    ERROR = "ERROR"


class ResultKind(Enum):
    OK = 200
    NOT_FOUND = 404
    INVALID_STATE = 400
    UNAUTHORIZED = 401
    HARDWARE_ERROR = 502
    UNROUTABLE = 500


@dataclass
class Machine:
    machine_id: str
    location_id: str
    current_job_id: Optional[str] = None
    status: MachineStatus = MachineStatus.AVAILABLE
    hold_expires_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            machine_id=row["machine_id"],
            location_id=row["location_id"],
            current_job_id=row["current_job_id"],
            status=MachineStatus(row["status"]),
            hold_expires_at=row["hold_expires_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self):
        return {
            "machineId": self.machine_id,
            "locationId": self.location_id,
            "currentJobId": self.current_job_id,
            "status": self.status.value,
            "holdExpiresAt": self.hold_expires_at,
        }


def placeholder_machine() -> Machine:
    """Stand-in record returned alongside NOT_FOUND results."""
    return Machine(machine_id="", location_id="", current_job_id=None, status=MachineStatus.ERROR)


@dataclass
class Response:
    kind: ResultKind
    machine: Optional[Machine] = None
    message: str = ""

    @property
    def status_code(self) -> int:
        return self.kind.value

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.OK

    def to_dict(self):
        return {
            "statusCode": self.status_code,
            "machine": self.machine.to_dict() if self.machine else None,
            "message": self.message,
        }


@dataclass
class Request:
    method: str
    path: str
    token: Optional[str] = None
    body: dict = field(default_factory=dict)


def snapshot(machine: Machine) -> Machine:
    return Machine(**asdict(machine))
