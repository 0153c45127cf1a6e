"""Escrow data models.

Models:
- Job: The escrowed work agreement between an employer and a worker
- JobStatus: Job lifecycle status
- JobStateTransition: Audit log entry for a state change
- Account: A ledger account (party or custody)
- Transfer: A ledger movement between accounts
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from jobescrow.config import MAX_PAY
from jobescrow.utils import parse_datetime, utc_now

# Bumped when the persisted job record gains fields. Older records still load.
JOB_RECORD_VERSION = 2


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.REJECTED})

VALID_JOB_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.COMPLETED, JobStatus.REJECTED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.REJECTED: frozenset(),
}


class JobAction(str, Enum):
    """Operations recorded in the transition log."""

    CREATE = "create"
    APPROVE_WORKER = "approve_worker"
    APPROVE_EMPLOYER = "approve_employer"
    RELEASE = "release"
    REJECT = "reject"


class AccountKind(str, Enum):
    """Ledger account kinds."""

    EXTERNAL = "external"
    CUSTODY = "custody"


# Field order of the persisted job record. Append only.
JOB_RECORD_FIELDS = (
    "schema_version",
    "id",
    "title",
    "pay",
    "employer",
    "worker",
    "custody",
    "worker_approved",
    "employer_approved",
    "released",
    "status",
    "rejected_by",
    "created_at",
    "updated_at",
    "completed_at",
    "rejected_at",
)

_TIMESTAMP = {"type": ["string", "null"]}

JOB_RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "JobRecord",
    "type": "object",
    "required": [
        "id",
        "title",
        "pay",
        "employer",
        "worker",
        "worker_approved",
        "employer_approved",
        "status",
    ],
    "properties": {
        "schema_version": {"type": "integer", "minimum": 1},
        "id": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "pay": {"type": "integer", "minimum": 1, "maximum": MAX_PAY},
        "employer": {"type": "string", "minLength": 1},
        "worker": {"type": "string", "minLength": 1},
        "custody": {"type": ["string", "null"]},
        "worker_approved": {"type": "boolean"},
        "employer_approved": {"type": "boolean"},
        "released": {"type": "boolean"},
        "status": {"enum": [s.value for s in JobStatus]},
        "rejected_by": {"type": ["string", "null"]},
        "created_at": _TIMESTAMP,
        "updated_at": _TIMESTAMP,
        "completed_at": _TIMESTAMP,
        "rejected_at": _TIMESTAMP,
    },
}

_record_validator = Draft7Validator(JOB_RECORD_SCHEMA)


def validate_job_record(data: Dict[str, Any]) -> None:
    """Validate a persisted job record against JOB_RECORD_SCHEMA.

    Raises:
        ValueError: On the first schema violation.
    """
    errors = sorted(_record_validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        path = ".".join(str(part) for part in first.path) or "(root)"
        raise ValueError(f"Invalid job record at {path}: {first.message}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Job:
    """An escrowed unit of work.

    The employer's pay sits in the ``custody`` account until both parties
    approve, then moves to the worker exactly once. A rejected job keeps its
    funds in custody; there is no refund path.
    """

    id: str
    title: str
    pay: int
    employer: str
    worker: str
    custody: Optional[str] = None
    worker_approved: bool = False
    employer_approved: bool = False
    released: bool = False
    status: JobStatus = JobStatus.PENDING
    rejected_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("Job id cannot be empty")
        if isinstance(self.pay, bool) or not isinstance(self.pay, int):
            raise ValueError(f"Pay must be an integer amount, got {type(self.pay).__name__}")
        if self.pay <= 0:
            raise ValueError("Pay must be positive")
        if self.pay > MAX_PAY:
            raise ValueError(f"Pay exceeds maximum ({MAX_PAY})")
        if not self.employer or not self.worker:
            raise ValueError("Employer and worker are required")
        if self.employer == self.worker:
            raise ValueError("Employer and worker must be different identities")
        try:
            self.status = JobStatus(self.status)
        except ValueError:
            raise ValueError(f"Invalid status: {self.status}")

    @property
    def is_pending(self) -> bool:
        return self.status == JobStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting(self) -> List[str]:
        """Parties whose approval is still missing."""
        missing = []
        if not self.employer_approved:
            missing.append("employer")
        if not self.worker_approved:
            missing.append("worker")
        return missing

    def party_role(self, identity: str) -> Optional[str]:
        """Return ``"employer"``, ``"worker"`` or None for an identity."""
        if identity == self.employer:
            return "employer"
        if identity == self.worker:
            return "worker"
        return None

    def can_transition_to(self, new_status: JobStatus) -> bool:
        """Check whether the status change is allowed from the current status."""
        return JobStatus(new_status) in VALID_JOB_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted record layout (fixed field order)."""
        values = {
            "schema_version": JOB_RECORD_VERSION,
            "id": self.id,
            "title": self.title,
            "pay": self.pay,
            "employer": self.employer,
            "worker": self.worker,
            "custody": self.custody,
            "worker_approved": self.worker_approved,
            "employer_approved": self.employer_approved,
            "released": self.released,
            "status": self.status.value,
            "rejected_by": self.rejected_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "rejected_at": _iso(self.rejected_at),
        }
        return {name: values[name] for name in JOB_RECORD_FIELDS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Load a persisted record.

        Records written before ``released`` existed derive it from the status.
        Unknown keys are ignored.
        """
        validate_job_record(data)
        status = JobStatus(data["status"])
        released = data.get("released")
        if released is None:
            released = status == JobStatus.COMPLETED
        return cls(
            id=data["id"],
            title=data["title"],
            pay=data["pay"],
            employer=data["employer"],
            worker=data["worker"],
            custody=data.get("custody"),
            worker_approved=data["worker_approved"],
            employer_approved=data["employer_approved"],
            released=released,
            status=status,
            rejected_by=data.get("rejected_by"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            rejected_at=parse_datetime(data.get("rejected_at")),
        )


@dataclass
class JobStateTransition:
    """Audit log entry for a job operation."""

    job_id: str
    to_status: JobStatus
    action: JobAction
    actor: str
    from_status: Optional[JobStatus] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.to_status = JobStatus(self.to_status)
        self.action = JobAction(self.action)
        if self.from_status is not None:
            self.from_status = JobStatus(self.from_status)


@dataclass
class Account:
    """A ledger account. Custody accounts belong to exactly one job."""

    id: str
    balance: int = 0
    kind: AccountKind = AccountKind.EXTERNAL
    job_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.kind = AccountKind(self.kind)
        if self.balance < 0:
            raise ValueError("Balance cannot be negative")

    @property
    def is_custody(self) -> bool:
        return self.kind == AccountKind.CUSTODY


@dataclass
class Transfer:
    """A movement of funds. ``source`` is None for external deposits."""

    destination: str
    amount: int
    source: Optional[str] = None
    memo: str = ""
    job_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
