"""
In-memory escrow storage.

Used for tests and local development. Transactions are serialized by one
lock and run against a private copy of the state, which replaces the
committed state only when the block finishes without raising.
"""

import contextlib
import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from jobescrow.errors import (
    AuthorizationError,
    DuplicateError,
    InsufficientFundsError,
    NotFoundError,
    StorageError,
)
from jobescrow.models import (
    Account,
    AccountKind,
    Job,
    JobStateTransition,
    JobStatus,
    Transfer,
)
from jobescrow.storage.base import check_amount, check_custody_binding
from jobescrow.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class _State:
    jobs: Dict[str, dict] = field(default_factory=dict)  # job_id -> persisted record
    accounts: Dict[str, Account] = field(default_factory=dict)
    transfers: List[Transfer] = field(default_factory=list)
    transitions: Dict[str, List[JobStateTransition]] = field(default_factory=dict)
    nonces: Dict[Tuple[str, str], datetime] = field(default_factory=dict)  # -> used_at


class _MemoryTransaction:
    """EscrowTransaction over a working copy of the state."""

    def __init__(self, state: _State, readonly: bool):
        self._state = state
        self._readonly = readonly

    def _check_writable(self) -> None:
        if self._readonly:
            raise StorageError("Write attempted in a read-only transaction")

    # === Jobs ===

    def get_job(self, job_id: str) -> Optional[Job]:
        record = self._state.jobs.get(job_id)
        return Job.from_dict(record) if record else None

    def insert_job(self, job: Job) -> None:
        self._check_writable()
        if job.id in self._state.jobs:
            raise DuplicateError(f"Job {job.id} already exists")
        self._state.jobs[job.id] = job.to_dict()
        self._state.transitions.setdefault(job.id, [])

    def update_job(self, job: Job) -> None:
        self._check_writable()
        if job.id not in self._state.jobs:
            raise NotFoundError(f"Job {job.id} not found")
        self._state.jobs[job.id] = job.to_dict()

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        employer: Optional[str] = None,
        worker: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        jobs = [Job.from_dict(r) for r in self._state.jobs.values()]

        if status is not None:
            jobs = [j for j in jobs if j.status == JobStatus(status)]
        if employer is not None:
            jobs = [j for j in jobs if j.employer == employer]
        if worker is not None:
            jobs = [j for j in jobs if j.worker == worker]

        jobs.sort(key=lambda j: (j.created_at or utc_now(), j.id))
        return jobs[offset : offset + limit]

    # === Ledger ===

    def get_account(self, account_id: str) -> Optional[Account]:
        account = self._state.accounts.get(account_id)
        return copy.copy(account) if account else None

    def open_account(self, account: Account) -> Account:
        self._check_writable()
        if account.id in self._state.accounts:
            raise DuplicateError(f"Account {account.id} already exists")
        self._state.accounts[account.id] = copy.copy(account)
        return copy.copy(account)

    def _ensure_account(self, account_id: str) -> Account:
        account = self._state.accounts.get(account_id)
        if account is None:
            account = Account(id=account_id, kind=AccountKind.EXTERNAL)
            self._state.accounts[account_id] = account
        return account

    def credit(
        self, account_id: str, amount: int, memo: str = "", job_id: Optional[str] = None
    ) -> Transfer:
        self._check_writable()
        check_amount(amount)
        self._ensure_account(account_id).balance += amount
        record = Transfer(destination=account_id, amount=amount, memo=memo, job_id=job_id)
        self._state.transfers.append(record)
        return record

    def transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        memo: str = "",
        job_id: Optional[str] = None,
    ) -> Transfer:
        self._check_writable()
        check_amount(amount)
        src = self._state.accounts.get(source)
        check_custody_binding(src, self._state.accounts.get(destination), job_id)
        balance = src.balance if src else 0
        if src is None or balance < amount:
            raise InsufficientFundsError(source, balance, amount)
        dst = self._ensure_account(destination)
        src.balance -= amount
        dst.balance += amount
        record = Transfer(
            source=source, destination=destination, amount=amount, memo=memo, job_id=job_id
        )
        self._state.transfers.append(record)
        return record

    def list_transfers(
        self, account_id: Optional[str] = None, job_id: Optional[str] = None
    ) -> List[Transfer]:
        transfers = list(self._state.transfers)
        if account_id is not None:
            transfers = [
                t for t in transfers if account_id in (t.source, t.destination)
            ]
        if job_id is not None:
            transfers = [t for t in transfers if t.job_id == job_id]
        return [copy.copy(t) for t in transfers]

    # === Replay protection ===

    def consume_nonce(self, identity: str, nonce: str) -> None:
        self._check_writable()
        key = (identity, nonce)
        if key in self._state.nonces:
            raise AuthorizationError("Credential has already been used")
        self._state.nonces[key] = utc_now()

    def prune_nonces(self, used_before: datetime) -> int:
        self._check_writable()
        stale = [key for key, used_at in self._state.nonces.items() if used_at < used_before]
        for key in stale:
            del self._state.nonces[key]
        return len(stale)

    # === Transitions ===

    def save_transition(self, transition: JobStateTransition) -> str:
        self._check_writable()
        self._state.transitions.setdefault(transition.job_id, []).append(
            copy.copy(transition)
        )
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        transitions = self._state.transitions.get(job_id, [])
        return [copy.copy(t) for t in transitions]


class InMemoryEscrowStorage:
    """In-memory escrow storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._state = _State()
        self._lock = threading.Lock()
        self._local = threading.local()

    @contextlib.contextmanager
    def transaction(self, readonly: bool = False):
        """Run a serialized transaction; commit on success, discard on error."""
        if getattr(self._local, "active", False):
            raise StorageError("Nested transactions are not supported")
        with self._lock:
            self._local.active = True
            try:
                working = self._state if readonly else copy.deepcopy(self._state)
                yield _MemoryTransaction(working, readonly)
                if not readonly:
                    self._state = working
            except Exception as e:
                logger.debug(f"Transaction failed, discarding changes: {e!r}")
                raise
            finally:
                self._local.active = False

    def close(self) -> None:
        """No resources to release."""
        pass
