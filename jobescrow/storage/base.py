"""Storage contract for the escrow job manager.

A backend supplies atomic, isolated transactions over the job records, the
ledger accounts, the transfer history, the transition audit log and the set
of consumed credential nonces. Everything written inside one
``transaction()`` block commits together or not at all.
"""

from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional, Protocol

from jobescrow.errors import AuthorizationError, ValidationError
from jobescrow.models import Account, Job, JobStateTransition, JobStatus, Transfer


class EscrowTransaction(Protocol):
    """Operations available inside one storage transaction."""

    # Jobs
    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        ...

    def insert_job(self, job: Job) -> None:
        """Insert a new job. Raises DuplicateError if the ID exists."""
        ...

    def update_job(self, job: Job) -> None:
        """Replace a job record. Raises NotFoundError if missing."""
        ...

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        employer: Optional[str] = None,
        worker: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs, oldest first."""
        ...

    # Ledger
    def get_account(self, account_id: str) -> Optional[Account]:
        """Get an account by ID."""
        ...

    def open_account(self, account: Account) -> Account:
        """Create an account. Raises DuplicateError if the ID exists."""
        ...

    def credit(
        self, account_id: str, amount: int, memo: str = "", job_id: Optional[str] = None
    ) -> Transfer:
        """Add externally supplied funds to an account, opening it if needed."""
        ...

    def transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        memo: str = "",
        job_id: Optional[str] = None,
    ) -> Transfer:
        """Move funds.

        Raises InsufficientFundsError on overdraft, and AuthorizationError when
        either side is a custody account bound to a job other than ``job_id``.
        """
        ...

    def list_transfers(
        self, account_id: Optional[str] = None, job_id: Optional[str] = None
    ) -> List[Transfer]:
        """Transfers touching an account and/or job, oldest first."""
        ...

    # Replay protection
    def consume_nonce(self, identity: str, nonce: str) -> None:
        """Mark a credential nonce used. Raises AuthorizationError on reuse."""
        ...

    def prune_nonces(self, used_before: datetime) -> int:
        """Forget nonces consumed before ``used_before``. Returns the count removed."""
        ...

    # Transitions (audit log)
    def save_transition(self, transition: JobStateTransition) -> str:
        """Save a state transition record. Returns the transition ID."""
        ...

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Get all state transitions for a job, oldest first."""
        ...


class EscrowStorage(Protocol):
    """Protocol for escrow persistence backends."""

    def transaction(self, readonly: bool = False) -> AbstractContextManager[EscrowTransaction]:
        """Open an atomic transaction.

        Commits when the block exits normally, rolls back and re-raises when
        it raises.
        """
        ...

    def close(self) -> None:
        """Release backend resources."""
        ...


def check_amount(amount: int) -> int:
    """Validate a ledger amount (positive integer)."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Amount must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return amount


def check_custody_binding(
    source: Optional[Account], destination: Optional[Account], job_id: Optional[str]
) -> None:
    """Custody funds only move in or out on behalf of the job that owns them."""
    for account in (source, destination):
        if account is not None and account.is_custody and account.job_id != job_id:
            raise AuthorizationError(
                f"Custody account {account.id} is bound to job {account.job_id}"
            )
