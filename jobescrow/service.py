"""
Escrow job manager.

Implements the two-party escrow state machine:

    (none) --create--> pending --(both approvals)--> completed
                          |
                          +------reject------------> rejected

The employer's pay moves into a per-job custody account when the job is
created and leaves it exactly once, to the worker, in the same transaction as
whichever approval comes second. Rejected jobs keep their funds in custody;
there is no refund path. Completed and rejected jobs accept no further
operations.

Every operation runs inside one storage transaction: identity checks,
nonce consumption, state changes, fund movements and the audit entry all
commit together or not at all.
"""

import contextlib
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from jobescrow.config import MAX_PAY, EscrowConfig
from jobescrow.errors import (
    AuthorizationError,
    CustodyMismatchError,
    DuplicateError,
    EscrowError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from jobescrow.identity import (
    Credential,
    Ed25519Verifier,
    IdentityVerifier,
    KeyPair,
    is_valid_identity,
    sign_request,
)
from jobescrow.logging_config import (
    log_deposit,
    log_release,
    log_transition,
    setup_escrow_logging,
)
from jobescrow.models import (
    Account,
    AccountKind,
    Job,
    JobAction,
    JobStateTransition,
    JobStatus,
)
from jobescrow.storage.base import EscrowStorage, EscrowTransaction
from jobescrow.storage.sqlite import SQLiteEscrowStorage
from jobescrow.utils import utc_now

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


# =============================================================================
# Signed payloads
# =============================================================================


def create_job_payload(
    job_id: str, title: str, pay: int, employer: str, worker: str, custody_id: str
) -> Dict[str, Any]:
    """Parameters both parties co-sign to create a job."""
    return {
        "job_id": job_id,
        "title": title,
        "pay": pay,
        "employer": employer,
        "worker": worker,
        "custody": custody_id,
    }


def job_payload(job_id: str) -> Dict[str, Any]:
    """Parameters signed for approve/reject."""
    return {"job_id": job_id}


def sign_create_job(
    key_pair: KeyPair,
    job_id: str,
    title: str,
    pay: int,
    employer: str,
    worker: str,
    custody_id: str,
) -> Credential:
    """Produce one party's co-signature for :meth:`EscrowService.create_job`."""
    payload = create_job_payload(job_id, title, pay, employer, worker, custody_id)
    return sign_request(key_pair, JobAction.CREATE.value, payload)


def sign_job_action(key_pair: KeyPair, action: JobAction, job_id: str) -> Credential:
    """Sign an approve or reject call for ``job_id``."""
    return sign_request(key_pair, JobAction(action).value, job_payload(job_id))


# =============================================================================
# Service
# =============================================================================


@dataclass
class CustodyReport:
    """Result of :meth:`EscrowService.reconcile`."""

    jobs_checked: int = 0
    locked_total: int = 0
    violations: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


class EscrowService:
    """The escrow job manager.

    Args:
        storage: Transaction provider holding jobs and ledger accounts
        verifier: Turns credentials into identities (default: Ed25519Verifier)
        config: Escrow settings (default: from environment)
    """

    def __init__(
        self,
        storage: EscrowStorage,
        verifier: Optional[IdentityVerifier] = None,
        config: Optional[EscrowConfig] = None,
    ):
        self.storage = storage
        self.config = config or EscrowConfig.from_env()
        self.verifier = verifier or Ed25519Verifier(self.config)

    # === Helpers ===

    @contextlib.contextmanager
    def _operation(self, action: JobAction, job_id: str):
        """Log escrow failures before they propagate to the caller."""
        try:
            yield
        except EscrowError as e:
            logger.warning(f"{action.value} failed | job={job_id} | {type(e).__name__}: {e}")
            raise

    def _verify(self, credential: Optional[Credential], action: JobAction, payload) -> str:
        if credential is None:
            raise AuthorizationError(f"A signed credential is required for {action.value}")
        return self.verifier.verify(credential, action.value, payload)

    def _consume(self, tx: EscrowTransaction, *signers) -> None:
        """Spend each ``(identity, credential)`` nonce inside ``tx``.

        Nonces older than any credential that could still verify are pruned
        first, and each credential's age is checked again against the same
        clock so a pruned nonce can never be replayed.
        """
        now = utc_now()
        max_age = timedelta(seconds=self.config.credential_max_age_seconds)
        tx.prune_nonces(now - max_age - timedelta(seconds=self.config.clock_skew_seconds))
        for identity, credential in signers:
            if now - credential.issued_at > max_age:
                raise AuthorizationError("Credential has expired")
            tx.consume_nonce(identity, credential.nonce)

    def _validate_job_id(self, job_id: str) -> None:
        if not isinstance(job_id, str) or not job_id.strip():
            raise ValidationError("Job id cannot be empty")
        if len(job_id) > self.config.max_job_id_length:
            raise ValidationError(
                f"Job id too long (max {self.config.max_job_id_length} characters)"
            )
        if _CONTROL_CHARS.search(job_id):
            raise ValidationError("Job id contains control characters")

    def _validate_title(self, title: str) -> None:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title cannot be empty")
        if len(title) > self.config.max_title_length:
            raise ValidationError(f"Title too long (max {self.config.max_title_length} characters)")

    def _validate_pay(self, pay: int) -> None:
        if isinstance(pay, bool) or not isinstance(pay, int):
            raise ValidationError(f"Pay must be an integer amount, got {type(pay).__name__}")
        if pay <= 0:
            raise ValidationError("Pay must be positive")
        if pay > MAX_PAY:
            raise ValidationError(f"Pay exceeds maximum ({MAX_PAY})")

    def _load(self, tx: EscrowTransaction, job_id: str) -> Job:
        job = tx.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _require_transition(self, job: Job, action: JobAction, to_status: JobStatus) -> None:
        """Approvals need a job that can still complete; reject needs one that can be rejected."""
        if not job.can_transition_to(to_status):
            raise InvalidStateError(
                f"Cannot {action.value} job {job.id}: status is {job.status.value}"
            )

    def _release(self, tx: EscrowTransaction, job: Job, actor: str) -> None:
        """Move the job's custody balance to the worker, exactly once."""
        self._require_transition(job, JobAction.RELEASE, JobStatus.COMPLETED)
        if job.released:
            raise InvalidStateError(f"Funds for job {job.id} were already released")

        custody = tx.get_account(job.custody) if job.custody else None
        balance = custody.balance if custody else 0
        if (
            custody is None
            or not custody.is_custody
            or custody.job_id != job.id
            or balance != job.pay
        ):
            raise CustodyMismatchError(
                job.custody or "-",
                balance,
                job.pay,
                f"Custody for job {job.id} holds {balance}, expected {job.pay}",
            )

        job.released = True
        tx.transfer(job.custody, job.worker, job.pay, memo="release", job_id=job.id)

        now = utc_now()
        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.updated_at = now
        tx.save_transition(
            JobStateTransition(
                job_id=job.id,
                from_status=JobStatus.PENDING,
                to_status=JobStatus.COMPLETED,
                action=JobAction.RELEASE,
                actor=actor,
            )
        )

    # === Operations ===

    def create_job(
        self,
        job_id: str,
        title: str,
        pay: int,
        employer: Credential,
        worker: Credential,
        custody_id: str,
    ) -> Job:
        """Create a job and deposit its pay into a fresh custody account.

        Both the employer and the worker must co-sign the same create payload.

        Raises:
            AuthorizationError: A co-signature is missing, invalid or replayed
            ValidationError: Bad id, title or pay; employer and worker are the
                same identity; custody reuses a party identity
            DuplicateError: Job id or custody account already exists
            InsufficientFundsError: Employer balance is below pay
        """
        action = JobAction.CREATE
        with self._operation(action, job_id):
            self._validate_job_id(job_id)
            self._validate_title(title)
            self._validate_pay(pay)
            if not isinstance(custody_id, str) or not custody_id.strip():
                raise ValidationError("Custody account id cannot be empty")
            if not isinstance(employer, Credential) or not isinstance(worker, Credential):
                raise AuthorizationError("Employer and worker must both co-sign job creation")

            payload = create_job_payload(
                job_id, title, pay, employer.identity, worker.identity, custody_id
            )
            employer_id = self._verify(employer, action, payload)
            worker_id = self._verify(worker, action, payload)

            if employer_id == worker_id:
                raise ValidationError("Employer and worker must be different identities")
            if custody_id in (employer_id, worker_id):
                raise ValidationError("Custody account must be distinct from both parties")
            if is_valid_identity(custody_id):
                raise ValidationError("Custody account id cannot be a public key")

            now = utc_now()
            try:
                job = Job(
                    id=job_id,
                    title=title,
                    pay=pay,
                    employer=employer_id,
                    worker=worker_id,
                    custody=custody_id,
                    created_at=now,
                    updated_at=now,
                )
            except ValueError as e:
                raise ValidationError(str(e)) from e

            with self.storage.transaction() as tx:
                self._consume(tx, (employer_id, employer), (worker_id, worker))
                if tx.get_job(job_id) is not None:
                    raise DuplicateError(f"Job {job_id} already exists")
                if tx.get_account(custody_id) is not None:
                    raise DuplicateError(f"Custody account {custody_id} already exists")

                tx.insert_job(job)
                tx.open_account(
                    Account(id=custody_id, kind=AccountKind.CUSTODY, job_id=job_id)
                )
                tx.transfer(employer_id, custody_id, pay, memo="escrow deposit", job_id=job_id)
                tx.save_transition(
                    JobStateTransition(
                        job_id=job_id,
                        to_status=JobStatus.PENDING,
                        action=action,
                        actor=employer_id,
                    )
                )

        logger.info(f"Job created | id={job_id} | pay={pay} | employer={employer_id[:12]}...")
        log_deposit(custody_id, pay, job_id=job_id)
        log_transition(job_id, None, JobStatus.PENDING.value, action.value, employer_id)
        return job

    def approve_as_worker(self, job_id: str, worker: Credential) -> Job:
        """Record the worker's approval; releases funds if the employer already approved.

        Raises:
            NotFoundError: Unknown job
            AuthorizationError: Caller is not the job's worker, or the credential is bad
            InvalidStateError: Job is not pending, or the worker already approved
        """
        return self._approve(job_id, worker, JobAction.APPROVE_WORKER)

    def approve_as_employer(self, job_id: str, employer: Credential) -> Job:
        """Record the employer's approval; releases funds if the worker already approved.

        Raises:
            NotFoundError: Unknown job
            AuthorizationError: Caller is not the job's employer, or the credential is bad
            InvalidStateError: Job is not pending, or the employer already approved
        """
        return self._approve(job_id, employer, JobAction.APPROVE_EMPLOYER)

    def _approve(self, job_id: str, credential: Credential, action: JobAction) -> Job:
        as_worker = action == JobAction.APPROVE_WORKER
        role = "worker" if as_worker else "employer"

        with self._operation(action, job_id):
            identity = self._verify(credential, action, job_payload(job_id))

            with self.storage.transaction() as tx:
                self._consume(tx, (identity, credential))
                job = self._load(tx, job_id)

                expected = job.worker if as_worker else job.employer
                if identity != expected:
                    raise AuthorizationError(f"Only the job's {role} can {action.value}")
                self._require_transition(job, action, JobStatus.COMPLETED)
                if (job.worker_approved if as_worker else job.employer_approved):
                    raise InvalidStateError(f"The {role} has already approved job {job_id}")

                if as_worker:
                    job.worker_approved = True
                else:
                    job.employer_approved = True
                job.updated_at = utc_now()
                tx.save_transition(
                    JobStateTransition(
                        job_id=job_id,
                        from_status=JobStatus.PENDING,
                        to_status=JobStatus.PENDING,
                        action=action,
                        actor=identity,
                    )
                )

                released = job.worker_approved and job.employer_approved
                if released:
                    self._release(tx, job, actor=identity)
                tx.update_job(job)

        logger.info(f"Job approved | id={job_id} | by={role} | status={job.status.value}")
        log_transition(
            job_id, JobStatus.PENDING.value, JobStatus.PENDING.value, action.value, identity
        )
        if released:
            logger.info(f"Funds released | id={job_id} | amount={job.pay}")
            log_transition(
                job_id,
                JobStatus.PENDING.value,
                JobStatus.COMPLETED.value,
                JobAction.RELEASE.value,
                identity,
            )
            log_release(job_id, job.worker, job.pay)
        return job

    def reject(self, job_id: str, caller: Credential) -> Job:
        """Reject a pending job. Funds stay locked in custody permanently.

        Raises:
            NotFoundError: Unknown job
            AuthorizationError: Caller is neither employer nor worker
            InvalidStateError: Job is not pending, or already approved while
                ``allow_reject_after_approval`` is off
        """
        action = JobAction.REJECT
        with self._operation(action, job_id):
            identity = self._verify(caller, action, job_payload(job_id))

            with self.storage.transaction() as tx:
                self._consume(tx, (identity, caller))
                job = self._load(tx, job_id)

                role = job.party_role(identity)
                if role is None:
                    raise AuthorizationError("Only the employer or the worker can reject a job")
                self._require_transition(job, action, JobStatus.REJECTED)
                if not self.config.allow_reject_after_approval and (
                    job.worker_approved or job.employer_approved
                ):
                    raise InvalidStateError(
                        f"Job {job_id} already has an approval and can no longer be rejected"
                    )

                now = utc_now()
                job.status = JobStatus.REJECTED
                job.rejected_by = identity
                job.rejected_at = now
                job.updated_at = now
                tx.update_job(job)
                tx.save_transition(
                    JobStateTransition(
                        job_id=job_id,
                        from_status=JobStatus.PENDING,
                        to_status=JobStatus.REJECTED,
                        action=action,
                        actor=identity,
                    )
                )

        logger.info(f"Job rejected | id={job_id} | by={role} | locked={job.pay}")
        log_transition(
            job_id, JobStatus.PENDING.value, JobStatus.REJECTED.value, action.value, identity
        )
        return job

    # === Queries ===

    def get_job(self, job_id: str) -> Job:
        """Get a job by ID.

        Raises:
            NotFoundError: If the job doesn't exist
        """
        with self.storage.transaction(readonly=True) as tx:
            return self._load(tx, job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        employer: Optional[str] = None,
        worker: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs, oldest first."""
        with self.storage.transaction(readonly=True) as tx:
            return tx.list_jobs(
                status=status, employer=employer, worker=worker, limit=limit, offset=offset
            )

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Audit trail of a job, oldest first."""
        with self.storage.transaction(readonly=True) as tx:
            self._load(tx, job_id)
            return tx.get_transitions(job_id)

    def custody_balance(self, job_id: str) -> int:
        """Funds currently held in custody for a job."""
        with self.storage.transaction(readonly=True) as tx:
            job = self._load(tx, job_id)
            account = tx.get_account(job.custody) if job.custody else None
            return account.balance if account else 0

    def reconcile(self, batch_size: int = 500) -> CustodyReport:
        """Check every job's custody balance against its state.

        Unreleased jobs (pending or rejected) must hold exactly ``pay``;
        released jobs must hold nothing.
        """
        report = CustodyReport()
        offset = 0
        with self.storage.transaction(readonly=True) as tx:
            while True:
                jobs = tx.list_jobs(limit=batch_size, offset=offset)
                if not jobs:
                    break
                for job in jobs:
                    report.jobs_checked += 1
                    account = tx.get_account(job.custody) if job.custody else None
                    balance = account.balance if account else 0
                    expected = 0 if job.released else job.pay
                    if balance != expected:
                        report.violations.append(
                            f"job={job.id} custody={job.custody} "
                            f"balance={balance} expected={expected}"
                        )
                    report.locked_total += balance
                offset += batch_size

        if report.violations:
            logger.error(f"Custody reconciliation found {len(report.violations)} violation(s)")
            for violation in report.violations:
                logger.error(f"Custody violation | {violation}")
        else:
            logger.info(
                f"Custody reconciled | jobs={report.jobs_checked} | locked={report.locked_total}"
            )
        return report


def open_service(config: Optional[EscrowConfig] = None) -> EscrowService:
    """Build a service over the SQLite database named by ``config``.

    Configures the ``jobescrow`` logger at ``config.log_level``. Without a
    config, settings come from the environment.
    """
    config = config or EscrowConfig.from_env()
    setup_escrow_logging(config.log_level)
    storage = SQLiteEscrowStorage(config=config)
    logger.info(f"Escrow service opened | db={storage.db_path}")
    return EscrowService(storage=storage, config=config)
