"""
Security tests for the escrow job manager.

Covers impersonation, credential replay, forged or misdirected signatures,
and races between concurrent callers on the same job.
"""

import concurrent.futures
import dataclasses
from datetime import timedelta

import pytest

from jobescrow.errors import (
    AuthorizationError,
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from jobescrow.identity import Credential, Ed25519Verifier, generate_key_pair, sign_request
from jobescrow.models import JobAction, JobStatus
from jobescrow.service import EscrowService, job_payload, sign_create_job, sign_job_action
from jobescrow.utils import utc_now

# =============================================================================
# Impersonation
# =============================================================================


class TestImpersonation:
    def test_employer_cannot_approve_as_worker(self, service, make_job, employer):
        make_job()
        with pytest.raises(AuthorizationError, match="worker"):
            service.approve_as_worker(
                "j1", sign_job_action(employer, JobAction.APPROVE_WORKER, "j1")
            )
        assert service.get_job("j1").worker_approved is False

    def test_worker_cannot_approve_as_employer(self, service, make_job, worker):
        make_job()
        with pytest.raises(AuthorizationError, match="employer"):
            service.approve_as_employer(
                "j1", sign_job_action(worker, JobAction.APPROVE_EMPLOYER, "j1")
            )
        assert service.get_job("j1").employer_approved is False

    def test_outsider_cannot_approve(self, service, make_job, outsider):
        make_job()
        with pytest.raises(AuthorizationError):
            service.approve_as_worker(
                "j1", sign_job_action(outsider, JobAction.APPROVE_WORKER, "j1")
            )
        with pytest.raises(AuthorizationError):
            service.approve_as_employer(
                "j1", sign_job_action(outsider, JobAction.APPROVE_EMPLOYER, "j1")
            )

    def test_outsider_cannot_reject(self, service, make_job, outsider):
        make_job()
        with pytest.raises(AuthorizationError, match="employer or the worker"):
            service.reject("j1", sign_job_action(outsider, JobAction.REJECT, "j1"))

        job = service.get_job("j1")
        assert job.status == JobStatus.PENDING
        assert job.rejected_by is None

    def test_forged_identity(self, service, make_job, worker, outsider, funded):
        make_job()
        forged = dataclasses.replace(
            sign_job_action(outsider, JobAction.APPROVE_WORKER, "j1"),
            identity=worker.identity,
        )
        with pytest.raises(AuthorizationError):
            service.approve_as_worker("j1", forged)
        assert service.get_job("j1").worker_approved is False

    def test_create_cannot_name_an_unwilling_worker(self, service, funded, employer, worker):
        args = ("j1", "Job", 100, employer.identity, worker.identity, "c1")
        # The employer signs both slots; the worker never agreed
        forged = dataclasses.replace(sign_create_job(employer, *args), identity=worker.identity)
        with pytest.raises(AuthorizationError):
            service.create_job(
                "j1",
                "Job",
                100,
                employer=sign_create_job(employer, *args),
                worker=forged,
                custody_id="c1",
            )
        assert funded.balance("c1") == 0


# =============================================================================
# Misdirected and stale credentials
# =============================================================================


class TestCredentialBinding:
    def test_credential_bound_to_job(self, service, make_job, worker):
        make_job(job_id="j1")
        make_job(job_id="j2")
        credential = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")

        with pytest.raises(AuthorizationError):
            service.approve_as_worker("j2", credential)
        assert service.get_job("j2").worker_approved is False

    def test_credential_bound_to_action(self, service, make_job, worker):
        make_job()
        approval = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")

        with pytest.raises(AuthorizationError):
            service.reject("j1", approval)
        assert service.get_job("j1").status == JobStatus.PENDING

    def test_expired_credential(self, service, make_job, worker, config):
        make_job()
        stale = sign_request(
            worker,
            JobAction.APPROVE_WORKER.value,
            job_payload("j1"),
            issued_at=utc_now() - timedelta(seconds=config.credential_max_age_seconds + 60),
        )
        with pytest.raises(AuthorizationError, match="expired"):
            service.approve_as_worker("j1", stale)

    def test_plain_dict_is_not_a_credential(self, service, make_job, worker):
        make_job()
        as_dict = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1").to_dict()
        with pytest.raises(AuthorizationError):
            service.approve_as_worker("j1", as_dict)


# =============================================================================
# Replay
# =============================================================================


class TestReplay:
    def test_approval_replay(self, service, make_job, worker):
        make_job()
        credential = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")
        service.approve_as_worker("j1", credential)

        with pytest.raises(AuthorizationError, match="already been used"):
            service.approve_as_worker("j1", credential)

    def test_create_replay(self, service, funded, employer, worker):
        args = ("j1", "Job", 100, employer.identity, worker.identity, "c1")
        employer_sig = sign_create_job(employer, *args)
        worker_sig = sign_create_job(worker, *args)
        service.create_job("j1", "Job", 100, employer_sig, worker_sig, custody_id="c1")

        with pytest.raises(AuthorizationError, match="already been used"):
            service.create_job("j1", "Job", 100, employer_sig, worker_sig, custody_id="c1")
        assert funded.balance(employer.identity) == 5000 - 100

    def test_failed_operation_does_not_burn_nonce(self, service, make_job, worker):
        credential = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")
        with pytest.raises(NotFoundError):
            service.approve_as_worker("j1", credential)

        make_job()
        job = service.approve_as_worker("j1", credential)
        assert job.worker_approved is True

    def test_expiry_rechecked_when_nonce_is_spent(self, service, make_job, worker, monkeypatch):
        make_job()
        credential = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")
        later = utc_now() + timedelta(seconds=service.config.credential_max_age_seconds + 1)
        monkeypatch.setattr("jobescrow.service.utc_now", lambda: later)

        with pytest.raises(AuthorizationError, match="expired"):
            service.approve_as_worker("j1", credential)
        assert service.get_job("j1").worker_approved is False

    def test_stale_nonces_are_pruned(
        self, service, storage, config, make_job, employer, worker, monkeypatch
    ):
        make_job()
        first = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")
        service.approve_as_worker("j1", first)

        window = config.credential_max_age_seconds + config.clock_skew_seconds
        later = utc_now() + timedelta(seconds=window + 60)
        monkeypatch.setattr("jobescrow.service.utc_now", lambda: later)
        service.verifier = Ed25519Verifier(config, clock=lambda: later)
        approval = sign_request(
            employer, JobAction.APPROVE_EMPLOYER.value, job_payload("j1"), issued_at=later
        )
        service.approve_as_employer("j1", approval)

        with storage.transaction() as tx:
            # Consumed before the window: forgotten
            tx.consume_nonce(worker.identity, first.nonce)
            with pytest.raises(AuthorizationError):
                tx.consume_nonce(employer.identity, approval.nonce)


# =============================================================================
# Custody isolation
# =============================================================================


class TestCustodyIsolation:
    def test_custody_id_cannot_be_a_key(self, service, make_job, funded, employer):
        shadow = generate_key_pair()
        with pytest.raises(ValidationError, match="public key"):
            make_job(custody_id=shadow.identity)

        assert funded.balance(employer.identity) == 5000
        assert funded.get_account(shadow.identity) is None

    def test_custody_cannot_fund_another_job(self, service, storage, make_job):
        job = make_job(job_id="j1", pay=1000)

        for other_job in ("j2", None):
            with pytest.raises(AuthorizationError, match="bound to job j1"):
                with storage.transaction() as tx:
                    tx.transfer(job.custody, "accomplice", 1000, job_id=other_job)

        assert service.custody_balance("j1") == 1000

    def test_custody_cannot_receive_for_another_job(
        self, service, storage, make_job, funded, employer
    ):
        job = make_job(job_id="j1", pay=1000)

        with pytest.raises(AuthorizationError, match="bound to job j1"):
            with storage.transaction() as tx:
                tx.transfer(employer.identity, job.custody, 10, job_id="j2")

        assert service.custody_balance("j1") == 1000
        assert funded.balance(employer.identity) == 4000

    def test_custody_moves_only_for_its_own_job(self, service, make_job, funded, worker, employer):
        job = make_job(job_id="j1", pay=1000)
        make_job(job_id="j2", pay=500)
        for job_id in ("j2", "j1"):
            service.approve_as_worker(
                job_id, sign_job_action(worker, JobAction.APPROVE_WORKER, job_id)
            )
            service.approve_as_employer(
                job_id, sign_job_action(employer, JobAction.APPROVE_EMPLOYER, job_id)
            )

        assert funded.balance(worker.identity) == 1500
        assert funded.balance(job.custody) == 0
        assert service.reconcile().ok


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    def test_concurrent_final_approvals_release_once(
        self, service, make_job, funded, employer, worker
    ):
        job_ids = [f"job-{i}" for i in range(4)]
        for job_id in job_ids:
            make_job(job_id=job_id, pay=100)

        calls = []
        for job_id in job_ids:
            worker_cred = sign_job_action(worker, JobAction.APPROVE_WORKER, job_id)
            employer_cred = sign_job_action(employer, JobAction.APPROVE_EMPLOYER, job_id)
            calls.append((service.approve_as_worker, job_id, worker_cred))
            calls.append((service.approve_as_employer, job_id, employer_cred))

        with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
            futures = [executor.submit(fn, job_id, cred) for fn, job_id, cred in calls]
            for future in futures:
                future.result()

        for job_id in job_ids:
            job = service.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert service.custody_balance(job_id) == 0
        assert funded.balance(worker.identity) == 400
        releases = [t for t in funded.history(worker.identity) if t.memo == "release"]
        assert len(releases) == 4
        assert service.reconcile().ok

    def test_concurrent_replay_succeeds_once(self, service, make_job, worker):
        make_job()
        credential = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")
        results = []
        errors = []

        def approve():
            try:
                service.approve_as_worker("j1", credential)
                results.append(True)
            except AuthorizationError as e:
                errors.append(e)

        with concurrent.futures.ThreadPoolExecutor(max_workers=5) as executor:
            futures = [executor.submit(approve) for _ in range(5)]
            concurrent.futures.wait(futures)

        assert len(results) == 1, f"Replay accepted {len(results)} times"
        assert len(errors) == 4

    def test_concurrent_reject_and_approve(self, service, make_job, funded, employer, worker):
        make_job()
        approve_worker_cred = sign_job_action(worker, JobAction.APPROVE_WORKER, "j1")
        service.approve_as_worker("j1", approve_worker_cred)

        outcomes = []

        def run(fn, credential):
            try:
                outcomes.append(fn("j1", credential).status)
            except InvalidStateError:
                outcomes.append("refused")

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(
                    run,
                    service.approve_as_employer,
                    sign_job_action(employer, JobAction.APPROVE_EMPLOYER, "j1"),
                ),
                executor.submit(
                    run, service.reject, sign_job_action(worker, JobAction.REJECT, "j1")
                ),
            ]
            concurrent.futures.wait(futures)

        assert outcomes.count("refused") == 1
        final = service.get_job("j1")
        if final.status == JobStatus.COMPLETED:
            assert funded.balance(worker.identity) == 1000
            assert service.custody_balance("j1") == 0
        else:
            assert final.status == JobStatus.REJECTED
            assert funded.balance(worker.identity) == 0
            assert service.custody_balance("j1") == 1000

    def test_concurrent_creates_with_same_id(self, service, funded, employer, worker):
        def create(n):
            custody_id = f"custody-{n}"
            args = ("shared", "Job", 500, employer.identity, worker.identity, custody_id)
            try:
                service.create_job(
                    "shared",
                    "Job",
                    500,
                    employer=sign_create_job(employer, *args),
                    worker=sign_create_job(worker, *args),
                    custody_id=custody_id,
                )
                return "created"
            except DuplicateError:
                return "duplicate"

        with concurrent.futures.ThreadPoolExecutor(max_workers=5) as executor:
            outcomes = list(executor.map(create, range(5)))

        assert outcomes.count("created") == 1
        assert outcomes.count("duplicate") == 4
        assert funded.balance(employer.identity) == 5000 - 500


# =============================================================================
# Pluggable identity
# =============================================================================


class _TrustingVerifier:
    """Accepts any credential at face value."""

    def verify(self, credential: Credential, action: str, payload) -> str:
        return credential.identity


def test_custom_verifier_is_used(storage, config, funded, employer, worker):
    service = EscrowService(storage=storage, verifier=_TrustingVerifier(), config=config)
    unsigned = {
        role: Credential(identity=key.identity, nonce=role, issued_at=utc_now(), signature="")
        for role, key in (("employer", employer), ("worker", worker))
    }

    job = service.create_job(
        "j1", "Job", 100, unsigned["employer"], unsigned["worker"], custody_id="c1"
    )
    assert job.employer == employer.identity
    assert service.custody_balance("j1") == 100
