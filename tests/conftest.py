"""
Pytest fixtures for jobescrow tests.
"""

import logging
import uuid

import pytest

from jobescrow.config import EscrowConfig
from jobescrow.identity import generate_key_pair
from jobescrow.ledger import Ledger
from jobescrow.service import EscrowService, sign_create_job
from jobescrow.storage import InMemoryEscrowStorage, SQLiteEscrowStorage

EMPLOYER_FUNDS = 5000


@pytest.fixture(autouse=True)
def escrow_home(tmp_path, monkeypatch):
    """Keep logs and databases inside the test's temp directory."""
    monkeypatch.setenv("JOBESCROW_DATA_DIR", str(tmp_path / "escrow-home"))
    logger = logging.getLogger("jobescrow")
    logger.handlers.clear()
    yield tmp_path / "escrow-home"
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)


@pytest.fixture
def config():
    """Default escrow configuration."""
    return EscrowConfig()


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path, config):
    """Each storage backend in turn."""
    if request.param == "memory":
        backend = InMemoryEscrowStorage()
    else:
        backend = SQLiteEscrowStorage(db_path=tmp_path / "escrow.db", config=config)
    yield backend
    backend.close()


@pytest.fixture
def service(storage, config):
    """Escrow service over the parametrized storage."""
    return EscrowService(storage=storage, config=config)


@pytest.fixture
def ledger(storage):
    return Ledger(storage)


@pytest.fixture
def employer():
    return generate_key_pair()


@pytest.fixture
def worker():
    return generate_key_pair()


@pytest.fixture
def outsider():
    return generate_key_pair()


@pytest.fixture
def funded(ledger, employer):
    """Give the employer funds to escrow."""
    ledger.deposit(employer.identity, EMPLOYER_FUNDS)
    return ledger


@pytest.fixture
def make_job(service, funded, employer, worker):
    """Create a job co-signed by the default employer and worker.

    Returns a callable; the custody id is generated unless given.
    """

    def _make(job_id="j1", title="Build the thing", pay=1000, custody_id=None):
        custody_id = custody_id or f"custody-{uuid.uuid4().hex[:12]}"
        args = (job_id, title, pay, employer.identity, worker.identity, custody_id)
        return service.create_job(
            job_id,
            title,
            pay,
            employer=sign_create_job(employer, *args),
            worker=sign_create_job(worker, *args),
            custody_id=custody_id,
        )

    return _make
