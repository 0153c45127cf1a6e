"""
jobescrow - Two-party job escrow.

An employer deposits pay into custody; the worker is paid only when both
parties approve. Either party may reject instead, which locks the funds.
"""

from jobescrow.config import EscrowConfig
from jobescrow.errors import (
    AuthorizationError,
    DuplicateError,
    EscrowError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from jobescrow.identity import Credential, Ed25519Verifier, KeyPair, generate_key_pair
from jobescrow.ledger import Ledger
from jobescrow.models import Job, JobStateTransition, JobStatus
from jobescrow.service import (
    EscrowService,
    open_service,
    sign_create_job,
    sign_job_action,
)
from jobescrow.storage import InMemoryEscrowStorage, SQLiteEscrowStorage

try:
    from importlib.metadata import version

    __version__ = version("jobescrow")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    # Service
    "EscrowService",
    "open_service",
    "EscrowConfig",
    "Ledger",
    "sign_create_job",
    "sign_job_action",
    # Models
    "Job",
    "JobStatus",
    "JobStateTransition",
    # Identity
    "Credential",
    "KeyPair",
    "Ed25519Verifier",
    "generate_key_pair",
    # Storage
    "InMemoryEscrowStorage",
    "SQLiteEscrowStorage",
    # Errors
    "EscrowError",
    "AuthorizationError",
    "NotFoundError",
    "DuplicateError",
    "InsufficientFundsError",
    "InvalidStateError",
    "ValidationError",
]
