"""Configuration for the escrow job manager.

Values come from keyword arguments or from ``JOBESCROW_*`` environment
variables via :meth:`EscrowConfig.from_env`.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jobescrow.utils import get_escrow_home

logger = logging.getLogger(__name__)

# u64: the native funds unit is an unsigned 64-bit amount
MAX_PAY = 2**64 - 1

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


@dataclass
class EscrowConfig:
    """Escrow settings.

    Attributes:
        db_path: SQLite database file (default: <data dir>/escrow.db)
        max_title_length: Longest accepted job title
        max_job_id_length: Longest accepted job id
        credential_max_age_seconds: How long a signed credential stays valid
        clock_skew_seconds: Tolerance for credentials issued slightly in the future
        allow_reject_after_approval: Whether a pending job with one approval
            may still be rejected
        busy_timeout_ms: SQLite busy timeout
        log_level: Level passed to setup_escrow_logging
    """

    db_path: Optional[Path] = None
    max_title_length: int = 200
    max_job_id_length: int = 64
    credential_max_age_seconds: int = 300
    clock_skew_seconds: int = 30
    allow_reject_after_approval: bool = True
    busy_timeout_ms: int = 5000
    log_level: str = "INFO"

    def __post_init__(self):
        if self.db_path is not None:
            self.db_path = Path(self.db_path)
        if self.max_title_length <= 0:
            raise ValueError("max_title_length must be positive")
        if self.max_job_id_length <= 0:
            raise ValueError("max_job_id_length must be positive")
        if self.credential_max_age_seconds <= 0:
            raise ValueError("credential_max_age_seconds must be positive")
        if self.clock_skew_seconds < 0:
            raise ValueError("clock_skew_seconds cannot be negative")
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms cannot be negative")

    @property
    def resolved_db_path(self) -> Path:
        """Database path, defaulting into the data directory."""
        return self.db_path or (get_escrow_home() / "escrow.db")

    @classmethod
    def from_env(cls) -> "EscrowConfig":
        """Build a config from ``JOBESCROW_*`` environment variables."""
        db_path = os.environ.get("JOBESCROW_DB_PATH")
        config = cls(
            db_path=Path(db_path).expanduser() if db_path else None,
            max_title_length=_env_int("JOBESCROW_MAX_TITLE_LENGTH", 200),
            max_job_id_length=_env_int("JOBESCROW_MAX_JOB_ID_LENGTH", 64),
            credential_max_age_seconds=_env_int("JOBESCROW_CREDENTIAL_MAX_AGE", 300),
            clock_skew_seconds=_env_int("JOBESCROW_CLOCK_SKEW", 30),
            allow_reject_after_approval=_env_bool(
                "JOBESCROW_ALLOW_REJECT_AFTER_APPROVAL", True
            ),
            busy_timeout_ms=_env_int("JOBESCROW_BUSY_TIMEOUT_MS", 5000),
            log_level=os.environ.get("JOBESCROW_LOG_LEVEL", "INFO"),
        )
        logger.debug(f"Loaded escrow config from environment: {config}")
        return config
