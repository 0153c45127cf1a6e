"""Logging setup for jobescrow.

Two outputs:
- the ``jobescrow`` logger, written to ``<data dir>/logs/local-YYYY-MM-DD.log``
- an append-only escrow event log, ``<data dir>/logs/escrow-events-YYYY-MM-DD.log``,
  with one line per deposit, transition and release
"""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from jobescrow.utils import get_escrow_home

LOGGER_NAME = "jobescrow"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_event_lock = threading.Lock()


def _log_dir() -> Path:
    log_dir = get_escrow_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_escrow_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``jobescrow`` logger.

    Adds a dated file handler, plus a console handler when running at DEBUG.
    Calling this more than once does not stack handlers.

    Args:
        level: Level name, case-insensitive. Unknown names fall back to INFO.

    Returns:
        The configured ``jobescrow`` logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    log_level = getattr(logging, str(level).upper(), None)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    logger.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = _log_dir() / f"local-{_today()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if log_level <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    return logger


def log_escrow_event(event_type: str, details: str, job_id: Optional[str] = None) -> None:
    """Append one line to the escrow event log.

    Format: ``<timestamp> | <event_type> | job=<job_id> | <details>``
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    line = f"{timestamp} | {event_type} | job={job_id or '-'} | {details}\n"
    event_file = _log_dir() / f"escrow-events-{_today()}.log"
    with _event_lock:
        with open(event_file, "a", encoding="utf-8") as f:
            f.write(line)


def log_deposit(account_id: str, amount: int, job_id: Optional[str] = None) -> None:
    """Record funds entering an account."""
    log_escrow_event("deposit", f"account={account_id[:12]}... amount={amount}", job_id)


def log_transition(
    job_id: str, from_status: Optional[str], to_status: str, action: str, actor: str
) -> None:
    """Record a job state transition."""
    log_escrow_event(
        "transition",
        f"action={action} from={from_status or '-'} to={to_status} actor={actor[:12]}...",
        job_id,
    )


def log_release(job_id: str, worker: str, amount: int) -> None:
    """Record custody funds released to the worker."""
    log_escrow_event("release", f"worker={worker[:12]}... amount={amount}", job_id)
