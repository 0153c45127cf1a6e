"""SQLite storage backend for the escrow job manager.

Each transaction opens its own connection and takes the database write lock
up front (``BEGIN IMMEDIATE``), so escrow operations are serialized across
threads and processes sharing the file. The block commits on success and
rolls back on any exception.
"""

import contextlib
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from jobescrow.config import EscrowConfig
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
from jobescrow.storage.schema import init_db
from jobescrow.utils import parse_datetime, utc_now

logger = logging.getLogger(__name__)


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        balance=int(row["balance"]),
        kind=row["kind"],
        job_id=row["job_id"],
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_transfer(row: sqlite3.Row) -> Transfer:
    return Transfer(
        id=row["id"],
        source=row["source"],
        destination=row["destination"],
        amount=int(row["amount"]),
        memo=row["memo"],
        job_id=row["job_id"],
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_transition(row: sqlite3.Row) -> JobStateTransition:
    return JobStateTransition(
        id=row["id"],
        job_id=row["job_id"],
        from_status=row["from_status"],
        to_status=row["to_status"],
        action=row["action"],
        actor=row["actor"],
        created_at=parse_datetime(row["created_at"]),
    )


class _SQLiteTransaction:
    """EscrowTransaction bound to one open connection."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    # === Jobs ===

    def get_job(self, job_id: str) -> Optional[Job]:
        row = self._conn.execute("SELECT record FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.from_dict(json.loads(row["record"])) if row else None

    def insert_job(self, job: Job) -> None:
        now = utc_now().isoformat()
        try:
            self._conn.execute(
                """
                INSERT INTO jobs (id, employer, worker, status, record, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.employer,
                    job.worker,
                    job.status.value,
                    json.dumps(job.to_dict()),
                    job.created_at.isoformat() if job.created_at else now,
                    job.updated_at.isoformat() if job.updated_at else now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateError(f"Job {job.id} already exists") from e

    def update_job(self, job: Job) -> None:
        cursor = self._conn.execute(
            "UPDATE jobs SET status = ?, record = ?, updated_at = ? WHERE id = ?",
            (
                job.status.value,
                json.dumps(job.to_dict()),
                (job.updated_at or utc_now()).isoformat(),
                job.id,
            ),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Job {job.id} not found")

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        employer: Optional[str] = None,
        worker: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        query = "SELECT record FROM jobs WHERE 1=1"
        params: list = []
        if status is not None:
            query += " AND status = ?"
            params.append(JobStatus(status).value)
        if employer is not None:
            query += " AND employer = ?"
            params.append(employer)
        if worker is not None:
            query += " AND worker = ?"
            params.append(worker)
        query += " ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        rows = self._conn.execute(query, params).fetchall()
        return [Job.from_dict(json.loads(row["record"])) for row in rows]

    # === Ledger ===

    def get_account(self, account_id: str) -> Optional[Account]:
        row = self._conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return _row_to_account(row) if row else None

    def open_account(self, account: Account) -> Account:
        try:
            self._conn.execute(
                """
                INSERT INTO accounts (id, kind, balance, job_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.kind.value,
                    str(account.balance),
                    account.job_id,
                    account.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateError(f"Account {account.id} already exists") from e
        return account

    def _ensure_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account is None:
            account = self.open_account(Account(id=account_id, kind=AccountKind.EXTERNAL))
        return account

    def _set_balance(self, account_id: str, balance: int) -> None:
        self._conn.execute(
            "UPDATE accounts SET balance = ? WHERE id = ?", (str(balance), account_id)
        )

    def _record_transfer(self, record: Transfer) -> Transfer:
        self._conn.execute(
            """
            INSERT INTO transfers (id, source, destination, amount, memo, job_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.source,
                record.destination,
                str(record.amount),
                record.memo,
                record.job_id,
                record.created_at.isoformat(),
            ),
        )
        return record

    def credit(
        self, account_id: str, amount: int, memo: str = "", job_id: Optional[str] = None
    ) -> Transfer:
        check_amount(amount)
        account = self._ensure_account(account_id)
        self._set_balance(account_id, account.balance + amount)
        return self._record_transfer(
            Transfer(destination=account_id, amount=amount, memo=memo, job_id=job_id)
        )

    def transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        memo: str = "",
        job_id: Optional[str] = None,
    ) -> Transfer:
        check_amount(amount)
        src = self.get_account(source)
        check_custody_binding(src, self.get_account(destination), job_id)
        balance = src.balance if src else 0
        if src is None or balance < amount:
            raise InsufficientFundsError(source, balance, amount)
        self._set_balance(source, balance - amount)
        dst = self._ensure_account(destination)
        self._set_balance(destination, dst.balance + amount)
        return self._record_transfer(
            Transfer(
                source=source,
                destination=destination,
                amount=amount,
                memo=memo,
                job_id=job_id,
            )
        )

    def list_transfers(
        self, account_id: Optional[str] = None, job_id: Optional[str] = None
    ) -> List[Transfer]:
        query = "SELECT * FROM transfers WHERE 1=1"
        params: list = []
        if account_id is not None:
            query += " AND (source = ? OR destination = ?)"
            params.extend([account_id, account_id])
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)
        query += " ORDER BY seq ASC"
        return [_row_to_transfer(row) for row in self._conn.execute(query, params).fetchall()]

    # === Replay protection ===

    def consume_nonce(self, identity: str, nonce: str) -> None:
        try:
            self._conn.execute(
                "INSERT INTO used_nonces (identity, nonce, used_at) VALUES (?, ?, ?)",
                (identity, nonce, utc_now().isoformat()),
            )
        except sqlite3.IntegrityError as e:
            raise AuthorizationError("Credential has already been used") from e

    def prune_nonces(self, used_before: datetime) -> int:
        cursor = self._conn.execute(
            "DELETE FROM used_nonces WHERE used_at < ?", (used_before.isoformat(),)
        )
        return cursor.rowcount

    # === Transitions ===

    def save_transition(self, transition: JobStateTransition) -> str:
        self._conn.execute(
            """
            INSERT INTO job_transitions
                (id, job_id, from_status, to_status, action, actor, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transition.id,
                transition.job_id,
                transition.from_status.value if transition.from_status else None,
                transition.to_status.value,
                transition.action.value,
                transition.actor,
                transition.created_at.isoformat(),
            ),
        )
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        rows = self._conn.execute(
            "SELECT * FROM job_transitions WHERE job_id = ? ORDER BY seq ASC", (job_id,)
        ).fetchall()
        return [_row_to_transition(row) for row in rows]


class SQLiteEscrowStorage:
    """File-backed escrow storage."""

    def __init__(self, db_path: Optional[Path] = None, config: Optional[EscrowConfig] = None):
        self.config = config or EscrowConfig()
        self.db_path = Path(db_path) if db_path else self.config.resolved_db_path
        if str(self.db_path) == ":memory:":
            raise ValueError("SQLiteEscrowStorage needs a file path; use InMemoryEscrowStorage")
        self.db_path = self.db_path.expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with contextlib.closing(self._get_conn()) as conn:
            init_db(conn)

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.config.busy_timeout_ms / 1000,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.config.busy_timeout_ms)}")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    @contextlib.contextmanager
    def transaction(self, readonly: bool = False):
        """Context manager that handles transactions AND closes connection.

        - Write lock acquired at BEGIN for write transactions
        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Could not connect to {self.db_path}: {e}") from e
        try:
            conn.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"Could not open transaction on {self.db_path}: {e}") from e

        try:
            yield _SQLiteTransaction(conn)
            conn.execute("COMMIT")
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e!r}")
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def close(self):
        """Close any resources.

        Connections are per-transaction, so there is nothing held open.
        """
        pass
