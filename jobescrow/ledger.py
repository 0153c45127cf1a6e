"""
Ledger access for accounts outside the escrow state machine.

Funding a party's account and reading balances go through here. Transfers
between accounts only ever happen inside escrow operations.
"""

import logging
from typing import List, Optional

from jobescrow.errors import ValidationError
from jobescrow.logging_config import log_deposit
from jobescrow.models import Account, Transfer
from jobescrow.storage.base import EscrowStorage

logger = logging.getLogger(__name__)


class Ledger:
    """Balances and deposits over an escrow storage backend."""

    def __init__(self, storage: EscrowStorage):
        self.storage = storage

    def deposit(self, account_id: str, amount: int, memo: str = "deposit") -> Transfer:
        """Credit external funds to a party account, opening it if needed.

        Custody accounts cannot be topped up: their balance must always equal
        the pay of the job they hold.

        Raises:
            ValidationError: Bad amount, or the account is a custody account
        """
        if not account_id:
            raise ValidationError("Account id cannot be empty")
        with self.storage.transaction() as tx:
            existing = tx.get_account(account_id)
            if existing is not None and existing.is_custody:
                raise ValidationError(f"Cannot deposit into custody account {account_id}")
            record = tx.credit(account_id, amount, memo=memo)
        logger.info(f"Deposit | account={account_id[:12]}... | amount={amount}")
        log_deposit(account_id, amount)
        return record

    def balance(self, account_id: str) -> int:
        """Current balance; 0 for an account that does not exist."""
        account = self.get_account(account_id)
        return account.balance if account else 0

    def get_account(self, account_id: str) -> Optional[Account]:
        with self.storage.transaction(readonly=True) as tx:
            return tx.get_account(account_id)

    def history(self, account_id: str) -> List[Transfer]:
        """Transfers into or out of an account, oldest first."""
        with self.storage.transaction(readonly=True) as tx:
            return tx.list_transfers(account_id=account_id)
