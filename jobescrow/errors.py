"""Exception hierarchy for jobescrow.

Every error raised inside an escrow operation aborts the surrounding storage
transaction; nothing is committed and the error reaches the caller unchanged.
"""


class EscrowError(Exception):
    """Base exception for escrow errors."""

    pass


class ValidationError(EscrowError, ValueError):
    """Input failed validation (bad id, title, amount, party)."""

    pass


class AuthorizationError(EscrowError):
    """Caller identity does not match the party the operation requires."""

    pass


class NotFoundError(EscrowError):
    """Job id does not resolve to an existing record."""

    pass


class DuplicateError(EscrowError):
    """Job id or custody account already exists."""

    pass


class InsufficientFundsError(EscrowError):
    """A transfer exceeds the available balance of its source account."""

    def __init__(self, account_id: str, balance: int, amount: int, message: str = ""):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            message
            or f"Insufficient funds in account {account_id}: balance={balance}, requested={amount}"
        )


class CustodyMismatchError(InsufficientFundsError):
    """Custody balance for a job does not match its escrowed pay."""

    pass


class InvalidStateError(EscrowError):
    """Operation attempted on a job whose state does not allow it."""

    pass


class StorageError(EscrowError):
    """Storage backend failure."""

    pass


class CryptoError(EscrowError):
    """Key handling or signing failed."""

    pass


class SignatureError(AuthorizationError):
    """Signature verification failed."""

    pass
