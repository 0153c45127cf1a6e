"""Escrow storage backends.

- EscrowStorage / EscrowTransaction: the transaction contract
- InMemoryEscrowStorage: tests and local development
- SQLiteEscrowStorage: durable local storage
"""

from jobescrow.storage.base import EscrowStorage, EscrowTransaction
from jobescrow.storage.memory import InMemoryEscrowStorage
from jobescrow.storage.sqlite import SQLiteEscrowStorage

__all__ = [
    "EscrowStorage",
    "EscrowTransaction",
    "InMemoryEscrowStorage",
    "SQLiteEscrowStorage",
]
