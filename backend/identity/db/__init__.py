"""SQLite persistence layer: connection, transactions, and repositories."""

from identity.db.account_repository import SqliteAccountRepository
from identity.db.connection import Database, Transaction
from identity.db.session_repository import SqliteSessionRepository

__all__ = [
    "Database",
    "SqliteAccountRepository",
    "SqliteSessionRepository",
    "Transaction",
]
