"""Password hashing: protocol, bcrypt (production), and simple SHA-256 (tests).

BcryptHasher is CPU-bound (cost 12 is roughly 200ms per call on commodity
hardware) and runs off the event loop using anyio.to_thread.run_sync(). Every
call is bounded by ``timeout_seconds``; a hash that does not finish in time
raises TimeoutError and the worker thread is abandoned.

SimpleHasher uses SHA-256 with a "simple$" prefix for instant hashing.
It is intended for tests only.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Protocol, runtime_checkable

import anyio
import bcrypt
from anyio import to_thread

DEFAULT_BCRYPT_ROUNDS = 12
DEFAULT_HASH_TIMEOUT_SECONDS = 5.0


@runtime_checkable
class PasswordHasher(Protocol):
    """Hash and verify passwords."""

    async def hash(self, plain: str) -> str: ...

    async def verify(self, plain: str, hashed: str) -> bool: ...


class BcryptHasher:
    """Production hasher using bcrypt (async, off-thread, bounded)."""

    def __init__(
        self,
        rounds: int = DEFAULT_BCRYPT_ROUNDS,
        timeout_seconds: float = DEFAULT_HASH_TIMEOUT_SECONDS,
    ) -> None:
        self._rounds = rounds
        self._timeout = timeout_seconds

    async def hash(self, plain: str) -> str:
        encoded = plain.encode("utf-8")
        salt = bcrypt.gensalt(rounds=self._rounds)
        with anyio.fail_after(self._timeout):
            return await to_thread.run_sync(
                lambda: bcrypt.hashpw(encoded, salt).decode("utf-8"),
                abandon_on_cancel=True,
            )

    async def verify(self, plain: str, hashed: str) -> bool:
        """Return False for malformed hashes rather than propagating a ValueError."""
        encoded_plain = plain.encode("utf-8")
        encoded_hash = hashed.encode("utf-8")
        try:
            with anyio.fail_after(self._timeout):
                return await to_thread.run_sync(
                    lambda: bcrypt.checkpw(encoded_plain, encoded_hash),
                    abandon_on_cancel=True,
                )
        except ValueError:
            return False


_SIMPLE_PREFIX = "simple$"


class SimpleHasher:
    """Fast SHA-256 hasher for tests. Not suitable for production use."""

    async def hash(self, plain: str) -> str:
        return _SIMPLE_PREFIX + hashlib.sha256(plain.encode("utf-8")).hexdigest()

    async def verify(self, plain: str, hashed: str) -> bool:
        if not hashed.startswith(_SIMPLE_PREFIX):
            return False
        expected = _SIMPLE_PREFIX + hashlib.sha256(plain.encode("utf-8")).hexdigest()
        return hmac.compare_digest(hashed, expected)


def get_hasher(
    name: str = "bcrypt",
    *,
    rounds: int = DEFAULT_BCRYPT_ROUNDS,
    timeout_seconds: float = DEFAULT_HASH_TIMEOUT_SECONDS,
) -> PasswordHasher:
    """Return a PasswordHasher by name ("bcrypt" or "simple")."""
    if name == "bcrypt":
        return BcryptHasher(rounds=rounds, timeout_seconds=timeout_seconds)
    if name == "simple":
        return SimpleHasher()
    raise ValueError(f"Unknown password hasher: {name!r}")
