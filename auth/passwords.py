"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage is simpler and has no
compatibility shim.

The cost factor is a parameter so the store can take it from Settings
(BCRYPT_ROUNDS) and tests can drop it to the bcrypt minimum of 4.

Layer rule: no imports from api/, teams/, or notify/.
"""

from __future__ import annotations

from functools import lru_cache

import bcrypt

DEFAULT_ROUNDS = 12


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer
    caps password fields at 128 characters, and bcrypt 4.x raises instead of
    truncating, so the input is cut to 72 bytes here explicitly.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A malformed stored hash is a
    failed verification, not an error the caller has to handle.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=8)
def dummy_hash(rounds: int = DEFAULT_ROUNDS) -> str:
    """A throwaway hash with the same cost as real ones.

    Verifying against it when the account does not exist keeps the response
    time of "unknown email" equal to "wrong password". Cached per cost factor
    so only the first failed login pays for generating it.
    """
    return hash_password("teampass_timing_dummy", rounds)
