"""Password hashing collaborator. The core only ever calls `hash` and `verify`."""

from __future__ import annotations

from typing import Protocol

import bcrypt


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, digest: str) -> bool: ...


class BcryptHasher:
    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds

    def hash(self, plaintext: str) -> str:
        # bcrypt has a 72-byte limit; schema validation already caps length.
        pw_bytes = plaintext.encode("utf-8")[:72]
        return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        pw_bytes = plaintext.encode("utf-8")[:72]
        try:
            return bcrypt.checkpw(pw_bytes, digest.encode("utf-8"))
        except (ValueError, TypeError):
            return False
