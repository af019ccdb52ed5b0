from __future__ import annotations

import secrets
from datetime import datetime
from typing import Protocol, Sequence, TypeVar

from profileauth.storage.models import utcnow

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> datetime: ...


class RandomSource(Protocol):
    def token_bytes(self, nbytes: int) -> bytes: ...

    def token_hex(self, nbytes: int) -> str: ...

    def randbelow(self, upper: int) -> int: ...

    def choice(self, seq: Sequence[T]) -> T: ...


class SystemClock:
    """Timezone-aware UTC wall clock."""

    def now(self) -> datetime:
        return utcnow()


class SystemRandomSource:
    """Cryptographically secure randomness from :mod:`secrets`."""

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)

    def token_hex(self, nbytes: int) -> str:
        return secrets.token_hex(nbytes)

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)

    def choice(self, seq: Sequence[T]) -> T:
        return secrets.choice(seq)
