"""Signer identities and the rotating pool that relays draw from."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from xrpl import CryptoAlgorithm
from xrpl.wallet import Wallet

from metarelayer.errors import ConfigurationError

log = logging.getLogger("metarelayer.signers")


@dataclass(frozen=True, slots=True)
class Signer:
    address: str
    wallet: Wallet = field(repr=False, compare=False)
    index: int | None = None  # None for identities outside the pool (treasury)

    @classmethod
    def from_seed(cls, seed: str, *, index: int | None = None,
                  algorithm: CryptoAlgorithm = CryptoAlgorithm.SECP256K1) -> "Signer":
        try:
            w = Wallet.from_seed(seed, algorithm=algorithm)
        except Exception as e:  # xrpl raises several unrelated types for a bad seed
            where = "treasury" if index is None else f"signer {index}"
            raise ConfigurationError(f"Invalid seed for {where}: {e}") from e
        return cls(address=w.address, wallet=w, index=index)

    @classmethod
    def from_wallet(cls, wallet: Wallet, *, index: int | None = None) -> "Signer":
        return cls(address=wallet.address, wallet=wallet, index=index)


class SignerPool:
    """Fixed, ordered signers plus the shared rotation cursor.

    The cursor only moves when a relay succeeds. Reads and writes of the
    cursor happen under one lock; each signer also has its own lock so one
    signer never has two transactions in flight out of sequence order.
    """

    def __init__(self, signers: Iterable[Signer]) -> None:
        self._signers: tuple[Signer, ...] = tuple(signers)
        self._cursor = 0
        self._lock = asyncio.Lock()
        self._signer_locks = [asyncio.Lock() for _ in self._signers]
        self._claims: dict[int, int] = {}  # ticket -> start index claimed by that relay
        self._next_ticket = 0
        self._applied_ticket = -1

    @classmethod
    def from_seeds(cls, seeds: Iterable[str], *,
                   algorithm: CryptoAlgorithm = CryptoAlgorithm.SECP256K1) -> "SignerPool":
        return cls(Signer.from_seed(s, index=i, algorithm=algorithm) for i, s in enumerate(seeds))

    def count(self) -> int:
        n = len(self._signers)
        if n == 0:
            raise ConfigurationError("No signers configured")
        return n

    def at(self, index: int) -> Signer:
        n = self.count()
        return self._signers[((index % n) + n) % n]

    def __iter__(self) -> Iterator[Signer]:
        return iter(self._signers)

    def __len__(self) -> int:
        return len(self._signers)

    @property
    def cursor(self) -> int:
        return self._cursor

    def lock_for(self, index: int) -> asyncio.Lock:
        return self._signer_locks[index % self.count()]

    def busy(self, index: int) -> bool:
        """Claimed as the start of an open relay call, or mid-transaction."""
        index %= self.count()
        return index in self._claims.values() or self._signer_locks[index].locked()

    async def begin(self) -> tuple[int, int]:
        """Register a relay call. Returns (ticket, start index).

        The start index is the first signer from the cursor onwards that is
        not busy, so it is the cursor itself when calls are sequential. When
        every signer is busy the call starts at the cursor and waits its turn.
        """
        n = self.count()
        async with self._lock:
            ticket = self._next_ticket
            self._next_ticket += 1
            start = next(
                (i % n for i in range(self._cursor, self._cursor + n) if not self.busy(i)),
                self._cursor,
            )
            self._claims[ticket] = start
            return ticket, start

    async def finish(self, ticket: int, succeeded: int | None) -> bool:
        """Close a relay call; on success move the cursor past the signer used.

        An older call finishing after a newer one has already advanced the
        cursor leaves it alone. Returns whether the cursor moved.
        """
        n = self.count()
        async with self._lock:
            self._claims.pop(ticket, None)
            if succeeded is None or ticket < self._applied_ticket:
                return False
            self._applied_ticket = ticket
            self._cursor = (succeeded + 1) % n
            log.debug("cursor -> %s (ticket %s)", self._cursor, ticket)
            return True

    def snapshot(self) -> list[dict]:
        return [
            {"index": s.index, "address": s.address, "next": s.index == self._cursor}
            for s in self._signers
        ]
