"""Shared fixtures: an in-memory ledger and ready-made pools/relayers."""

from __future__ import annotations

import asyncio
import hashlib
import json

import httpx
from xrpl.models import Transaction
from xrpl.models.transactions import Payment
from xrpl.wallet import Wallet

import metarelayer.constants as C
from metarelayer.errors import InsufficientFunds, LedgerError
from metarelayer.ledger import Confirmation, PendingTx
from metarelayer.proof import ProofSource
from metarelayer.relayer import MetaRelayer
from metarelayer.signers import Signer, SignerPool

# Standalone-mode genesis account, funded on any fresh local node.
GENESIS = {
    "address": "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh",
    "seed": "snoPBrXtMeMyMHUVTgbuqAfg1SUTb",
}
# Black hole account, the packaged default venue.
ACCOUNT_ZERO = "rrrrrrrrrrrrrrrrrrrrrhoLvTp"
VENUE = ACCOUNT_ZERO
PROOF = "0xfeedface"


class FakeLedger:
    """In-memory LedgerClient. Payments move drops between accounts at submit time.

    - `errors[address]` is raised on every submit from that address.
    - `hold`, when set to an unset Event, parks every confirmation until it is set.
    - `holds[address]` does the same for one account only.
    """

    def __init__(self, balances: dict[str, int] | None = None, *, fee: int = 10) -> None:
        self.balances: dict[str, int] = dict(balances or {})
        self.fee = fee
        self.errors: dict[str, BaseException] = {}
        self.attempted: list[str] = []
        self.submitted: list[tuple[str, Transaction]] = []
        self.hold: asyncio.Event | None = None
        self.holds: dict[str, asyncio.Event] = {}
        self.ledger_index = 1000

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def submit(self, signer: Signer, transaction: Transaction) -> PendingTx:
        self.attempted.append(signer.address)
        if signer.address in self.errors:
            raise self.errors[signer.address]

        amount = int(getattr(transaction, "amount", 0) or 0)
        balance = self.balances.get(signer.address, 0)
        if balance < amount + self.fee:
            raise InsufficientFunds(
                f"{signer.address} holds {balance}, needs {amount + self.fee}", code="tecUNFUNDED_PAYMENT"
            )
        self.balances[signer.address] = balance - amount - self.fee
        destination = getattr(transaction, "destination", None)
        if destination is not None:
            self.balances[destination] = self.balances.get(destination, 0) + amount

        self.submitted.append((signer.address, transaction))
        digest = hashlib.sha256(f"{signer.address}:{len(self.submitted)}".encode()).hexdigest().upper()
        return PendingTx(tx_hash=digest, account=signer.address, sequence=len(self.submitted),
                         engine_result=C.SUCCESS_RESULT)

    async def await_confirmation(self, pending: PendingTx) -> Confirmation:
        if self.hold is not None:
            await self.hold.wait()
        if pending.account in self.holds:
            await self.holds[pending.account].wait()
        self.ledger_index += 1
        return Confirmation(tx_hash=pending.tx_hash, ledger_index=self.ledger_index)

    def fail(self, signer: Signer, reason: str, code: str | None = None) -> LedgerError:
        err = LedgerError(reason, code=code)
        self.errors[signer.address] = err
        return err

    def submitted_by(self) -> list[str]:
        return [address for address, _ in self.submitted]


def make_signers(n: int) -> list[Signer]:
    return [Signer.from_wallet(Wallet.create(), index=i) for i in range(n)]


def make_pool(n: int) -> SignerPool:
    return SignerPool(make_signers(n))


def make_treasury() -> Signer:
    return Signer.from_wallet(Wallet.create())


def proof_source(handler=None) -> ProofSource:
    """ProofSource whose HTTP calls are answered by `handler` (default: a valid proof)."""
    def ok(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"proof": PROOF})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler or ok))
    return ProofSource("https://proofs.test/proof?pairs=", http=http)


def make_relayer(
    signer_balances: list[int],
    *,
    treasury_balance: int = 0,
    threshold: int = 500_000,
    fee: int = 10,
    proofs: ProofSource | None = None,
    confirm_timeout: float | None = None,
) -> tuple[MetaRelayer, FakeLedger]:
    pool = make_pool(len(signer_balances))
    treasury = make_treasury()
    balances = {s.address: b for s, b in zip(pool, signer_balances)}
    balances[treasury.address] = treasury_balance
    ledger = FakeLedger(balances, fee=fee)
    relayer = MetaRelayer(
        ledger,
        pool,
        treasury,
        proofs or proof_source(),
        threshold=threshold,
        venue_address=VENUE,
        confirm_timeout=confirm_timeout,
    )
    return relayer, ledger



def decode_call(payment: Payment) -> tuple[str, dict]:
    """Entry point and JSON args carried in a venue instruction's memo."""
    memo = payment.memos[0]
    return (
        bytes.fromhex(memo.memo_type).decode(),
        json.loads(bytes.fromhex(memo.memo_data).decode()),
    )
