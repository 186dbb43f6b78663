import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from xrpl.models.transactions import Payment

import metarelayer.constants as C
from metarelayer.classifier import error_code, error_reason
from metarelayer.errors import RebalanceInProgress, RebalanceShortfall, RelayerError
from metarelayer.ledger import LedgerClient, fmt_xrp
from metarelayer.signers import Signer, SignerPool

log = logging.getLogger("metarelayer.rebalancer")


@dataclass(slots=True)
class TopUp:
    index: int
    address: str
    prior_balance: int | None
    action: C.TopUpAction = C.TopUpAction.NONE
    amount: int = 0
    tx_hash: str | None = None
    ledger_index: int | None = None
    error: BaseException | None = None

    @property
    def reason(self) -> str | None:
        return error_reason(self.error) if self.error is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "address": self.address,
            "prior_balance": self.prior_balance,
            "action": self.action.value,
            "amount": self.amount,
            "tx_hash": self.tx_hash,
            "ledger_index": self.ledger_index,
            "reason": self.reason,
            "code": error_code(self.error) if self.error is not None else None,
        }


@dataclass(slots=True)
class RebalanceReport:
    threshold: int
    treasury: str
    treasury_start: int
    entries: list[TopUp] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def _with(self, action: C.TopUpAction) -> list[TopUp]:
        return [e for e in self.entries if e.action == action]

    @property
    def topped_up(self) -> list[TopUp]:
        return self._with(C.TopUpAction.TOPPED_UP)

    @property
    def failed(self) -> list[TopUp]:
        return self._with(C.TopUpAction.FAILED)

    @property
    def untouched(self) -> list[TopUp]:
        return self._with(C.TopUpAction.NONE)

    @property
    def transferred(self) -> int:
        return sum(e.amount for e in self.topped_up)

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "treasury": self.treasury,
            "treasury_start": self.treasury_start,
            "transferred": self.transferred,
            "topped_up": len(self.topped_up),
            "failed": len(self.failed),
            "untouched": len(self.untouched),
            "entries": [e.to_dict() for e in self.entries],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class BalanceRebalancer:
    """Top every pool signer up to `threshold` drops from the treasury.

    One pass per run(). A signer that cannot be funded is recorded and the
    pass moves on. The treasury balance is read again before every transfer
    rather than tracked locally, so spends made elsewhere are seen.
    Overlapping runs are refused with RebalanceInProgress.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        pool: SignerPool,
        treasury: Signer,
        threshold: int,
        *,
        confirm_timeout: float | None = None,
    ) -> None:
        self.ledger = ledger
        self.pool = pool
        self.treasury = treasury
        self.threshold = threshold
        self.confirm_timeout = confirm_timeout
        self._running = asyncio.Lock()
        self.last_report: RebalanceReport | None = None

    @property
    def running(self) -> bool:
        return self._running.locked()

    async def run(self) -> RebalanceReport:
        if self._running.locked():
            raise RebalanceInProgress()
        async with self._running:
            report = await self._run()
        self.last_report = report
        return report

    async def _transfer(self, signer: Signer, amount: int):
        fund_tx = Payment(
            account=self.treasury.address,
            destination=signer.address,
            amount=str(amount),
        )
        pending = await self.ledger.submit(self.treasury, fund_tx)
        log.info("   Tx hash: %s", pending.tx_hash)
        if self.confirm_timeout is None:
            return await self.ledger.await_confirmation(pending)
        async with asyncio.timeout(self.confirm_timeout):
            return await self.ledger.await_confirmation(pending)

    async def _top_up(self, signer: Signer, entry: TopUp) -> None:
        balance = await self.ledger.get_balance(signer.address)
        entry.prior_balance = balance
        log.info("[%s] %s -> balance = %s", signer.index, signer.address, fmt_xrp(balance))

        if balance >= self.threshold:
            log.info("   ✅ >= %s, nothing to send.", fmt_xrp(self.threshold))
            return

        missing = self.threshold - balance
        log.info("   ⚠️ < %s, missing %s", fmt_xrp(self.threshold), fmt_xrp(missing))

        treasury_balance = await self.ledger.get_balance(self.treasury.address)
        if treasury_balance <= missing:
            raise RebalanceShortfall(signer.address, missing, treasury_balance)

        log.info("   → Sending %s from %s to %s...", fmt_xrp(missing), self.treasury.address, signer.address)
        confirmation = await self._transfer(signer, missing)
        entry.action = C.TopUpAction.TOPPED_UP
        entry.amount = missing
        entry.tx_hash = confirmation.tx_hash
        entry.ledger_index = confirmation.ledger_index
        log.info("   ✓ Funded signer [%s] in ledger %s", signer.index, confirmation.ledger_index)

    async def _run(self) -> RebalanceReport:
        n = self.pool.count()
        treasury_start = await self.ledger.get_balance(self.treasury.address)
        log.info("Treasury %s balance: %s", self.treasury.address, fmt_xrp(treasury_start))
        if treasury_start <= self.threshold:
            log.warning(
                "⚠️ Treasury balance %s <= threshold %s, some signers may not get funded.",
                fmt_xrp(treasury_start), fmt_xrp(self.threshold),
            )
        log.info("Signers to check: %s, threshold per signer: %s", n, fmt_xrp(self.threshold))

        report = RebalanceReport(threshold=self.threshold, treasury=self.treasury.address, treasury_start=treasury_start)
        for signer in self.pool:
            entry = TopUp(index=signer.index, address=signer.address, prior_balance=None)
            report.entries.append(entry)
            if signer.address == self.treasury.address:
                log.info("[%s] %s is the treasury, skipping", signer.index, signer.address)
                continue
            try:
                await self._top_up(signer, entry)
            except RebalanceShortfall as e:
                entry.action, entry.error = C.TopUpAction.FAILED, e
                log.error("   ❌ %s", e)
            except (RelayerError, TimeoutError) as e:
                entry.action, entry.error = C.TopUpAction.FAILED, e
                log.error("   ❌ Error funding [%s] %s: %s", signer.index, signer.address, error_reason(e))
            except Exception as e:
                entry.action, entry.error = C.TopUpAction.FAILED, e
                log.exception("   ❌ Unexpected error funding [%s] %s", signer.index, signer.address)

        report.finished_at = time.time()
        log.info(
            "Rebalance done: %s topped up (%s), %s failed, %s untouched.",
            len(report.topped_up), fmt_xrp(report.transferred), len(report.failed), len(report.untouched),
        )
        return report


async def periodic_rebalance(rebalancer: BalanceRebalancer, stop: asyncio.Event, interval: float) -> None:
    while not stop.is_set():
        try:
            await rebalancer.run()
        except asyncio.CancelledError:
            raise
        except RebalanceInProgress:
            log.warning("[rebalance] previous run still in progress; skipping this tick")
        except Exception:
            log.exception("[rebalance] run failed; continuing")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
