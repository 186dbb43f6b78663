import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from xrpl.models import Transaction

import metarelayer.constants as C
from metarelayer.classifier import error_code, error_reason, is_insufficient_funds
from metarelayer.errors import AllSignersFailed, ConfirmationTimeout, SubmissionError
from metarelayer.ledger import Confirmation, LedgerClient, PendingTx
from metarelayer.signers import Signer, SignerPool

log = logging.getLogger("metarelayer.relay")


@dataclass(slots=True)
class Draft:
    """What an instruction builder hands back for a given signer."""
    transaction: Transaction
    context: dict[str, Any] = field(default_factory=dict)


Builder = Callable[[Signer], Awaitable[Draft]]


@dataclass(slots=True)
class RelayAttempt:
    signer_index: int
    signer_address: str
    tx_hash: str | None = None
    error: BaseException | None = None
    insufficient_funds: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class RelayResult:
    tx_hash: str
    ledger_index: int
    signer_index: int
    signer_address: str
    context: dict[str, Any]
    attempts: list[RelayAttempt]
    state: C.RelayState = C.RelayState.DONE


class TransactionRelay:
    """Submit one instruction through the pool, rotating past empty signers.

    States: TRYING(k) for k in [0, N), then one of DONE, FAILED (non-funds
    error, raised as SubmissionError) or EXHAUSTED (every signer out of funds,
    raised as AllSignersFailed). The cursor moves only on DONE.
    """

    def __init__(self, ledger: LedgerClient, pool: SignerPool, *, confirm_timeout: float | None = None) -> None:
        self.ledger = ledger
        self.pool = pool
        self.confirm_timeout = confirm_timeout

    async def _confirm(self, pending: PendingTx) -> Confirmation:
        if self.confirm_timeout is None:
            return await self.ledger.await_confirmation(pending)
        try:
            async with asyncio.timeout(self.confirm_timeout):
                return await self.ledger.await_confirmation(pending)
        except TimeoutError as e:
            raise ConfirmationTimeout(
                f"transaction {pending.tx_hash} not confirmed within {self.confirm_timeout}s",
                code="timeout",
            ) from e

    async def _attempt(self, signer: Signer, build: Builder, rec: RelayAttempt) -> tuple[Confirmation, Draft]:
        async with self.pool.lock_for(signer.index):
            draft = await build(signer)
            pending = await self.ledger.submit(signer, draft.transaction)
            rec.tx_hash = pending.tx_hash
            log.info("Tx hash: %s", pending.tx_hash)
            confirmation = await self._confirm(pending)
        return confirmation, draft

    async def relay(self, build: Builder) -> RelayResult:
        n = self.pool.count()
        ticket, start = await self.pool.begin()
        attempts: list[RelayAttempt] = []
        succeeded: int | None = None
        state, attempt = C.RelayState.TRYING, 0

        try:
            while state is C.RelayState.TRYING:
                if attempt >= n:
                    state = C.RelayState.EXHAUSTED
                    break

                idx = (start + attempt) % n
                signer = self.pool.at(idx)
                rec = RelayAttempt(signer_index=idx, signer_address=signer.address)
                attempts.append(rec)
                log.info("→ Trying signer index=%s address=%s (attempt %s/%s)", idx, signer.address, attempt + 1, n)

                try:
                    confirmation, draft = await self._attempt(signer, build, rec)
                except ConfirmationTimeout as e:
                    rec.error = e
                    e.signer_index, e.attempts = idx, attempts
                    state = C.RelayState.FAILED
                    raise
                except Exception as e:
                    rec.error = e
                    if is_insufficient_funds(e):
                        rec.insufficient_funds = True
                        log.warning(
                            "⚠️ Signer index=%s (%s) has insufficient funds (%s), trying next...",
                            idx, signer.address, error_code(e) or error_reason(e),
                        )
                        attempt += 1
                        continue
                    state = C.RelayState.FAILED
                    log.error("Signer index=%s failed, not rotating: %s", idx, error_reason(e))
                    raise SubmissionError(
                        error_reason(e), code=error_code(e), signer_index=idx, attempts=attempts
                    ) from e

                log.info("✓ Tx %s validated in ledger %s", confirmation.tx_hash, confirmation.ledger_index)
                state, succeeded = C.RelayState.DONE, idx
                return RelayResult(
                    tx_hash=confirmation.tx_hash,
                    ledger_index=confirmation.ledger_index,
                    signer_index=idx,
                    signer_address=signer.address,
                    context=draft.context,
                    attempts=attempts,
                )
        finally:
            await self.pool.finish(ticket, succeeded)

        log.error("All %s signers lack funds; nothing submitted", n)
        raise AllSignersFailed(attempts)
