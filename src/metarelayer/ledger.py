import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.asyncio.transaction import autofill_and_sign
from xrpl.clients import XRPLRequestFailureException
from xrpl.models import SubmitOnly, Transaction
from xrpl.models.requests import AccountInfo, ServerState, Tx
from xrpl.utils import drops_to_xrp

import metarelayer.constants as C
from metarelayer.errors import InsufficientFunds, LedgerError
from metarelayer.signers import Signer

log = logging.getLogger("metarelayer.ledger")


@dataclass(slots=True)
class PendingTx:
    tx_hash: str
    account: str
    sequence: int | None = None
    last_ledger_seq: int | None = None
    engine_result: str | None = None
    created_at: float = field(default_factory=time.time)

    def __str__(self):
        return f"{self.tx_hash} -- {self.account} -- seq={self.sequence}"


@dataclass(slots=True, frozen=True)
class Confirmation:
    tx_hash: str
    ledger_index: int
    result: str = C.SUCCESS_RESULT


class LedgerClient(Protocol):
    async def get_balance(self, address: str) -> int: ...
    async def submit(self, signer: Signer, transaction: Transaction) -> PendingTx: ...
    async def await_confirmation(self, pending: PendingTx) -> Confirmation: ...


def ledger_error(code: str | None, reason: str) -> LedgerError:
    """Build the right LedgerError subclass for a structured code."""
    if code in C.INSUFFICIENT_FUNDS_CODES:
        return InsufficientFunds(reason, code=code)
    return LedgerError(reason, code=code)


class XrplLedgerClient:
    """LedgerClient over an XRP Ledger node's JSON-RPC API.

    Balances and amounts are integer drops. Fees, sequence numbers and
    LastLedgerSequence come from xrpl-py's autofill.
    """

    def __init__(
        self,
        client: AsyncJsonRpcClient,
        *,
        rpc_timeout: float = C.RPC_TIMEOUT,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        poll_interval: float = C.POLL_INTERVAL,
    ) -> None:
        self.client = client
        self.rpc_timeout = rpc_timeout
        self.submit_timeout = submit_timeout
        self.poll_interval = poll_interval

    async def _rpc(self, req, *, t: float | None = None):
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)
        except httpx.TimeoutException as e:
            raise TimeoutError(f"{type(req).__name__} request timed out: {e}") from e
        except (httpx.HTTPError, OSError) as e:
            raise LedgerError(f"{type(req).__name__} request failed: {e}") from e

    async def get_balance(self, address: str) -> int:
        r = await self._rpc(AccountInfo(account=address, ledger_index="validated"))
        if not r.is_successful():
            error = r.result.get("error")
            if error == C.ACCOUNT_NOT_FOUND:
                return 0
            raise ledger_error(error, r.result.get("error_message") or f"account_info failed for {address}: {error}")
        return int(r.result["account_data"]["Balance"])

    async def validated_ledger_index(self) -> int:
        ss = await self._rpc(ServerState())
        return ss.result["state"]["validated_ledger"]["seq"]

    async def submit(self, signer: Signer, transaction: Transaction) -> PendingTx:
        try:
            signed = await autofill_and_sign(transaction, self.client, signer.wallet)
        except XRPLRequestFailureException as e:
            raise ledger_error(e.error, e.error_message or str(e)) from e
        except (httpx.HTTPError, OSError) as e:
            raise LedgerError(f"autofill failed for {signer.address}: {e}") from e

        p = PendingTx(
            tx_hash=signed.get_hash(),
            account=signer.address,
            sequence=signed.sequence,
            last_ledger_seq=signed.last_ledger_sequence,
        )
        try:
            resp = await self._rpc(SubmitOnly(tx_blob=signed.blob()), t=self.submit_timeout)
        except TimeoutError:
            # The node may have taken the blob; validation or expiry settles it.
            log.warning("Submit of %s timed out, outcome unknown; tracking it as pending", p)
            return p

        res = resp.result
        if not resp.is_successful():
            raise ledger_error(res.get("error"), res.get("error_message") or f"submit failed: {res.get('error')}")

        er = p.engine_result = res.get("engine_result")
        p.tx_hash = res.get("tx_json", {}).get("hash") or p.tx_hash
        reason = res.get("engine_result_message") or f"submit rejected: {er}"
        if er in C.ACCEPTED_ENGINE_RESULTS:
            log.debug("Submitted %s (%s)", p, er)
            return p
        if er in C.HELD_FUNDS_RESULTS:
            await self._await_held(p, reason)
            return p
        raise ledger_error(er, reason)

    async def _await_held(self, pending: PendingTx, reason: str) -> None:
        """Wait out a ter* funds result. Held by the node, it can still apply later.

        Returns if it validates after all; raises InsufficientFunds only once
        its LastLedgerSequence has passed and it can no longer apply.
        """
        if pending.last_ledger_seq is None:
            raise LedgerError(f"{reason} (held without LastLedgerSequence, outcome unknown)",
                              code=pending.engine_result)
        log.info("%s held by the node (%s) until ledger %s", pending.tx_hash, pending.engine_result,
                 pending.last_ledger_seq)
        try:
            await self.await_confirmation(pending)
        except LedgerError as e:
            if e.code != C.EXPIRED_RESULT:
                raise
            raise InsufficientFunds(reason, code=pending.engine_result) from e

    async def await_confirmation(self, pending: PendingTx) -> Confirmation:
        """Poll until the transaction is validated or its LastLedgerSequence passes.

        There is no overall time limit here; callers wanting one wrap this call.
        """
        while True:
            try:
                r = await self._rpc(Tx(transaction=pending.tx_hash))
            except (asyncio.TimeoutError, LedgerError) as e:
                log.debug("tx lookup for %s failed, retrying: %s", pending.tx_hash, e)
                await asyncio.sleep(self.poll_interval)
                continue

            result: dict[str, Any] = r.result
            if r.is_successful() and result.get("validated"):
                meta = result.get("meta") or {}
                outcome = meta.get("TransactionResult") if isinstance(meta, dict) else None
                ledger_index = int(result["ledger_index"])
                if outcome != C.SUCCESS_RESULT:
                    raise ledger_error(outcome, f"transaction {pending.tx_hash} failed in ledger {ledger_index}: {outcome}")
                return Confirmation(tx_hash=pending.tx_hash, ledger_index=ledger_index, result=outcome)

            if pending.last_ledger_seq is not None:
                try:
                    latest = await self.validated_ledger_index()
                except (asyncio.TimeoutError, LedgerError):
                    latest = None
                if latest is not None and latest > pending.last_ledger_seq:
                    raise LedgerError(
                        f"transaction {pending.tx_hash} expired: not validated by ledger {pending.last_ledger_seq}",
                        code=C.EXPIRED_RESULT,
                    )

            await asyncio.sleep(self.poll_interval)

    async def describe(self) -> dict[str, Any]:
        ss = await self._rpc(ServerState())
        state = ss.result.get("state", {})
        return {
            "network_id": state.get("network_id"),
            "build_version": state.get("build_version"),
            "validated_ledger": state.get("validated_ledger", {}).get("seq"),
        }


def fmt_xrp(drops: int) -> str:
    return f"{drops_to_xrp(str(drops))} XRP"
