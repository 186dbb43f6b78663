"""The venue's seven instruction types and how they are put on the ledger.

An instruction becomes a Payment of a nominal amount from the relaying
signer to the venue account, with one Memo: type is the entry point name,
data is the JSON argument object. The venue checks the trader's
authorization signature on-chain; nothing here validates it.
"""

import json
import logging
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field
from xrpl.models.transactions import Memo, Payment
from xrpl.utils import str_to_hex

import metarelayer.constants as C
from metarelayer.proof import ProofSource
from metarelayer.relay import Draft, RelayResult, TransactionRelay
from metarelayer.signers import Signer

log = logging.getLogger("metarelayer.venue")


class InstructionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    trader: str | None = None
    deadline: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class PositionReq(InstructionReq):
    id: int | None = None
    position_id: int | None = Field(default=None, alias="positionId")

    @property
    def ref(self) -> int:
        if self.id is not None:
            return self.id
        return self.position_id or 0


class OpenMarketReq(InstructionReq):
    asset_id: int = Field(alias="assetId")
    long_side: bool = Field(default=True, alias="longSide")
    leverage_x: int = Field(default=0, alias="leverageX")
    lots: int = 0
    sl_x6: str = Field(default="0", alias="slX6")
    tp_x6: str = Field(default="0", alias="tpX6")


class OpenLimitReq(OpenMarketReq):
    target_x6: str = Field(default="0", alias="targetX6")


class CloseMarketReq(PositionReq):
    asset_id: int = Field(alias="assetId")

    @property
    def ref(self) -> int:
        if self.position_id is not None:
            return self.position_id
        return self.id or 0


class CancelLimitReq(PositionReq):
    pass


class SetSLReq(PositionReq):
    new_sl_x6: str = Field(alias="newSLx6")


class SetTPReq(PositionReq):
    new_tp_x6: str = Field(alias="newTPx6")


class UpdateStopsReq(PositionReq):
    new_sl_x6: str = Field(alias="newSLx6")
    new_tp_x6: str = Field(alias="newTPx6")


def venue_call(signer: Signer, venue: str, entry: C.EntryPoint, args: dict[str, Any],
               value_drops: int = C.DEFAULT_CALL_VALUE_DROPS) -> Payment:
    return Payment(
        account=signer.address,
        destination=venue,
        amount=str(value_drops),
        memos=[
            Memo(
                memo_type=str_to_hex(entry.value),
                memo_data=str_to_hex(json.dumps(args, separators=(",", ":"))),
            )
        ],
    )


Args = Callable[[str], dict[str, Any]]


class Venue:
    def __init__(self, relay: TransactionRelay, proofs: ProofSource, address: str,
                 *, call_value_drops: int = C.DEFAULT_CALL_VALUE_DROPS) -> None:
        self.relay = relay
        self.proofs = proofs
        self.address = address
        self.call_value_drops = call_value_drops

    async def _call(self, entry: C.EntryPoint, req: InstructionReq, args: Args, context: Args) -> RelayResult:
        log.info("=== %s === %s", entry.value, req.model_dump(exclude={"signature"}))

        async def build(signer: Signer) -> Draft:
            trader = req.trader or signer.address
            log.info("Using trader address: %s", trader)
            tx = venue_call(signer, self.address, entry, args(trader), self.call_value_drops)
            return Draft(transaction=tx, context=context(trader))

        return await self.relay.relay(build)

    async def open_market(self, req: OpenMarketReq) -> RelayResult:
        proof = await self.proofs.fetch_proof(req.asset_id)
        return await self._call(
            C.EntryPoint.OPEN_MARKET,
            req,
            lambda trader: {
                "trader": trader,
                "proof": proof,
                "assetId": req.asset_id,
                "longSide": req.long_side,
                "leverageX": req.leverage_x,
                "lots": req.lots,
                "slX6": req.sl_x6,
                "tpX6": req.tp_x6,
                "deadline": req.deadline,
                "signature": req.signature,
            },
            lambda trader: {"trader": trader, "assetId": req.asset_id},
        )

    async def close_market(self, req: CloseMarketReq) -> RelayResult:
        proof = await self.proofs.fetch_proof(req.asset_id)
        return await self._call(
            C.EntryPoint.CLOSE_MARKET,
            req,
            lambda trader: {
                "trader": trader,
                "positionId": req.ref,
                "proof": proof,
                "deadline": req.deadline,
                "signature": req.signature,
            },
            lambda trader: {"trader": trader, "positionId": req.ref, "assetId": req.asset_id},
        )

    async def open_limit(self, req: OpenLimitReq) -> RelayResult:
        return await self._call(
            C.EntryPoint.OPEN_LIMIT,
            req,
            lambda trader: {
                "trader": trader,
                "assetId": req.asset_id,
                "longSide": req.long_side,
                "leverageX": req.leverage_x,
                "lots": req.lots,
                "targetX6": req.target_x6,
                "slX6": req.sl_x6,
                "tpX6": req.tp_x6,
                "deadline": req.deadline,
                "signature": req.signature,
            },
            lambda trader: {"trader": trader, "assetId": req.asset_id},
        )

    async def cancel_limit(self, req: CancelLimitReq) -> RelayResult:
        return await self._call(
            C.EntryPoint.CANCEL_LIMIT,
            req,
            lambda trader: {"trader": trader, "id": req.ref, "deadline": req.deadline, "signature": req.signature},
            lambda trader: {"trader": trader, "id": req.ref},
        )

    async def set_sl(self, req: SetSLReq) -> RelayResult:
        return await self._call(
            C.EntryPoint.SET_SL,
            req,
            lambda trader: {
                "trader": trader,
                "id": req.ref,
                "newSLx6": req.new_sl_x6,
                "deadline": req.deadline,
                "signature": req.signature,
            },
            lambda trader: {"trader": trader, "id": req.ref, "newSLx6": req.new_sl_x6},
        )

    async def set_tp(self, req: SetTPReq) -> RelayResult:
        return await self._call(
            C.EntryPoint.SET_TP,
            req,
            lambda trader: {
                "trader": trader,
                "id": req.ref,
                "newTPx6": req.new_tp_x6,
                "deadline": req.deadline,
                "signature": req.signature,
            },
            lambda trader: {"trader": trader, "id": req.ref, "newTPx6": req.new_tp_x6},
        )

    async def update_stops(self, req: UpdateStopsReq) -> RelayResult:
        return await self._call(
            C.EntryPoint.UPDATE_STOPS,
            req,
            lambda trader: {
                "trader": trader,
                "id": req.ref,
                "newSLx6": req.new_sl_x6,
                "newTPx6": req.new_tp_x6,
                "deadline": req.deadline,
                "signature": req.signature,
            },
            lambda trader: {
                "trader": trader,
                "id": req.ref,
                "newSLx6": req.new_sl_x6,
                "newTPx6": req.new_tp_x6,
            },
        )
