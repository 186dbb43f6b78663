import asyncio
from typing import Any

from xrpl.asyncio.clients import AsyncJsonRpcClient

from metarelayer.config import RelayerConfig
from metarelayer.errors import ConfigurationError
from metarelayer.instructions import Venue
from metarelayer.ledger import LedgerClient, XrplLedgerClient
from metarelayer.proof import ProofSource
from metarelayer.rebalancer import BalanceRebalancer
from metarelayer.relay import TransactionRelay
from metarelayer.signers import Signer, SignerPool


class MetaRelayer:
    """Everything one relayer process owns: pool, relay, rebalancer, venue."""

    def __init__(
        self,
        ledger: LedgerClient,
        pool: SignerPool,
        treasury: Signer,
        proofs: ProofSource,
        *,
        threshold: int,
        venue_address: str,
        call_value_drops: int = 1,
        confirm_timeout: float | None = None,
        config: RelayerConfig | None = None,
    ) -> None:
        # Fatal before anything can be relayed or rebalanced.
        pool.count()
        if any(s.address == treasury.address for s in pool):
            raise ConfigurationError(f"Treasury {treasury.address} is also a pool signer; it must not relay instructions")

        self.config = config
        self.ledger = ledger
        self.pool = pool
        self.treasury = treasury
        self.proofs = proofs
        self.relay = TransactionRelay(ledger, pool, confirm_timeout=confirm_timeout)
        self.rebalancer = BalanceRebalancer(ledger, pool, treasury, threshold, confirm_timeout=confirm_timeout)
        self.venue = Venue(self.relay, proofs, venue_address, call_value_drops=call_value_drops)

    @classmethod
    def from_config(cls, config: RelayerConfig, *, ledger: LedgerClient | None = None,
                    proofs: ProofSource | None = None) -> "MetaRelayer":
        pool = SignerPool.from_seeds(config.signer_seeds, algorithm=config.algorithm)
        treasury = Signer.from_seed(config.treasury_seed, algorithm=config.algorithm)
        if ledger is None:
            ledger = XrplLedgerClient(AsyncJsonRpcClient(config.rpc_url), rpc_timeout=config.rpc_timeout)
        if proofs is None:
            proofs = ProofSource(config.proof_base_url, timeout=config.proof_timeout)
        return cls(
            ledger,
            pool,
            treasury,
            proofs,
            threshold=config.threshold_drops,
            venue_address=config.venue_address,
            call_value_drops=config.call_value_drops,
            confirm_timeout=config.confirm_timeout,
            config=config,
        )

    @property
    def threshold(self) -> int:
        return self.rebalancer.threshold

    def snapshot_signers(self) -> dict[str, Any]:
        return {
            "count": self.pool.count(),
            "cursor": self.pool.cursor,
            "treasury": self.treasury.address,
            "signers": self.pool.snapshot(),
        }

    async def snapshot_balances(self) -> dict[str, Any]:
        treasury_balance, *balances = await asyncio.gather(
            self.ledger.get_balance(self.treasury.address),
            *(self.ledger.get_balance(s.address) for s in self.pool),
        )
        signers = []
        for s, balance in zip(self.pool, balances):
            signers.append({
                "index": s.index,
                "address": s.address,
                "balance": balance,
                "below_threshold": balance < self.threshold,
            })
        return {
            "threshold": self.threshold,
            "treasury": {"address": self.treasury.address, "balance": treasury_balance},
            "signers": signers,
        }

    async def aclose(self) -> None:
        await self.proofs.aclose()
