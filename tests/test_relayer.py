from unittest import IsolatedAsyncioTestCase, TestCase

from xrpl import CryptoAlgorithm
from xrpl.wallet import Wallet

from metarelayer.config import RelayerConfig
from metarelayer.errors import ConfigurationError
from metarelayer.relayer import MetaRelayer
from metarelayer.signers import SignerPool

from tests.helpers import ACCOUNT_ZERO, GENESIS, FakeLedger, make_pool, make_relayer, make_treasury, proof_source


class TestWiring(TestCase):
    def test_empty_pool_is_fatal(self):
        with self.assertRaises(ConfigurationError):
            MetaRelayer(FakeLedger(), SignerPool([]), make_treasury(), proof_source(),
                        threshold=1, venue_address=ACCOUNT_ZERO)

    def test_treasury_may_not_relay(self):
        pool = make_pool(2)
        with self.assertRaises(ConfigurationError):
            MetaRelayer(FakeLedger(), pool, pool.at(1), proof_source(), threshold=1, venue_address=ACCOUNT_ZERO)

    def test_from_config(self):
        config = RelayerConfig(
            rpc_url="http://node:5005",
            signer_seeds=(GENESIS["seed"],),
            treasury_seed=Wallet.create(algorithm=CryptoAlgorithm.SECP256K1).seed,
            threshold_drops=500_000,
            venue_address=ACCOUNT_ZERO,
            proof_base_url="https://proofs.test/?p=",
            call_value_drops=3,
        )
        relayer = MetaRelayer.from_config(config, ledger=FakeLedger(), proofs=proof_source())
        self.assertEqual(relayer.pool.at(0).address, GENESIS["address"])
        self.assertEqual(relayer.threshold, 500_000)
        self.assertEqual(relayer.venue.call_value_drops, 3)
        self.assertIs(relayer.config, config)


class TestSnapshots(IsolatedAsyncioTestCase):
    async def test_balances(self):
        relayer, _ = make_relayer([100, 600_000], treasury_balance=7, threshold=500_000)
        snap = await relayer.snapshot_balances()
        self.assertEqual(snap["threshold"], 500_000)
        self.assertEqual(snap["treasury"]["balance"], 7)
        self.assertEqual([s["balance"] for s in snap["signers"]], [100, 600_000])
        self.assertEqual([s["below_threshold"] for s in snap["signers"]], [True, False])

    async def test_signers(self):
        relayer, _ = make_relayer([1, 2, 3])
        snap = relayer.snapshot_signers()
        self.assertEqual(snap["count"], 3)
        self.assertEqual(snap["cursor"], 0)
        self.assertEqual(snap["treasury"], relayer.treasury.address)
        await relayer.aclose()
