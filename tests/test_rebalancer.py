"""BalanceRebalancer runs against the in-memory ledger."""

import asyncio
from unittest import IsolatedAsyncioTestCase

from metarelayer.constants import TopUpAction
from metarelayer.errors import RebalanceInProgress, RebalanceShortfall
from metarelayer.rebalancer import periodic_rebalance

from tests.helpers import make_relayer


class TestRebalance(IsolatedAsyncioTestCase):
    async def test_example_run(self):
        # 0.5 XRP threshold; signers at 0.2, 0.6, 0.1; treasury 1.0
        relayer, ledger = make_relayer([200_000, 600_000, 100_000], treasury_balance=1_000_000,
                                       threshold=500_000, fee=0)
        report = await relayer.rebalancer.run()

        self.assertEqual([e.action for e in report.entries],
                         [TopUpAction.TOPPED_UP, TopUpAction.NONE, TopUpAction.TOPPED_UP])
        self.assertEqual([e.amount for e in report.entries], [300_000, 0, 400_000])
        self.assertEqual([e.prior_balance for e in report.entries], [200_000, 600_000, 100_000])
        self.assertEqual(len(report.topped_up), 2)
        self.assertEqual(len(report.untouched), 1)
        self.assertEqual(report.transferred, 700_000)
        self.assertEqual(report.treasury_start, 1_000_000)
        self.assertEqual(ledger.balances[relayer.treasury.address], 300_000)
        for signer in relayer.pool:
            self.assertGreaterEqual(ledger.balances[signer.address], 500_000)
        self.assertIs(relayer.rebalancer.last_report, report)

    async def test_second_run_transfers_nothing(self):
        relayer, ledger = make_relayer([200_000, 600_000, 100_000], treasury_balance=1_000_000)
        await relayer.rebalancer.run()
        transfers = len(ledger.submitted)

        report = await relayer.rebalancer.run()
        self.assertEqual(len(ledger.submitted), transfers)
        self.assertEqual(report.transferred, 0)
        self.assertEqual(len(report.untouched), 3)

    async def test_treasury_exhausted_for_last_signer(self):
        relayer, ledger = make_relayer([100_000, 100_000, 0], treasury_balance=1_000_000, threshold=500_000)
        report = await relayer.rebalancer.run()

        self.assertEqual([e.action for e in report.entries],
                         [TopUpAction.TOPPED_UP, TopUpAction.TOPPED_UP, TopUpAction.FAILED])
        last = report.entries[2]
        self.assertIsInstance(last.error, RebalanceShortfall)
        self.assertIn("treasury exhausted", last.reason)
        self.assertEqual(last.error.missing, 500_000)
        self.assertEqual(last.amount, 0)
        self.assertEqual(len(ledger.submitted), 2)

    async def test_treasury_reread_each_signer(self):
        relayer, ledger = make_relayer([0, 0], treasury_balance=10_000_000, threshold=500_000)
        original = ledger.get_balance
        reads = []

        async def counting(address):
            reads.append(address)
            return await original(address)

        ledger.get_balance = counting
        await relayer.rebalancer.run()
        # start, then once before each transfer
        self.assertEqual(reads.count(relayer.treasury.address), 3)

    async def test_low_treasury_warns_and_continues(self):
        relayer, _ = make_relayer([600_000], treasury_balance=100, threshold=500_000)
        with self.assertLogs("metarelayer.rebalancer", level="WARNING") as logs:
            report = await relayer.rebalancer.run()
        self.assertTrue(any("Treasury balance" in line for line in logs.output))
        self.assertEqual(report.entries[0].action, TopUpAction.NONE)

    async def test_one_signer_error_does_not_abort(self):
        relayer, ledger = make_relayer([0, 0, 0], treasury_balance=10_000_000, threshold=500_000)
        second = relayer.pool.at(1)
        original = ledger.get_balance

        async def flaky(address):
            if address == second.address:
                raise ConnectionError("node went away")
            return await original(address)

        ledger.get_balance = flaky
        report = await relayer.rebalancer.run()

        self.assertEqual([e.action for e in report.entries],
                         [TopUpAction.TOPPED_UP, TopUpAction.FAILED, TopUpAction.TOPPED_UP])
        self.assertEqual(report.entries[1].reason, "node went away")
        self.assertIsNone(report.entries[1].prior_balance)

    async def test_treasury_in_pool_is_skipped(self):
        relayer, ledger = make_relayer([0, 0], treasury_balance=10_000_000)
        relayer.rebalancer.treasury = relayer.pool.at(1)
        ledger.balances[relayer.pool.at(1).address] = 10_000_000

        report = await relayer.rebalancer.run()
        self.assertEqual([e.action for e in report.entries], [TopUpAction.TOPPED_UP, TopUpAction.NONE])
        self.assertEqual(len(ledger.submitted), 1)

    async def test_overlapping_run_refused(self):
        relayer, ledger = make_relayer([0], treasury_balance=10_000_000)
        ledger.hold = asyncio.Event()

        first = asyncio.create_task(relayer.rebalancer.run())
        while not ledger.submitted:
            await asyncio.sleep(0)
        self.assertTrue(relayer.rebalancer.running)
        with self.assertRaises(RebalanceInProgress):
            await relayer.rebalancer.run()

        ledger.hold.set()
        report = await first
        self.assertEqual(len(report.topped_up), 1)
        self.assertFalse(relayer.rebalancer.running)

    async def test_report_to_dict(self):
        relayer, _ = make_relayer([100_000, 0], treasury_balance=150_000, threshold=500_000)
        d = (await relayer.rebalancer.run()).to_dict()
        self.assertEqual(d["failed"], 2)
        self.assertEqual(d["entries"][0]["action"], "failed")
        self.assertIsNone(d["entries"][0]["code"])
        self.assertIsNotNone(d["finished_at"])


class TestPeriodic(IsolatedAsyncioTestCase):
    async def test_runs_until_stopped(self):
        relayer, _ = make_relayer([0], treasury_balance=10_000_000)
        stop = asyncio.Event()
        task = asyncio.create_task(periodic_rebalance(relayer.rebalancer, stop, interval=0.01))
        while relayer.rebalancer.last_report is None:
            await asyncio.sleep(0.005)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        self.assertEqual(len(relayer.rebalancer.last_report.topped_up), 1)
