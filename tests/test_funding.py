from __future__ import annotations

import asyncio
import unittest

from account_pool.errors import ConfigMissingError, FundingError
from account_pool.funding import FundingDistributor
from account_pool.models import Signer
from tests.helpers import FakeLedger, ScriptedRandom, build_records, no_sleep, test_config, treasury


def _distributor(ledger: FakeLedger, rng=None, **overrides) -> FundingDistributor:
    return FundingDistributor(
        test_config(**overrides),
        ledger,
        treasury=treasury(),
        rng=rng or ScriptedRandom(),
        sleep=no_sleep,
    )


class SplitShortfallTests(unittest.TestCase):
    def test_parts_respect_buffer_and_total(self) -> None:
        for seed in range(40):
            distributor = _distributor(FakeLedger(), rng=ScriptedRandom(seed=seed))
            parts = distributor.split_shortfall(1000)
            self.assertGreaterEqual(len(parts), 1)
            self.assertLessEqual(len(parts), 4)
            self.assertTrue(all(part >= 10 for part in parts), parts)
            self.assertLessEqual(sum(parts), 1000)

    def test_single_part_with_neutral_factor_covers_shortfall(self) -> None:
        distributor = _distributor(FakeLedger(), rng=ScriptedRandom(uniform=[1.0], randint=[1]))
        self.assertEqual(distributor.split_shortfall(1000), [1000])

    def test_part_is_capped_at_remaining(self) -> None:
        distributor = _distributor(FakeLedger(), rng=ScriptedRandom(uniform=[1.4], randint=[1]))
        self.assertEqual(distributor.split_shortfall(1000), [1000])

    def test_small_part_is_raised_to_buffer(self) -> None:
        distributor = _distributor(FakeLedger(), rng=ScriptedRandom(uniform=[0.6, 0.6], randint=[4]), min_buffer_amount=100)
        parts = distributor.split_shortfall(200)
        # 200 * 0.6 / 4 = 30 -> raised to 100; then 100 left is not above the buffer.
        self.assertEqual(parts, [100])

    def test_shortfall_at_buffer_needs_no_transfer(self) -> None:
        distributor = _distributor(FakeLedger())
        self.assertEqual(distributor.split_shortfall(10), [])


class FundOneTests(unittest.IsolatedAsyncioTestCase):
    async def test_funds_shortfall_from_treasury(self) -> None:
        ledger = FakeLedger(balances={"pub-acct0": 200})
        delays: list[float] = []

        async def _record_sleep(seconds: float) -> None:
            delays.append(seconds)

        distributor = FundingDistributor(
            test_config(),
            ledger,
            treasury=treasury(),
            rng=ScriptedRandom(uniform=[1.0, 2.5], randint=[1]),
            sleep=_record_sleep,
        )
        record = build_records(1)[0]
        sent = await distributor.fund_one(record)

        self.assertEqual(sent, 800)
        self.assertEqual(len(ledger.transfers), 1)
        source, to, amount = ledger.transfers[0]
        self.assertIn(source, {"pub-treasury0", "pub-treasury1"})
        self.assertEqual((to, amount), ("pub-acct0", 800))
        self.assertEqual(delays, [2.5])
        self.assertIn("pub-acct0", distributor.funded)

    async def test_already_funded_account_is_skipped(self) -> None:
        ledger = FakeLedger(balances={"pub-acct0": 800})
        distributor = _distributor(ledger)
        sent = await distributor.fund_one(build_records(1)[0])
        self.assertEqual(sent, 0)
        self.assertEqual(ledger.transfers, [])
        self.assertIn("pub-acct0", distributor.funded)

    async def test_concurrent_duplicates_check_balance_once(self) -> None:
        ledger = FakeLedger()
        distributor = _distributor(ledger)
        record = build_records(1)[0]
        await asyncio.gather(*(distributor.fund_one(record) for _ in range(5)))
        self.assertEqual(ledger.balance_calls, ["pub-acct0"])

    async def test_failure_keeps_claim_and_is_not_retried(self) -> None:
        ledger = FakeLedger()
        ledger.fail_transfer_to.add("pub-acct0")
        distributor = _distributor(ledger)
        record = build_records(1)[0]

        with self.assertRaises(FundingError):
            await distributor.fund_one(record)
        self.assertIn("pub-acct0", distributor.funded)
        self.assertIn("pub-acct0", distributor.failed)

        ledger.fail_transfer_to.clear()
        self.assertEqual(await distributor.fund_one(record), 0)
        self.assertEqual(ledger.balance_calls, ["pub-acct0"])

    async def test_requires_treasury(self) -> None:
        distributor = FundingDistributor(test_config(), FakeLedger(), treasury=[], sleep=no_sleep)
        with self.assertRaises(ConfigMissingError):
            await distributor.fund_one(build_records(1)[0])


class FundAllTests(unittest.IsolatedAsyncioTestCase):
    async def test_batches_bound_concurrency(self) -> None:
        ledger = FakeLedger()
        distributor = _distributor(ledger, funding_batch_size=2)
        records = build_records(5)
        await distributor.fund_all(records)
        self.assertEqual(ledger.max_in_flight, 2)
        self.assertEqual(distributor.funded, {record.public_id for record in records})

    async def test_failures_do_not_stop_later_batches(self) -> None:
        ledger = FakeLedger()
        ledger.fail_balance.add("pub-acct1")
        distributor = _distributor(ledger, funding_batch_size=2)
        records = build_records(4)

        with self.assertLogs("account_pool.funding", level="WARNING") as logs:
            await distributor.fund_all(records)

        funded_targets = {to for _, to, _ in ledger.transfers}
        self.assertEqual(funded_targets, {"pub-acct0", "pub-acct2", "pub-acct3"})
        self.assertTrue(any("Account2" in line for line in logs.output))

    async def test_skips_without_treasury(self) -> None:
        ledger = FakeLedger()
        distributor = FundingDistributor(test_config(), ledger, treasury=[], sleep=no_sleep)
        await distributor.fund_all(build_records(3))
        self.assertEqual(ledger.balance_calls, [])

    async def test_second_pass_only_checks_unclaimed(self) -> None:
        ledger = FakeLedger()
        distributor = _distributor(ledger)
        records = build_records(3)
        await distributor.fund_all(records[:2])
        await distributor.fund_all(records)
        self.assertEqual(sorted(ledger.balance_calls), ["pub-acct0", "pub-acct1", "pub-acct2"])


class SweepTests(unittest.IsolatedAsyncioTestCase):
    async def test_sweeps_balances_less_buffer(self) -> None:
        ledger = FakeLedger(balances={"pub-acct0": 500, "pub-acct1": 5})
        distributor = _distributor(ledger)
        sink = Signer("pub-sink", "sink", "sink")
        total = await distributor.sweep_to_sink(build_records(2), sink)
        self.assertEqual(total, 490)
        self.assertEqual(ledger.transfers, [("pub-acct0", "pub-sink", 490)])

    async def test_sweep_requires_sink(self) -> None:
        distributor = _distributor(FakeLedger())
        with self.assertRaises(ConfigMissingError):
            await distributor.sweep_to_sink(build_records(1), None)

    async def test_sweep_continues_past_failures(self) -> None:
        ledger = FakeLedger(balances={"pub-acct0": 500, "pub-acct1": 300})
        ledger.fail_balance.add("pub-acct0")
        distributor = _distributor(ledger)
        total = await distributor.sweep_to_sink(build_records(2), Signer("pub-sink", "sink"))
        self.assertEqual(total, 290)


if __name__ == "__main__":
    unittest.main()
