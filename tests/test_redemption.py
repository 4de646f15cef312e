from __future__ import annotations

import asyncio
import tempfile
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from copybot.config import SizingConfig
from copybot.decision_engine.pause import CopyPauseSwitch
from copybot.errors import RedemptionNotReady
from copybot.redemption.coordinator import RedemptionCoordinator
from copybot.schemas import MarketResolution, OrderResult, Side, TradeEvent
from copybot.state_store.holdings import HoldingsLedger
from copybot.watcher.trade_monitor import TradeMonitor

WALLET = "0x" + "7" * 40


class FakeResolver:
    def __init__(self, resolutions: dict[str, MarketResolution], pause: CopyPauseSwitch | None = None) -> None:
        self.resolutions = resolutions
        self.pause = pause
        self.calls: list[str] = []
        self.paused_during_call: list[bool] = []

    async def resolve(self, market_id: str) -> MarketResolution:
        self.calls.append(market_id)
        if self.pause is not None:
            self.paused_during_call.append(self.pause.check().active)
        if market_id not in self.resolutions:
            raise LookupError(f"market {market_id} not found")
        return self.resolutions[market_id]


class FakeRedeemer:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[str] = []

    async def redeem(self, resolution: MarketResolution, held_token_ids: list[str]) -> str:
        self.calls.append(resolution.market_id)
        if resolution.market_id in self.failing:
            raise RedemptionNotReady("payout not reported")
        return f"0xredeem-{resolution.market_id}"


class CrashingLedger(HoldingsLedger):
    def discard(self, market_id: str, token_id: str) -> Decimal:
        raise RuntimeError("disk gone")


def _resolved(market_id: str, winner: str, tokens: tuple[str, ...]) -> MarketResolution:
    return MarketResolution(
        market_id=market_id,
        resolved=True,
        token_ids=tokens,
        winning_token_ids=frozenset({winner}),
    )


class RedemptionCoordinatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = f"{self._tmp.name}/token-holding.json"
        self.ledger = HoldingsLedger(self.path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_sweep_isolates_failing_market(self) -> None:
        self.ledger.add("A", "a-yes", Decimal("5"))
        self.ledger.add("B", "b-yes", Decimal("3"))
        self.ledger.add("C", "c-yes", Decimal("2"))
        resolver = FakeResolver(
            {
                "A": _resolved("A", "a-yes", ("a-yes", "a-no")),
                "B": _resolved("B", "b-yes", ("b-yes", "b-no")),
                "C": MarketResolution(market_id="C", resolved=False),
            }
        )
        redeemer = FakeRedeemer(failing={"A"})
        pause = CopyPauseSwitch()
        coordinator = RedemptionCoordinator(
            self.ledger, pause, resolver, redeemer, max_attempts=3, retry_delay_s=0
        )

        outcome = asyncio.run(coordinator.redeem_once())

        self.assertEqual(outcome.as_dict(), {"total": 3, "resolved": 2, "redeemed": 1, "failed": 1})
        self.assertEqual(outcome.failed_markets, ["A"])
        self.assertEqual(redeemer.calls.count("A"), 3)
        self.assertEqual(redeemer.calls.count("B"), 1)
        self.assertEqual(self.ledger.get("A", "a-yes"), Decimal("5"))
        self.assertEqual(self.ledger.get("B", "b-yes"), Decimal("0"))
        self.assertEqual(self.ledger.get("C", "c-yes"), Decimal("2"))
        self.assertFalse(pause.check().active)

    def test_losing_positions_are_cleared_without_redeeming(self) -> None:
        self.ledger.add("A", "a-no", Decimal("5"))
        resolver = FakeResolver({"A": _resolved("A", "a-yes", ("a-yes", "a-no"))})
        redeemer = FakeRedeemer()
        coordinator = RedemptionCoordinator(self.ledger, CopyPauseSwitch(), resolver, redeemer, retry_delay_s=0)

        outcome = asyncio.run(coordinator.redeem_once())

        self.assertEqual(outcome.as_dict(), {"total": 1, "resolved": 1, "redeemed": 0, "failed": 0})
        self.assertEqual(redeemer.calls, [])
        self.assertEqual(self.ledger.entries(), [])

    def test_lookup_failure_counts_toward_total_only(self) -> None:
        self.ledger.add("missing", "t1", Decimal("1"))
        coordinator = RedemptionCoordinator(
            self.ledger, CopyPauseSwitch(), FakeResolver({}), FakeRedeemer(), retry_delay_s=0
        )
        outcome = asyncio.run(coordinator.redeem_once())
        self.assertEqual(outcome.as_dict(), {"total": 1, "resolved": 0, "redeemed": 0, "failed": 0})
        self.assertEqual(self.ledger.get("missing", "t1"), Decimal("1"))

    def test_copying_is_paused_during_sweep_and_resumed_after(self) -> None:
        self.ledger.add("B", "b-yes", Decimal("3"))
        pause = CopyPauseSwitch()
        resolver = FakeResolver({"B": _resolved("B", "b-yes", ("b-yes", "b-no"))}, pause=pause)
        coordinator = RedemptionCoordinator(self.ledger, pause, resolver, FakeRedeemer(), retry_delay_s=0)

        asyncio.run(coordinator.redeem_once())

        self.assertEqual(resolver.paused_during_call, [True])
        self.assertFalse(pause.check().active)
        self.assertEqual(pause.check().reason, "")

    def test_pause_is_cleared_when_sweep_fails_midway(self) -> None:
        ledger = CrashingLedger(self.path)
        ledger.add("B", "b-yes", Decimal("3"))
        ledger.add("C", "c-yes", Decimal("1"))
        pause = CopyPauseSwitch()
        resolver = FakeResolver(
            {
                "B": _resolved("B", "b-yes", ("b-yes", "b-no")),
                "C": _resolved("C", "c-yes", ("c-yes", "c-no")),
            }
        )
        coordinator = RedemptionCoordinator(ledger, pause, resolver, FakeRedeemer(), retry_delay_s=0)

        outcome = asyncio.run(coordinator.redeem_once())

        self.assertFalse(pause.check().active)
        # The sweep stops at the first market whose ledger update failed.
        self.assertEqual(resolver.calls, ["B"])
        self.assertEqual(outcome.total, 1)
        self.assertEqual(outcome.resolved, 1)

    def test_pause_is_cleared_when_sweep_is_cancelled(self) -> None:
        self.ledger.add("B", "b-yes", Decimal("3"))
        pause = CopyPauseSwitch()

        class SlowResolver:
            async def resolve(self, market_id: str) -> MarketResolution:
                await asyncio.sleep(10)
                raise AssertionError("unreachable")

        async def _run() -> None:
            coordinator = RedemptionCoordinator(self.ledger, pause, SlowResolver(), FakeRedeemer())
            task = asyncio.create_task(coordinator.redeem_once())
            await asyncio.sleep(0.01)
            self.assertTrue(pause.check().active)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        asyncio.run(_run())
        self.assertFalse(pause.check().active)

    def test_sweep_waits_for_in_flight_copy(self) -> None:
        self.ledger.add("B", "b-yes", Decimal("3"))
        order: list[str] = []

        async def _run() -> None:
            pause = CopyPauseSwitch()
            resolver = FakeResolver({"B": _resolved("B", "b-yes", ("b-yes", "b-no"))})
            coordinator = RedemptionCoordinator(self.ledger, pause, resolver, FakeRedeemer(), retry_delay_s=0)

            async def _copy() -> None:
                async with pause.copying():
                    await asyncio.sleep(0.05)
                    self.ledger.add("B", "b-yes", Decimal("1"))
                    order.append("copy_done")

            copy_task = asyncio.create_task(_copy())
            await asyncio.sleep(0)
            outcome = await coordinator.redeem_once()
            order.append(f"sweep_done:{len(resolver.calls)}")
            await copy_task
            self.assertEqual(outcome.redeemed, 1)

        asyncio.run(_run())
        self.assertEqual(order, ["copy_done", "sweep_done:1"])
        # The late buy was part of the redeemed position.
        self.assertEqual(self.ledger.entries(), [])

    def test_run_forever_sweeps_until_stopped(self) -> None:
        async def _run() -> int:
            resolver = FakeResolver({})
            coordinator = RedemptionCoordinator(self.ledger, CopyPauseSwitch(), resolver, FakeRedeemer())
            sweeps = 0
            original = coordinator.redeem_once

            async def _counting():
                nonlocal sweeps
                sweeps += 1
                return await original()

            coordinator.redeem_once = _counting  # type: ignore[method-assign]
            task = asyncio.create_task(coordinator.run_forever(0.01))
            await asyncio.sleep(0.05)
            coordinator.stop()
            await asyncio.wait_for(task, timeout=1)
            return sweeps

        self.assertGreaterEqual(asyncio.run(_run()), 1)


class RecordingCopier:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def copy_trade(self, event: TradeEvent, sizing: SizingConfig) -> OrderResult:
        self.calls.append(event.tx_hash)
        return OrderResult(success=True)


class TradeArrivingResolver:
    """Delivers a tracked trade while the sweep is resolving a market."""

    def __init__(self, monitor: TradeMonitor) -> None:
        self.monitor = monitor

    async def resolve(self, market_id: str) -> MarketResolution:
        await self.monitor.handle(_trade("0xduring"))
        return _resolved(market_id, "b-yes", ("b-yes", "b-no"))


def _trade(tx_hash: str) -> TradeEvent:
    return TradeEvent(
        wallet=WALLET,
        market_id="X",
        token_id="x-yes",
        side=Side.BUY,
        price=Decimal("0.5"),
        size=Decimal("2"),
        outcome="Yes",
        timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
        tx_hash=tx_hash,
    )


class PauseAcrossPipelinesTests(unittest.TestCase):
    def test_trade_during_failing_sweep_is_skipped_and_next_is_copied(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            ledger = CrashingLedger(f"{tmp}/token-holding.json")
            ledger.add("B", "b-yes", Decimal("3"))
            pause = CopyPauseSwitch()
            copier = RecordingCopier()
            monitor = TradeMonitor(WALLET, copier, SizingConfig(), pause)
            coordinator = RedemptionCoordinator(
                ledger, pause, TradeArrivingResolver(monitor), FakeRedeemer(), retry_delay_s=0
            )

            async def _run() -> None:
                await coordinator.redeem_once()
                await monitor.handle(_trade("0xafter"))

            asyncio.run(_run())

        self.assertEqual(copier.calls, ["0xafter"])
        self.assertFalse(pause.check().active)


if __name__ == "__main__":
    unittest.main()
