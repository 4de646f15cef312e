from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Protocol

from copybot.decision_engine.pause import CopyPauseSwitch
from copybot.schemas import Holding, MarketResolution, RedemptionOutcome
from copybot.state_store.holdings import HoldingsLedger

PAUSE_REASON = "redemption"


class ResolutionGateway(Protocol):
    async def resolve(self, market_id: str) -> MarketResolution: ...


class RedemptionGateway(Protocol):
    async def redeem(self, resolution: MarketResolution, held_token_ids: list[str]) -> str: ...


class RedemptionCoordinator:
    """Periodic sweep of the holdings ledger that redeems positions in resolved markets.

    Copy trading is paused for the whole sweep and resumed in ``finally`` so a
    failing sweep can never leave the copy pipeline stuck.
    """

    def __init__(
        self,
        ledger: HoldingsLedger,
        pause: CopyPauseSwitch,
        resolver: ResolutionGateway,
        redeemer: RedemptionGateway,
        *,
        max_attempts: int = 3,
        retry_delay_s: float = 2.0,
    ) -> None:
        self._ledger = ledger
        self._pause = pause
        self._resolver = resolver
        self._redeemer = redeemer
        self._max_attempts = max_attempts
        self._retry_delay_s = retry_delay_s
        self._stop_event = asyncio.Event()
        self._log = logging.getLogger(self.__class__.__name__)

    async def run_forever(self, interval_s: float) -> None:
        self._log.info("redemption_scheduled interval_s=%s", interval_s)
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                await self.redeem_once()

    def stop(self) -> None:
        self._stop_event.set()

    async def redeem_once(self) -> RedemptionOutcome:
        outcome = RedemptionOutcome()
        self._pause.pause(PAUSE_REASON)
        self._log.info("copy_trading_paused reason=%s", PAUSE_REASON)
        try:
            await self._pause.wait_idle()
            await self._sweep(outcome)
        except Exception as exc:
            self._log.error(
                "redemption_sweep_error",
                extra={"extra_fields": {"error": str(exc), **outcome.as_dict()}},
                exc_info=True,
            )
        finally:
            self._pause.resume()
            self._log.info("copy_trading_resumed")

        self._log.info(
            "redemption_summary",
            extra={
                "extra_fields": {
                    **outcome.as_dict(),
                    "failed_markets": outcome.failed_markets,
                }
            },
        )
        return outcome

    async def _sweep(self, outcome: RedemptionOutcome) -> None:
        by_market: dict[str, list[Holding]] = {}
        for holding in self._ledger.entries():
            by_market.setdefault(holding.market_id, []).append(holding)
        self._log.info("redemption_sweep_start markets=%s", len(by_market))

        for market_id, holdings in by_market.items():
            outcome.total += 1
            try:
                resolution = await self._resolver.resolve(market_id)
            except Exception as exc:
                self._log.warning("resolution_lookup_failed market_id=%s error=%s", market_id, exc)
                continue
            if not resolution.resolved:
                self._log.info("market_unresolved market_id=%s", market_id)
                continue
            outcome.resolved += 1

            winners = [h for h in holdings if h.token_id in resolution.winning_token_ids]
            if not winners:
                for holding in holdings:
                    self._ledger.discard(holding.market_id, holding.token_id)
                self._log.info(
                    "market_resolved_against_holdings market_id=%s tokens=%s",
                    market_id,
                    [h.token_id for h in holdings],
                )
                continue

            tx_hash = await self._redeem_with_retry(resolution, [h.token_id for h in holdings])
            if tx_hash is None:
                outcome.failed += 1
                outcome.failed_markets.append(market_id)
                continue
            outcome.redeemed += 1
            for holding in holdings:
                self._ledger.discard(holding.market_id, holding.token_id)
            self._log.info(
                "market_redeemed",
                extra={
                    "extra_fields": {
                        "market_id": market_id,
                        "tx_hash": tx_hash,
                        "winning_quantity": sum((h.quantity for h in winners), Decimal("0")),
                    }
                },
            )

    async def _redeem_with_retry(self, resolution: MarketResolution, held_token_ids: list[str]) -> str | None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._redeemer.redeem(resolution, held_token_ids)
            except Exception as exc:
                self._log.warning(
                    "redeem_attempt_failed market_id=%s attempt=%s/%s error=%s",
                    resolution.market_id,
                    attempt,
                    self._max_attempts,
                    exc,
                )
                if attempt < self._max_attempts and self._retry_delay_s > 0:
                    await asyncio.sleep(self._retry_delay_s * attempt)
        self._log.error("redeem_exhausted market_id=%s attempts=%s", resolution.market_id, self._max_attempts)
        return None
