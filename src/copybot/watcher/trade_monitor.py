from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from copybot.config import SizingConfig
from copybot.decision_engine.pause import CopyPauseSwitch
from copybot.schemas import OrderResult, TradeEvent
from copybot.telemetry.copy_audit import CopyAuditLogger


class TradeCopier(Protocol):
    async def copy_trade(self, event: TradeEvent, sizing: SizingConfig) -> OrderResult: ...


class TradeMonitor:
    def __init__(
        self,
        target_wallet: str,
        builder: TradeCopier,
        sizing: SizingConfig,
        pause: CopyPauseSwitch,
        *,
        enabled: bool = True,
        audit: CopyAuditLogger | None = None,
    ) -> None:
        self._target_wallet = target_wallet.lower()
        self._builder = builder
        self._sizing = sizing
        self._pause = pause
        self._enabled = enabled
        self._audit = audit
        self._log = logging.getLogger(self.__class__.__name__)

    async def run(self, queue: asyncio.Queue[TradeEvent]) -> None:
        self._log.info("trade_monitor_started target_wallet=%s enabled=%s", self._target_wallet, self._enabled)
        while True:
            event = await queue.get()
            try:
                await self.handle(event)
            except Exception as exc:
                self._log.error("trade_monitor_error tx_hash=%s error=%s", event.tx_hash, exc, exc_info=True)
            finally:
                queue.task_done()

    async def handle(self, event: TradeEvent) -> OrderResult | None:
        if event.wallet.lower() != self._target_wallet:
            return None

        self._log.info(
            "trade_detected",
            extra={
                "extra_fields": {
                    "side": event.side,
                    "price": event.price,
                    "size": event.size,
                    "notional_usd": event.notional_usd,
                    "market": event.label,
                    "market_id": event.market_id,
                    "token_id": event.token_id,
                    "outcome": event.outcome,
                    "tx_hash": event.tx_hash,
                    "timestamp": event.timestamp,
                }
            },
        )
        if not self._enabled:
            self._log.info("trade_not_copied_disabled tx_hash=%s", event.tx_hash)
            self._audit_row(event, "skipped_disabled")
            return None

        # Registering as in-flight before checking the switch means a sweep
        # that pauses after this point waits for the copy to finish.
        async with self._pause.copying():
            state = self._pause.check()
            if state.active:
                self._log.info("trade_not_copied_paused tx_hash=%s reason=%s", event.tx_hash, state.reason)
                self._audit_row(event, "skipped_paused")
                return None
            try:
                result = await self._builder.copy_trade(event, self._sizing)
            except Exception as exc:
                self._log.error("copy_trade_crashed tx_hash=%s error=%s", event.tx_hash, exc, exc_info=True)
                result = OrderResult.failed("unexpected", str(exc))

        if result.success:
            self._log.info(
                "copy_trade_ok",
                extra={
                    "extra_fields": {
                        "tx_hash": event.tx_hash,
                        "order_id": result.order_id,
                        "order_tx_hashes": list(result.transaction_hashes),
                        "status": result.status,
                        "filled_amount": result.filled_amount,
                    }
                },
            )
        else:
            self._log.warning(
                "copy_trade_failed tx_hash=%s error_code=%s error=%s",
                event.tx_hash,
                result.error_code,
                result.error,
            )
        self._audit_row(event, "copied" if result.success else "copy_failed", result)
        return result

    def _audit_row(self, event: TradeEvent, action: str, result: OrderResult | None = None) -> None:
        if self._audit is None:
            return
        try:
            self._audit.record(event, action=action, result=result)
        except OSError as exc:
            self._log.warning("copy_audit_write_failed error=%s", exc)
