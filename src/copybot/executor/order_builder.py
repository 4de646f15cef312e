from __future__ import annotations

import logging
from dataclasses import replace
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from copybot.config import SizingConfig
from copybot.errors import HoldingsError, is_balance_or_allowance_error
from copybot.schemas import (
    MarketOrderIntent,
    OrderResult,
    OrderType,
    Side,
    SideEffectResult,
    TradeEvent,
)
from copybot.state_store.holdings import HoldingsLedger

# Statuses the CLOB reports for orders that matched at least partially.
FILLED_STATUSES = frozenset({"matched", "filled", "partially_filled"})
LEDGER_ERROR = "ledger_error"


class ExecutionGateway(Protocol):
    async def create_and_post_market_order(self, intent: MarketOrderIntent) -> dict[str, Any]: ...

    async def update_balance_allowance(self) -> None: ...

    async def get_collateral_balance(self) -> Decimal: ...


class TokenApprover(Protocol):
    async def approve_tokens_after_buy(self) -> SideEffectResult: ...


class TradeOrderBuilder:
    def __init__(
        self,
        gateway: ExecutionGateway,
        ledger: HoldingsLedger,
        approver: TokenApprover | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._approver = approver
        self._log = logging.getLogger(self.__class__.__name__)

    async def copy_trade(self, event: TradeEvent, sizing: SizingConfig) -> OrderResult:
        try:
            if event.side == Side.SELL:
                return await self._copy_sell(event, sizing)
            return await self._copy_buy(event, sizing)
        except HoldingsError as exc:
            self._log.error("copy_trade_ledger_unavailable market_id=%s error=%s", event.market_id, exc)
            return OrderResult.failed(LEDGER_ERROR, str(exc))
        except Exception as exc:
            return await self._handle_failure(exc)

    async def place_market_buy(
        self,
        token_id: str,
        amount: Decimal,
        *,
        order_type: OrderType = OrderType.FAK,
        tick_size: str = "0.01",
        neg_risk: bool = False,
        price: Decimal | None = None,
    ) -> OrderResult:
        intent = MarketOrderIntent(
            token_id=token_id,
            side=Side.BUY,
            amount=amount,
            order_type=order_type,
            price=price,
            tick_size=tick_size,
            neg_risk=neg_risk,
        )
        return await self._place(intent)

    async def place_market_sell(
        self,
        token_id: str,
        amount: Decimal,
        *,
        order_type: OrderType = OrderType.FAK,
        tick_size: str = "0.01",
        neg_risk: bool = False,
        price: Decimal | None = None,
    ) -> OrderResult:
        intent = MarketOrderIntent(
            token_id=token_id,
            side=Side.SELL,
            amount=amount,
            order_type=order_type,
            price=price,
            tick_size=tick_size,
            neg_risk=neg_risk,
        )
        return await self._place(intent)

    async def _place(self, intent: MarketOrderIntent) -> OrderResult:
        try:
            response = await self._gateway.create_and_post_market_order(intent)
        except Exception as exc:
            error = str(exc)
            self._log.warning(
                "manual_order_failed side=%s token_id=%s amount=%s error=%s",
                intent.side.value,
                intent.token_id,
                intent.amount,
                error,
            )
            return OrderResult.failed(_classify_error(error), error, intent)
        return _success(intent, response)

    async def _copy_sell(self, event: TradeEvent, sizing: SizingConfig) -> OrderResult:
        held = self._ledger.get(event.market_id, event.token_id)
        if held <= 0:
            self._log.warning(
                "sell_skipped_no_holdings market_id=%s token_id=%s",
                event.market_id,
                event.token_id,
            )
            return OrderResult.failed("no_holdings", "No holdings available to sell")

        # Full exit: the whole held quantity is sold regardless of the source size.
        intent = MarketOrderIntent(
            token_id=event.token_id,
            side=Side.SELL,
            amount=held,
            order_type=sizing.order_type,
            tick_size=sizing.tick_size,
            neg_risk=sizing.neg_risk,
        )
        self._log.info(
            "placing_sell_order shares=%s order_type=%s token_id=%s",
            held,
            intent.order_type.value,
            intent.token_id,
        )
        response = await self._gateway.create_and_post_market_order(intent)
        self._check_status(response)

        sold = _to_decimal(response.get("makingAmount"))
        if sold is None:
            sold = held
        elif sold != held:
            self._log.warning(
                "sell_fill_mismatch requested=%s sold=%s market_id=%s token_id=%s",
                held,
                sold,
                event.market_id,
                event.token_id,
            )
        if sold > 0:
            try:
                remaining = self._ledger.remove(event.market_id, event.token_id, sold)
            except HoldingsError as exc:
                return self._unreconciled(event, intent, response, sold, exc)
            self._log.info(
                "holdings_removed market_id=%s token_id=%s sold=%s remaining=%s",
                event.market_id,
                event.token_id,
                sold,
                remaining,
            )
        else:
            self._log.warning("sell_nothing_filled market_id=%s token_id=%s", event.market_id, event.token_id)

        result = _success(intent, response, filled_amount=sold)
        self._log.info(
            "sell_order_executed order_id=%s sold=%s status=%s",
            result.order_id or "N/A",
            sold,
            result.status or "N/A",
        )
        return result

    async def _copy_buy(self, event: TradeEvent, sizing: SizingConfig) -> OrderResult:
        amount = buy_amount(event, sizing)
        self._log.info(
            "building_buy_order source_size=%s source_price=%s amount=%s token_id=%s",
            event.size,
            event.price,
            amount,
            event.token_id,
        )
        if amount <= 0:
            return OrderResult.failed("invalid_amount", f"Computed order amount {amount} is not positive")

        refresh = await _best_effort("update_balance_allowance", self._gateway.update_balance_allowance)
        if not refresh.ok:
            self._log.warning("balance_allowance_refresh_failed error=%s", refresh.error)

        available = await self._gateway.get_collateral_balance()
        self._log.info("wallet_balance usdc=%s", available)
        if available <= 0:
            self._log.warning("buy_skipped_no_balance required=%s available=%s", amount, available)
            return OrderResult.failed(
                "insufficient_balance",
                f"Insufficient USDC balance. Available: {available}",
            )
        if available < amount:
            self._log.warning(
                "buy_amount_clamped required=%s available=%s",
                amount,
                available,
            )
            amount = available

        intent = MarketOrderIntent(
            token_id=event.token_id,
            side=Side.BUY,
            amount=amount,
            order_type=sizing.order_type,
            tick_size=sizing.tick_size,
            neg_risk=sizing.neg_risk,
        )
        self._log.info(
            "placing_buy_order usdc=%s order_type=%s token_id=%s",
            amount,
            intent.order_type.value,
            intent.token_id,
        )
        response = await self._gateway.create_and_post_market_order(intent)
        self._check_status(response)

        received = _to_decimal(response.get("takingAmount"))
        estimated = received is None or received <= 0
        if estimated:
            price = event.price if event.price > 0 else Decimal("1")
            received = amount / price
        ledger_error: HoldingsError | None = None
        if received > 0:
            try:
                self._ledger.add(event.market_id, event.token_id, received)
            except HoldingsError as exc:
                ledger_error = exc
            else:
                self._log.log(
                    logging.WARNING if estimated else logging.INFO,
                    "holdings_added%s market_id=%s token_id=%s tokens=%s",
                    "_estimated" if estimated else "",
                    event.market_id,
                    event.token_id,
                    received,
                )
        else:
            self._log.warning("buy_no_tokens_estimated market_id=%s token_id=%s", event.market_id, event.token_id)

        if self._approver is not None:
            approval = await _best_effort("approve_tokens_after_buy", self._approver.approve_tokens_after_buy)
            if not approval.ok:
                self._log.warning("post_buy_approval_failed error=%s", approval.error)

        if ledger_error is not None:
            return self._unreconciled(event, intent, response, received, ledger_error)
        result = _success(intent, response, filled_amount=received)
        self._log.info(
            "buy_order_executed order_id=%s tokens=%s status=%s",
            result.order_id or "N/A",
            received,
            result.status or "N/A",
        )
        return result

    def _unreconciled(
        self,
        event: TradeEvent,
        intent: MarketOrderIntent,
        response: dict[str, Any],
        filled: Decimal,
        exc: HoldingsError,
    ) -> OrderResult:
        # The exchange already filled the order; only the local record is stale.
        filled_result = _success(intent, response, filled_amount=filled)
        self._log.error(
            "order_filled_ledger_not_updated",
            extra={
                "extra_fields": {
                    "side": intent.side.value,
                    "market_id": event.market_id,
                    "token_id": event.token_id,
                    "filled_amount": filled,
                    "order_id": filled_result.order_id,
                    "error": str(exc),
                }
            },
        )
        return replace(
            filled_result,
            success=False,
            error_code=LEDGER_ERROR,
            error=f"Order filled but holdings were not updated: {exc}",
        )

    def _check_status(self, response: dict[str, Any]) -> None:
        status = str(response.get("status") or "")
        if status and status.lower() not in FILLED_STATUSES:
            self._log.warning("order_may_not_have_filled status=%s", status)

    async def _handle_failure(self, exc: Exception) -> OrderResult:
        error = str(exc)
        code = _classify_error(error)
        if code == "balance_allowance":
            self._log.error("order_failed_balance_allowance error=%s", error)
            try:
                balance = await self._gateway.get_collateral_balance()
                self._log.info("wallet_balance usdc=%s", balance)
                self._log.info("balance_allowance_resync_attempt")
                await self._gateway.update_balance_allowance()
            except Exception as diag_exc:
                self._log.error("balance_diagnostic_failed error=%s", diag_exc)
        self._log.error("copy_trade_failed error_code=%s error=%s", code, error)
        return OrderResult.failed(code, error)


def buy_amount(event: TradeEvent, sizing: SizingConfig) -> Decimal:
    amount = event.price * event.size * Decimal(str(sizing.size_multiplier))
    if sizing.max_order_amount is not None:
        amount = min(amount, Decimal(str(sizing.max_order_amount)))
    return amount


async def _best_effort(name: str, call: Callable[[], Awaitable[Any]]) -> SideEffectResult:
    try:
        outcome = await call()
    except Exception as exc:
        return SideEffectResult(name=name, ok=False, error=str(exc))
    if isinstance(outcome, SideEffectResult):
        return outcome
    return SideEffectResult(name=name, ok=True)


def _classify_error(error: str) -> str:
    if is_balance_or_allowance_error(error):
        return "balance_allowance"
    return "gateway_rejection"


def _success(
    intent: MarketOrderIntent,
    response: dict[str, Any],
    *,
    filled_amount: Decimal | None = None,
) -> OrderResult:
    hashes = response.get("transactionsHashes") or response.get("transactionHashes") or []
    return OrderResult(
        success=True,
        order_id=str(response.get("orderID") or response.get("orderId") or ""),
        transaction_hashes=tuple(str(h) for h in hashes),
        intent=intent,
        status=str(response.get("status") or ""),
        filled_amount=filled_amount,
    )


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None
