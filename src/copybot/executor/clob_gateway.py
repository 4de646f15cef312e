from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType,
    BalanceAllowanceParams,
    MarketOrderArgs,
    PartialCreateOrderOptions,
)
from py_clob_client.clob_types import OrderType as ClobOrderType

from copybot.config import PolymarketConfig
from copybot.errors import GatewayRejection
from copybot.executor.credentials import configured_credentials, load_credentials, save_credentials
from copybot.schemas import MarketOrderIntent

# USDC on Polygon has 6 decimals; the CLOB reports raw units.
COLLATERAL_DECIMALS = Decimal("1000000")


class ClobExecutionGateway:
    """Async facade over the synchronous py-clob-client.

    Blocking HTTP calls run in worker threads so the event loop keeps reading
    the trade feed while an order is in flight.
    """

    def __init__(self, polymarket: PolymarketConfig, *, credential_path: str = "data/credential.json") -> None:
        self._polymarket = polymarket
        self._credential_path = credential_path
        self._log = logging.getLogger(self.__class__.__name__)
        self._clob_client: ClobClient | None = None

    async def create_and_post_market_order(self, intent: MarketOrderIntent) -> dict[str, Any]:
        return await asyncio.to_thread(self._create_and_post, intent)

    async def update_balance_allowance(self) -> None:
        await asyncio.to_thread(self._update_balance_allowance)

    async def get_collateral_balance(self) -> Decimal:
        return await asyncio.to_thread(self._collateral_balance)

    def client(self) -> ClobClient:
        if self._clob_client is not None:
            return self._clob_client

        client = ClobClient(
            self._polymarket.clob_url,
            key=self._polymarket.private_key,
            chain_id=self._polymarket.chain_id,
            signature_type=self._polymarket.signature_type,
            funder=self._polymarket.funder or None,
        )
        creds = configured_credentials(self._polymarket) or load_credentials(self._credential_path)
        if creds is None:
            # Derive credentials on first use and keep them for the next boot.
            creds = client.create_or_derive_api_creds()
            save_credentials(self._credential_path, creds)
        client.set_api_creds(creds)
        self._clob_client = client
        return client

    def _create_and_post(self, intent: MarketOrderIntent) -> dict[str, Any]:
        client = self.client()
        order_args = MarketOrderArgs(
            token_id=intent.token_id,
            amount=float(intent.amount),
            side=intent.side.value,
            price=float(intent.price) if intent.price is not None else 0,
            order_type=_clob_order_type(intent),
        )
        options = PartialCreateOrderOptions(tick_size=intent.tick_size, neg_risk=intent.neg_risk)
        response = self._post_with_refresh(client, order_args, options, _clob_order_type(intent))
        if not isinstance(response, dict):
            return {"response": str(response)}
        if response.get("success") is False or response.get("errorMsg"):
            raise GatewayRejection(str(response.get("errorMsg") or "order rejected"))
        return response

    def _post_with_refresh(
        self,
        client: ClobClient,
        order_args: MarketOrderArgs,
        options: PartialCreateOrderOptions,
        order_type: Any,
    ) -> Any:
        signed = client.create_market_order(order_args, options)
        try:
            return client.post_order(signed, order_type)
        except Exception as exc:
            msg = str(exc).lower()
            if "invalid api key" not in msg and "unauthorized" not in msg:
                raise
            self._log.warning("clob_creds_refresh error=%s", exc)
            creds = client.create_or_derive_api_creds()
            save_credentials(self._credential_path, creds)
            client.set_api_creds(creds)
            signed = client.create_market_order(order_args, options)
            return client.post_order(signed, order_type)

    def _update_balance_allowance(self) -> None:
        self.client().update_balance_allowance(
            params=BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
        )

    def _collateral_balance(self) -> Decimal:
        payload = self.client().get_balance_allowance(
            params=BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
        )
        return parse_collateral_balance(payload)


def parse_collateral_balance(payload: Any) -> Decimal:
    if not isinstance(payload, dict):
        return Decimal("0")
    try:
        raw = Decimal(str(payload.get("balance") or "0"))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not raw.is_finite() or raw <= 0:
        return Decimal("0")
    return raw / COLLATERAL_DECIMALS


def _clob_order_type(intent: MarketOrderIntent) -> Any:
    return getattr(ClobOrderType, intent.order_type.value)
