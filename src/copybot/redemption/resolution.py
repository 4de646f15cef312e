from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.parse
import urllib.request
from decimal import Decimal, InvalidOperation
from typing import Any

from copybot.config import PolymarketConfig
from copybot.schemas import MarketResolution

_ONE = Decimal("1")


class GammaResolutionClient:
    """Looks up market resolution on the Gamma markets API, keyed by condition id."""

    def __init__(self, polymarket: PolymarketConfig, *, ttl_s: int = 60, timeout_s: int = 4) -> None:
        self._polymarket = polymarket
        self._ttl_s = ttl_s
        self._timeout_s = timeout_s
        self._cache: dict[str, tuple[float, MarketResolution]] = {}
        self._log = logging.getLogger(self.__class__.__name__)

    async def resolve(self, market_id: str) -> MarketResolution:
        return await asyncio.to_thread(self.get, market_id)

    def get(self, market_id: str) -> MarketResolution:
        now = time.time()
        cached = self._cache.get(market_id)
        # Resolved markets never change; unresolved ones are re-fetched after the TTL.
        if cached and (cached[1].resolved or now - cached[0] < self._ttl_s):
            return cached[1]
        resolution = parse_resolution(market_id, self._fetch(market_id))
        self._cache[market_id] = (now, resolution)
        return resolution

    def _fetch(self, market_id: str) -> dict[str, Any]:
        query = urllib.parse.urlencode({"condition_ids": market_id})
        url = f"{self._polymarket.gamma_api_url}/markets?{query}"
        headers = {
            "Accept": "application/json",
            "User-Agent": "copybot/0.1",
        }
        req = urllib.request.Request(url, headers=headers, method="GET")
        with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
        item = _first_item(payload)
        if not item:
            raise LookupError(f"market {market_id} not found on Gamma")
        return item


def parse_resolution(market_id: str, item: dict[str, Any]) -> MarketResolution:
    token_ids = _extract_token_ids(item)
    labels = _extract_outcome_labels(item.get("outcomes", []) or [])
    prices = _extract_outcome_prices(item)
    winners = _winning_indices(item, labels, prices)
    closed = bool(item.get("closed", False))
    resolved = closed and bool(winners)
    return MarketResolution(
        market_id=market_id,
        resolved=resolved,
        token_ids=tuple(token_ids),
        winning_token_ids=frozenset(token_ids[i] for i in winners if i < len(token_ids)) if resolved else frozenset(),
        neg_risk=bool(item.get("negRisk", False)),
    )


def _winning_indices(item: dict[str, Any], labels: list[str], prices: list[Decimal]) -> list[int]:
    for key in ("winningOutcome", "resolvedOutcome", "winner"):
        raw = item.get(key)
        if isinstance(raw, str) and raw in labels:
            return [labels.index(raw)]
    # A resolved market prices exactly one outcome at 1.
    ones = [idx for idx, px in enumerate(prices) if px == _ONE]
    if len(ones) == 1:
        return ones
    return []


def _first_item(payload: Any) -> dict[str, Any]:
    if isinstance(payload, list) and payload:
        return payload[0] if isinstance(payload[0], dict) else {}
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data[0] if data and isinstance(data[0], dict) else {}
        return payload
    return {}


def _json_list(raw: Any) -> list[Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    return raw if isinstance(raw, list) else []


def _extract_outcome_labels(raw_outcomes: Any) -> list[str]:
    labels: list[str] = []
    for raw in _json_list(raw_outcomes):
        if isinstance(raw, dict):
            labels.append(str(raw.get("name") or raw.get("outcome") or ""))
        else:
            labels.append(str(raw))
    return labels


def _extract_outcome_prices(item: dict[str, Any]) -> list[Decimal]:
    prices: list[Decimal] = []
    for value in _json_list(item.get("outcomePrices")):
        try:
            prices.append(Decimal(str(value)))
        except (InvalidOperation, ValueError):
            prices.append(Decimal("0"))
    return prices


def _extract_token_ids(item: dict[str, Any]) -> list[str]:
    raw_ids = item.get("clobTokenIds") or item.get("tokenIds") or []
    return [str(x) for x in _json_list(raw_ids) if str(x)]
