from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from copybot.schemas import Side, TradeEvent
from copybot.watcher.ws_client import ReconnectingWsClient

ACTIVITY_TOPIC = "activity"
TRADES_TYPE = "trades"
SUBSCRIBE_MESSAGE = {
    "action": "subscribe",
    "subscriptions": [{"topic": ACTIVITY_TOPIC, "type": TRADES_TYPE}],
}


class TradeFeed:
    """Streams public trade activity and queues normalised ``TradeEvent``s.

    Every trade on the venue arrives here; wallet filtering happens in the
    monitor so the feed stays a plain producer.
    """

    def __init__(self, ws_url: str, queue: asyncio.Queue[TradeEvent]) -> None:
        self._queue = queue
        self._log = logging.getLogger(self.__class__.__name__)
        self._client = ReconnectingWsClient(
            url=ws_url,
            subscribe_messages=[SUBSCRIBE_MESSAGE],
            on_message=self.on_message,
            on_connect=self._on_connect,
        )
        self._parsed = 0
        self._dropped = 0

    async def run_forever(self) -> None:
        await self._client.run_forever()

    async def stop(self) -> None:
        await self._client.stop()

    async def on_message(self, message: dict[str, Any]) -> None:
        if message.get("topic") != ACTIVITY_TOPIC or message.get("type") != TRADES_TYPE:
            return
        event = parse_trade_message(message)
        if event is None:
            payload = message.get("payload")
            keys = sorted(payload)[:20] if isinstance(payload, dict) else type(payload).__name__
            self._log.warning("trade_message_malformed keys=%s", keys)
            return
        self._parsed += 1
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            self._log.warning(
                "trade_queue_full_drop tx_hash=%s wallet=%s dropped=%s",
                event.tx_hash,
                event.wallet,
                self._dropped,
            )

    async def _on_connect(self) -> None:
        self._log.info("trade_feed_subscribed topic=%s type=%s parsed=%s", ACTIVITY_TOPIC, TRADES_TYPE, self._parsed)


def parse_trade_message(message: dict[str, Any]) -> TradeEvent | None:
    payload = message.get("payload")
    if not isinstance(payload, dict):
        return None

    wallet = str(payload.get("proxyWallet") or "").strip()
    market_id = str(payload.get("conditionId") or "").strip()
    token_id = str(payload.get("asset") or "").strip()
    if not wallet or not market_id or not token_id:
        return None

    side_raw = str(payload.get("side") or "").upper()
    if side_raw not in {Side.BUY.value, Side.SELL.value}:
        return None

    price = _to_decimal(payload.get("price"))
    size = _to_decimal(payload.get("size"))
    if price is None or size is None:
        return None

    return TradeEvent(
        wallet=wallet,
        market_id=market_id,
        token_id=token_id,
        side=Side(side_raw),
        price=price,
        size=size,
        outcome=str(payload.get("outcome") or ""),
        timestamp=_parse_ts(payload.get("timestamp")),
        tx_hash=str(payload.get("transactionHash") or ""),
        outcome_index=_to_int(payload.get("outcomeIndex")),
        title=payload.get("title") or None,
        slug=payload.get("slug") or None,
    )


def _parse_ts(value: Any) -> datetime:
    # Activity timestamps are unix seconds; tolerate milliseconds too.
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def _to_decimal(value: Any) -> Decimal | None:
    try:
        if value is None or value == "" or isinstance(value, bool):
            return None
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return parsed if parsed.is_finite() else None


def _to_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None
