from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from copybot.schemas import Side, TradeEvent
from copybot.watcher.trade_feed import SUBSCRIBE_MESSAGE, TradeFeed, parse_trade_message
from copybot.watcher.ws_client import ReconnectingWsClient


def _message(**payload_overrides: object) -> dict:
    payload = {
        "proxyWallet": "0xAbC0000000000000000000000000000000000001",
        "conditionId": "0xcond",
        "asset": "123456",
        "side": "BUY",
        "price": 0.42,
        "size": "15",
        "outcome": "Yes",
        "outcomeIndex": 0,
        "timestamp": 1735689600,
        "transactionHash": "0xtx",
        "title": "Will it rain?",
        "slug": "will-it-rain",
    }
    payload.update(payload_overrides)
    return {"topic": "activity", "type": "trades", "payload": payload}


class TradeFeedParsingTests(unittest.TestCase):
    def test_parse_trade_message(self) -> None:
        event = parse_trade_message(_message())
        self.assertIsNotNone(event)
        self.assertEqual(event.wallet, "0xAbC0000000000000000000000000000000000001")
        self.assertEqual(event.market_id, "0xcond")
        self.assertEqual(event.token_id, "123456")
        self.assertEqual(event.side, Side.BUY)
        self.assertEqual(event.price, Decimal("0.42"))
        self.assertEqual(event.size, Decimal("15"))
        self.assertEqual(event.outcome_index, 0)
        self.assertEqual(event.timestamp, datetime(2025, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(event.tx_hash, "0xtx")
        self.assertEqual(event.label, "Will it rain?")

    def test_millisecond_timestamps_are_accepted(self) -> None:
        event = parse_trade_message(_message(timestamp=1735689600000))
        self.assertEqual(event.timestamp, datetime(2025, 1, 1, tzinfo=timezone.utc))

    def test_malformed_payloads_are_rejected(self) -> None:
        self.assertIsNone(parse_trade_message({"topic": "activity", "type": "trades"}))
        self.assertIsNone(parse_trade_message(_message(side="HOLD")))
        self.assertIsNone(parse_trade_message(_message(price="abc")))
        self.assertIsNone(parse_trade_message(_message(asset="")))
        self.assertIsNone(parse_trade_message(_message(proxyWallet=None)))

    def test_subscription_targets_trade_activity(self) -> None:
        self.assertEqual(
            SUBSCRIBE_MESSAGE,
            {"action": "subscribe", "subscriptions": [{"topic": "activity", "type": "trades"}]},
        )


class TradeFeedQueueTests(unittest.TestCase):
    def test_only_trade_activity_is_queued(self) -> None:
        async def _run() -> list[TradeEvent]:
            queue: asyncio.Queue[TradeEvent] = asyncio.Queue()
            feed = TradeFeed("wss://example.invalid", queue)
            await feed.on_message({"topic": "comments", "type": "comment_created", "payload": {}})
            await feed.on_message(_message())
            await feed.on_message({"topic": "activity", "type": "trades", "payload": "bad"})
            return [queue.get_nowait() for _ in range(queue.qsize())]

        events = asyncio.run(_run())
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].tx_hash, "0xtx")

    def test_full_queue_drops_event(self) -> None:
        async def _run() -> int:
            queue: asyncio.Queue[TradeEvent] = asyncio.Queue(maxsize=1)
            feed = TradeFeed("wss://example.invalid", queue)
            await feed.on_message(_message(transactionHash="0x1"))
            with self.assertLogs("TradeFeed", level="WARNING") as logs:
                await feed.on_message(_message(transactionHash="0x2"))
            self.assertIn("trade_queue_full_drop", "\n".join(logs.output))
            return queue.qsize()

        self.assertEqual(asyncio.run(_run()), 1)


class WsClientParseTests(unittest.TestCase):
    def test_non_json_frames_are_skipped(self) -> None:
        self.assertIsNone(ReconnectingWsClient._parse(""))
        self.assertIsNone(ReconnectingWsClient._parse("PONG"))
        self.assertIsNone(ReconnectingWsClient._parse("[1, 2]"))
        self.assertEqual(ReconnectingWsClient._parse(b'{"topic": "activity"}'), {"topic": "activity"})


if __name__ == "__main__":
    unittest.main()
