from __future__ import annotations

import io
import json
import logging
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from copybot.schemas import Side
from copybot.telemetry.logging import JsonFormatter
from copybot.telemetry.redaction import redact_secret


class JsonFormatterTests(unittest.TestCase):
    def _emit(self, *args: object, **kwargs: object) -> dict:
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonFormatter())
        log = logging.getLogger("copybot.test.json")
        log.propagate = False
        log.handlers = [handler]
        log.setLevel(logging.INFO)
        log.info(*args, **kwargs)
        return json.loads(stream.getvalue())

    def test_extra_fields_are_flattened(self) -> None:
        entry = self._emit(
            "redemption_summary",
            extra={"extra_fields": {"redeemed": 1, "amount": Decimal("2.5"), "side": Side.SELL}},
        )
        self.assertEqual(entry["msg"], "redemption_summary")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["logger"], "copybot.test.json")
        self.assertEqual(entry["redeemed"], 1)
        self.assertEqual(entry["amount"], "2.5")
        self.assertEqual(entry["side"], "SELL")

    def test_message_args_and_datetimes(self) -> None:
        ts = datetime(2025, 1, 1, tzinfo=timezone.utc)
        entry = self._emit("trade_detected tx_hash=%s", "0xtx", extra={"extra_fields": {"timestamp": ts}})
        self.assertEqual(entry["msg"], "trade_detected tx_hash=0xtx")
        self.assertEqual(entry["timestamp"], "2025-01-01T00:00:00+00:00")


class RedactionTests(unittest.TestCase):
    def test_redact_secret(self) -> None:
        self.assertEqual(redact_secret(None), "<unset>")
        self.assertEqual(redact_secret("short"), "*****")
        self.assertEqual(redact_secret("0x1234567890abcdef"), "0x12...cdef")


if __name__ == "__main__":
    unittest.main()
