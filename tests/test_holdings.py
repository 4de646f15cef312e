from __future__ import annotations

import json
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

from copybot.errors import HoldingsDocumentError, HoldingsWriteError
from copybot.state_store.holdings import HoldingsLedger


class HoldingsLedgerTests(unittest.TestCase):
    def test_holdings_persist_across_restarts(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = f"{tmp}/token-holding.json"
            ledger = HoldingsLedger(path)
            ledger.add("m1", "t1", Decimal("10"))
            ledger.add("m1", "t1", Decimal("2.5"))
            ledger.add("m2", "t9", Decimal("4"))

            restarted = HoldingsLedger(path)
            self.assertEqual(restarted.get("m1", "t1"), Decimal("12.5"))
            self.assertEqual(restarted.get("m2", "t9"), Decimal("4"))
            self.assertEqual(restarted.get("m3", "t1"), Decimal("0"))

    def test_document_stores_quantities_as_strings(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "token-holding.json"
            HoldingsLedger(str(path)).add("m1", "t1", Decimal("0.1"))
            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw, {"m1": {"t1": "0.1"}})

    def test_remove_clamps_at_zero_and_drops_key(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            ledger = HoldingsLedger(f"{tmp}/token-holding.json")
            ledger.add("m1", "t1", Decimal("3"))
            self.assertEqual(ledger.remove("m1", "t1", Decimal("1")), Decimal("2"))
            self.assertEqual(ledger.remove("m1", "t1", Decimal("5")), Decimal("0"))
            self.assertEqual(ledger.entries(), [])
            self.assertEqual(ledger.snapshot(), {})

    def test_remove_unknown_key_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            ledger = HoldingsLedger(f"{tmp}/token-holding.json")
            self.assertEqual(ledger.remove("m1", "t1", Decimal("1")), Decimal("0"))
            self.assertEqual(ledger.entries(), [])

    def test_add_ignores_non_positive_amounts(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            ledger = HoldingsLedger(f"{tmp}/token-holding.json")
            ledger.add("m1", "t1", Decimal("0"))
            ledger.add("m1", "t1", Decimal("-1"))
            self.assertEqual(ledger.entries(), [])

    def test_discard_returns_held_quantity(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            ledger = HoldingsLedger(f"{tmp}/token-holding.json")
            ledger.add("m1", "t1", Decimal("7"))
            ledger.add("m1", "t2", Decimal("1"))
            self.assertEqual(ledger.discard("m1", "t1"), Decimal("7"))
            self.assertEqual([h.token_id for h in ledger.entries()], ["t2"])
            self.assertEqual(ledger.discard("m1", "missing"), Decimal("0"))

    def test_failed_write_keeps_previous_document(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = f"{tmp}/token-holding.json"
            ledger = HoldingsLedger(path)
            ledger.add("m1", "t1", Decimal("5"))
            with patch("copybot.state_store.holdings.os.replace", side_effect=OSError("disk full")):
                with self.assertRaises(HoldingsWriteError):
                    ledger.add("m1", "t1", Decimal("1"))

            self.assertEqual(HoldingsLedger(path).get("m1", "t1"), Decimal("5"))
            leftovers = [p.name for p in Path(tmp).iterdir() if p.name.endswith(".tmp")]
            self.assertEqual(leftovers, [])

    def test_corrupt_document_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "token-holding.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(HoldingsDocumentError):
                HoldingsLedger(str(path)).entries()

    def test_non_finite_quantity_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "token-holding.json"
            path.write_text(json.dumps({"m1": {"t1": "NaN"}}), encoding="utf-8")
            with self.assertRaises(HoldingsDocumentError):
                HoldingsLedger(str(path)).get("m1", "t1")

    def test_zero_quantities_are_dropped_on_load(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "token-holding.json"
            path.write_text(json.dumps({"m1": {"t1": "0", "t2": 3}}), encoding="utf-8")
            entries = HoldingsLedger(str(path)).entries()
            self.assertEqual([(h.token_id, h.quantity) for h in entries], [("t2", Decimal("3"))])


if __name__ == "__main__":
    unittest.main()
