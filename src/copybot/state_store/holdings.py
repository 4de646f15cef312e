from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from copybot.errors import HoldingsDocumentError, HoldingsWriteError
from copybot.schemas import Holding

Document = dict[str, dict[str, Decimal]]

_ZERO = Decimal("0")


class HoldingsLedger:
    """Token quantities keyed by (market, token), persisted as one JSON document.

    Every mutation re-reads the document, applies the change and atomically
    replaces the file, so a crash mid-write leaves the previous document intact.
    One process owns the file; the lock only serialises writers inside it.
    """

    def __init__(self, path: str = "data/token-holding.json") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._log = logging.getLogger(self.__class__.__name__)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, market_id: str, token_id: str) -> Decimal:
        with self._lock:
            doc = self._read()
        return doc.get(market_id, {}).get(token_id, _ZERO)

    def add(self, market_id: str, token_id: str, amount: Decimal) -> Decimal:
        if amount <= 0:
            self._log.warning(
                "holdings_add_ignored market_id=%s token_id=%s amount=%s",
                market_id,
                token_id,
                amount,
            )
            return self.get(market_id, token_id)

        def _apply(doc: Document) -> Decimal:
            tokens = doc.setdefault(market_id, {})
            tokens[token_id] = tokens.get(token_id, _ZERO) + amount
            return tokens[token_id]

        return self._mutate(_apply)

    def remove(self, market_id: str, token_id: str, amount: Decimal) -> Decimal:
        def _apply(doc: Document) -> Decimal:
            tokens = doc.get(market_id)
            if not tokens or token_id not in tokens:
                return _ZERO
            remaining = tokens[token_id] - amount
            if remaining < 0:
                self._log.warning(
                    "holdings_remove_clamped market_id=%s token_id=%s held=%s removed=%s",
                    market_id,
                    token_id,
                    tokens[token_id],
                    amount,
                )
                remaining = _ZERO
            if remaining == 0:
                _drop(doc, market_id, token_id)
            else:
                tokens[token_id] = remaining
            return remaining

        return self._mutate(_apply)

    def discard(self, market_id: str, token_id: str) -> Decimal:
        """Drop a key entirely and return the quantity it held."""

        def _apply(doc: Document) -> Decimal:
            held = doc.get(market_id, {}).get(token_id, _ZERO)
            _drop(doc, market_id, token_id)
            return held

        return self._mutate(_apply)

    def entries(self) -> list[Holding]:
        with self._lock:
            doc = self._read()
        return [
            Holding(market_id=market_id, token_id=token_id, quantity=qty)
            for market_id, tokens in doc.items()
            for token_id, qty in tokens.items()
        ]

    def snapshot(self) -> Document:
        with self._lock:
            return self._read()

    def _mutate(self, apply: Callable[[Document], Decimal]) -> Decimal:
        with self._lock:
            doc = self._read()
            result = apply(doc)
            self._write(doc)
        return result

    def _read(self) -> Document:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise HoldingsDocumentError(f"Holdings document {self._path} is unreadable: {exc}") from exc
        try:
            raw = json.loads(text or "{}")
        except json.JSONDecodeError as exc:
            raise HoldingsDocumentError(f"Holdings document {self._path} is not valid JSON: {exc}") from exc
        return _parse_document(raw, self._path)

    def _write(self, doc: Document) -> None:
        payload = {
            market_id: {token_id: str(qty) for token_id, qty in tokens.items()}
            for market_id, tokens in doc.items()
            if tokens
        }
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                dir=self._path.parent,
            )
        except OSError as exc:
            raise HoldingsWriteError(f"Holdings document {self._path} could not be written: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(payload, fp, indent=2, sort_keys=True)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise HoldingsWriteError(f"Holdings document {self._path} could not be written: {exc}") from exc
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _drop(doc: Document, market_id: str, token_id: str) -> None:
    tokens = doc.get(market_id)
    if tokens is None:
        return
    tokens.pop(token_id, None)
    if not tokens:
        doc.pop(market_id, None)


def _parse_document(raw: Any, path: Path) -> Document:
    if not isinstance(raw, dict):
        raise HoldingsDocumentError(f"Holdings document {path} must be a JSON object")
    doc: Document = {}
    for market_id, tokens in raw.items():
        if not isinstance(tokens, dict):
            raise HoldingsDocumentError(f"Holdings for market {market_id} must be an object")
        parsed: dict[str, Decimal] = {}
        for token_id, value in tokens.items():
            try:
                qty = Decimal(str(value))
            except (InvalidOperation, ValueError):
                qty = Decimal("NaN")
            if not qty.is_finite():
                raise HoldingsDocumentError(f"Invalid quantity {value!r} for {market_id}/{token_id}")
            if qty > 0:
                parsed[str(token_id)] = qty
        if parsed:
            doc[str(market_id)] = parsed
    return doc
