from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from copybot.schemas import OrderResult, TradeEvent


@dataclass(frozen=True)
class CopyAuditConfig:
    out_dir: str = "runs/telemetry"
    jsonl_name: str = "copy_audit.jsonl"


class CopyAuditLogger:
    """Append-only JSONL trail of every copy decision taken on a detected trade."""

    def __init__(self, cfg: CopyAuditConfig = CopyAuditConfig()) -> None:
        self._path = Path(cfg.out_dir) / cfg.jsonl_name
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, event: TradeEvent, *, action: str, result: OrderResult | None = None) -> None:
        row: dict[str, Any] = {
            "action": action,
            "wallet": event.wallet,
            "market_id": event.market_id,
            "token_id": event.token_id,
            "side": event.side,
            "source_price": event.price,
            "source_size": event.size,
            "source_notional_usd": event.notional_usd,
            "source_ts": event.timestamp,
            "tx_hash": event.tx_hash,
            "title": event.label,
        }
        if result is not None:
            row.update(
                {
                    "success": result.success,
                    "order_id": result.order_id,
                    "order_tx_hashes": list(result.transaction_hashes),
                    "status": result.status,
                    "submitted_amount": result.intent.amount if result.intent else None,
                    "filled_amount": result.filled_amount,
                    "error_code": result.error_code,
                    "error": result.error,
                }
            )
        self.write(row)

    def write(self, row: dict[str, Any]) -> None:
        payload = {"ts": datetime.now(timezone.utc).isoformat(), **row}
        line = json.dumps(_coerce(payload), separators=(",", ":")) + "\n"
        with self._lock, self._path.open("a", encoding="utf-8") as fp:
            fp.write(line)


def _coerce(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, Decimal):
            out[key] = str(value)
        elif isinstance(value, datetime):
            out[key] = value.astimezone(timezone.utc).isoformat()
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out
