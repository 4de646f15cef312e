#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from statistics import median


@dataclass
class HourStats:
    detected: int = 0
    copied: int = 0
    failed: int = 0
    paused: int = 0
    disabled: int = 0
    sides: Counter[str] = field(default_factory=Counter)
    error_codes: Counter[str] = field(default_factory=Counter)
    source_notional: float = 0.0
    submitted: list[float] = field(default_factory=list)
    source_to_record_ms: list[int] = field(default_factory=list)


def main() -> None:
    parser = argparse.ArgumentParser(description="Roll up copy audit rows per hour")
    parser.add_argument("--input", default="runs/telemetry/copy_audit.jsonl")
    parser.add_argument("--date", default=datetime.now(timezone.utc).strftime("%Y-%m-%d"))
    args = parser.parse_args()

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"No audit file found at {args.input}")
        return

    by_hour: dict[str, HourStats] = defaultdict(HourStats)
    with input_path.open("r", encoding="utf-8") as fp:
        for line in fp:
            row = _parse(line)
            ts = str(row.get("ts", ""))
            if not ts.startswith(args.date):
                continue
            stats = by_hour[ts[:13] + ":00"]
            stats.detected += 1
            stats.sides[str(row.get("side", "") or "?")] += 1

            action = str(row.get("action", "") or "")
            if action == "copied":
                stats.copied += 1
            elif action == "copy_failed":
                stats.failed += 1
                stats.error_codes[str(row.get("error_code", "") or "unknown")] += 1
            elif action == "skipped_paused":
                stats.paused += 1
            elif action == "skipped_disabled":
                stats.disabled += 1

            notional = _to_float(row.get("source_notional_usd"))
            if notional is not None:
                stats.source_notional += notional
            submitted = _to_float(row.get("submitted_amount"))
            if submitted is not None:
                stats.submitted.append(submitted)
            lag = _lag_ms(row.get("source_ts"), ts)
            if lag is not None:
                stats.source_to_record_ms.append(lag)

    print(f"# Copy Audit Rollup ({args.date})")
    print("")
    print("| hour_utc | detected | buy | sell | copied | failed | paused | disabled | copy_ratio | source_notional_usd | submitted_med | source_to_record_p50_ms | source_to_record_p95_ms | top_error_codes |")
    print("|---|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---|")
    for hour in sorted(by_hour.keys()):
        s = by_hour[hour]
        attempted = s.copied + s.failed
        errors = ", ".join(f"{k}:{v}" for k, v in s.error_codes.most_common(3)) if s.error_codes else "n/a"
        print(
            f"| {hour} | {s.detected} | {s.sides['BUY']} | {s.sides['SELL']} | {s.copied} | {s.failed} | "
            f"{s.paused} | {s.disabled} | {_fmt(_ratio(s.copied, attempted))} | {_fmt(s.source_notional)} | "
            f"{_fmt(_median(s.submitted))} | {_fmt(_percentile(s.source_to_record_ms, 50))} | "
            f"{_fmt(_percentile(s.source_to_record_ms, 95))} | {errors} |"
        )


def _parse(line: str) -> dict:
    try:
        value = json.loads(line)
        return value if isinstance(value, dict) else {}
    except json.JSONDecodeError:
        return {}


def _lag_ms(source_ts: object, record_ts: str) -> int | None:
    if not isinstance(source_ts, str) or not source_ts:
        return None
    try:
        start = datetime.fromisoformat(source_ts.replace("Z", "+00:00"))
        end = datetime.fromisoformat(record_ts.replace("Z", "+00:00"))
    except ValueError:
        return None
    return max(0, int((end - start).total_seconds() * 1000))


def _to_float(value: object) -> float | None:
    if value in ("", None):
        return None
    try:
        return float(str(value))
    except ValueError:
        return None


def _ratio(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator


def _median(values: list[float]) -> float | None:
    if not values:
        return None
    return median(values)


def _percentile(values: list[int], p: int) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    idx = int(round((p / 100) * (len(ordered) - 1)))
    return float(ordered[max(0, min(idx, len(ordered) - 1))])


def _fmt(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.4f}".rstrip("0").rstrip(".")


if __name__ == "__main__":
    main()
