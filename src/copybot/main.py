from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from copybot.config import AppConfig, load_config
from copybot.decision_engine.pause import CopyPauseSwitch
from copybot.executor.allowance import AllowanceManager
from copybot.executor.chain import ChainClient
from copybot.executor.clob_gateway import ClobExecutionGateway
from copybot.executor.order_builder import TradeOrderBuilder
from copybot.redemption.coordinator import RedemptionCoordinator
from copybot.redemption.ctf_redeemer import CtfRedeemer
from copybot.redemption.resolution import GammaResolutionClient
from copybot.schemas import OrderType, TradeEvent
from copybot.state_store.holdings import HoldingsLedger
from copybot.telemetry.copy_audit import CopyAuditConfig, CopyAuditLogger
from copybot.telemetry.logging import setup_logging
from copybot.telemetry.redaction import redact_secret
from copybot.watcher.trade_feed import TradeFeed
from copybot.watcher.trade_monitor import TradeMonitor

log = logging.getLogger("copybot.main")


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    cfg = load_config()
    setup_logging(cfg.log_level)

    command = args.command or "run"
    if command == "run":
        asyncio.run(_run(cfg))
    elif command == "redeem":
        asyncio.run(_redeem(cfg))
    elif command == "order":
        asyncio.run(_order(cfg, args))
    elif command == "holdings":
        _holdings(cfg)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="copybot", description="Copy a Polymarket wallet's trades")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="stream trades, copy them and redeem on a timer (default)")
    sub.add_parser("redeem", help="run one redemption sweep and exit")
    order = sub.add_parser("order", help="place a single market order")
    order.add_argument("side", choices=["buy", "sell"])
    order.add_argument("token_id")
    order.add_argument("amount", type=_decimal_arg, help="USDC to spend on buy, shares to sell on sell")
    order.add_argument("--price", type=_decimal_arg, default=None)
    order.add_argument("--order-type", choices=[t.value for t in OrderType], default=None)
    sub.add_parser("holdings", help="print the holdings ledger")
    return parser


def _decimal_arg(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {raw}") from None
    if not value.is_finite() or value <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0: {raw}")
    return value


async def _run(cfg: AppConfig) -> None:
    log.info(
        "copybot_boot",
        extra={
            "extra_fields": {
                "correlation_id": str(uuid4()),
                "target_wallet": cfg.copy.target_wallet,
                "enable_copy_trading": cfg.copy.enable_copy_trading,
                "size_multiplier": cfg.sizing.size_multiplier,
                "max_order_amount": cfg.sizing.max_order_amount,
                "order_type": cfg.sizing.order_type,
                "tick_size": cfg.sizing.tick_size,
                "neg_risk": cfg.sizing.neg_risk,
                "redeem_interval_minutes": cfg.redeem.interval_minutes,
                "chain_id": cfg.polymarket.chain_id,
                "private_key": redact_secret(cfg.polymarket.private_key),
                "api_key": redact_secret(cfg.polymarket.api_key),
            }
        },
    )

    ledger = HoldingsLedger(cfg.storage.holdings_path)
    pause = CopyPauseSwitch()
    gateway = ClobExecutionGateway(cfg.polymarket, credential_path=cfg.storage.credential_path)
    chain: ChainClient | None = None
    approver: AllowanceManager | None = None
    if cfg.polymarket.private_key:
        chain = ChainClient(cfg.polymarket)
        approver = AllowanceManager(chain, neg_risk=cfg.sizing.neg_risk)
        await _startup_allowances(approver, gateway)

    builder = TradeOrderBuilder(gateway, ledger, approver)
    monitor = TradeMonitor(
        cfg.copy.target_wallet,
        builder,
        cfg.sizing,
        pause,
        enabled=cfg.copy.enable_copy_trading,
        audit=CopyAuditLogger(CopyAuditConfig(out_dir=cfg.storage.audit_dir)),
    )
    queue: asyncio.Queue[TradeEvent] = asyncio.Queue(maxsize=cfg.copy.queue_maxsize)
    feed = TradeFeed(cfg.polymarket.rtds_ws_url, queue)

    coordinator: RedemptionCoordinator | None = None
    if cfg.redeem.enabled and chain is not None:
        coordinator = _build_coordinator(cfg, ledger, pause, chain)

    tasks = [
        asyncio.create_task(feed.run_forever(), name="trade-feed"),
        asyncio.create_task(monitor.run(queue), name="trade-monitor"),
    ]
    if coordinator is not None:
        tasks.append(
            asyncio.create_task(
                coordinator.run_forever(cfg.redeem.interval_minutes * 60),
                name="redemption",
            )
        )
    else:
        log.info("redemption_disabled")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int) -> None:
        log.info("shutdown_signal signum=%s", signum)
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _handle_signal, signum)

    await stop_event.wait()
    if coordinator is not None:
        coordinator.stop()
    await feed.stop()
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    log.info("copybot_stopped holdings=%s", len(ledger.entries()))


async def _startup_allowances(approver: AllowanceManager, gateway: ClobExecutionGateway) -> None:
    try:
        tx_hashes = await asyncio.to_thread(approver.approve_all)
        log.info("startup_allowances_ok txs=%s", len(tx_hashes))
    except Exception as exc:
        log.warning("startup_allowances_failed error=%s", exc)
    try:
        await gateway.update_balance_allowance()
        log.info("clob_allowance_synced")
    except Exception as exc:
        log.warning("clob_allowance_sync_failed error=%s", exc)
    try:
        balance = await gateway.get_collateral_balance()
        log.info("collateral_balance usdc=%s", balance)
    except Exception as exc:
        log.warning("collateral_balance_failed error=%s", exc)


def _build_coordinator(
    cfg: AppConfig,
    ledger: HoldingsLedger,
    pause: CopyPauseSwitch,
    chain: ChainClient,
) -> RedemptionCoordinator:
    return RedemptionCoordinator(
        ledger,
        pause,
        GammaResolutionClient(cfg.polymarket),
        CtfRedeemer(chain),
        max_attempts=cfg.redeem.max_attempts,
        retry_delay_s=cfg.redeem.retry_delay_s,
    )


async def _redeem(cfg: AppConfig) -> None:
    if not cfg.polymarket.private_key:
        raise SystemExit("PRIVATE_KEY is required to redeem")
    coordinator = _build_coordinator(
        cfg,
        HoldingsLedger(cfg.storage.holdings_path),
        CopyPauseSwitch(),
        ChainClient(cfg.polymarket),
    )
    outcome = await coordinator.redeem_once()
    print(json.dumps({**outcome.as_dict(), "failed_markets": outcome.failed_markets}, indent=2))


async def _order(cfg: AppConfig, args: argparse.Namespace) -> None:
    gateway = ClobExecutionGateway(cfg.polymarket, credential_path=cfg.storage.credential_path)
    builder = TradeOrderBuilder(gateway, HoldingsLedger(cfg.storage.holdings_path))
    order_type = OrderType(args.order_type) if args.order_type else cfg.sizing.order_type
    place = builder.place_market_buy if args.side == "buy" else builder.place_market_sell
    result = await place(
        args.token_id,
        args.amount,
        order_type=order_type,
        tick_size=cfg.sizing.tick_size,
        neg_risk=cfg.sizing.neg_risk,
        price=args.price,
    )
    print(
        json.dumps(
            {
                "success": result.success,
                "order_id": result.order_id,
                "transaction_hashes": list(result.transaction_hashes),
                "status": result.status,
                "error_code": result.error_code,
                "error": result.error,
            },
            indent=2,
        )
    )
    if not result.success:
        sys.exit(1)


def _holdings(cfg: AppConfig) -> None:
    ledger = HoldingsLedger(cfg.storage.holdings_path)
    print(json.dumps(ledger.snapshot(), indent=2, sort_keys=True, default=str))


if __name__ == "__main__":
    main()
