from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv

from copybot.schemas import TICK_SIZES, OrderType

POLYGON_CHAIN_ID = 137
AMOY_CHAIN_ID = 80002

_WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class CopyConfig:
    target_wallet: str = ""
    enable_copy_trading: bool = True
    queue_maxsize: int = 5000


@dataclass(frozen=True)
class SizingConfig:
    size_multiplier: float = 1.0
    max_order_amount: float | None = None
    order_type: OrderType = OrderType.FAK
    tick_size: str = "0.01"
    neg_risk: bool = False


@dataclass(frozen=True)
class RedeemConfig:
    interval_minutes: int = 0
    max_attempts: int = 3
    retry_delay_s: float = 2.0

    @property
    def enabled(self) -> bool:
        return self.interval_minutes > 0


@dataclass(frozen=True)
class StorageConfig:
    holdings_path: str = "data/token-holding.json"
    credential_path: str = "data/credential.json"
    audit_dir: str = "runs/telemetry"


@dataclass(frozen=True)
class PolymarketConfig:
    clob_url: str = "https://clob.polymarket.com"
    gamma_api_url: str = "https://gamma-api.polymarket.com"
    rtds_ws_url: str = "wss://ws-live-data.polymarket.com"
    chain_id: int = POLYGON_CHAIN_ID
    private_key: str = ""
    funder: str = ""
    signature_type: int = 0
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""
    rpc_url: str = ""
    rpc_token: str = ""

    def resolved_rpc_url(self) -> str:
        if self.rpc_url:
            return self.rpc_url
        if self.chain_id == POLYGON_CHAIN_ID:
            if self.rpc_token:
                return f"https://polygon-mainnet.g.alchemy.com/v2/{self.rpc_token}"
            return "https://polygon-rpc.com"
        if self.chain_id == AMOY_CHAIN_ID:
            if self.rpc_token:
                return f"https://polygon-amoy.g.alchemy.com/v2/{self.rpc_token}"
            return "https://rpc-amoy.polygon.technology"
        raise ValueError(f"Unsupported chain ID: {self.chain_id}")


@dataclass(frozen=True)
class AppConfig:
    copy: CopyConfig
    sizing: SizingConfig
    redeem: RedeemConfig
    storage: StorageConfig
    polymarket: PolymarketConfig
    log_level: str = "INFO"


def _get_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _get_optional_float(key: str) -> float | None:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


def _get_order_type(key: str) -> OrderType:
    raw = (os.getenv(key) or "").strip().upper()
    if raw == "":
        return SizingConfig.order_type
    try:
        return OrderType(raw)
    except ValueError:
        raise ValueError(f"{key} must be one of: FOK, FAK") from None


def load_config() -> AppConfig:
    load_dotenv()
    cfg = AppConfig(
        copy=CopyConfig(
            target_wallet=os.getenv("TARGET_WALLET", "").strip(),
            enable_copy_trading=_get_bool("ENABLE_COPY_TRADING", CopyConfig.enable_copy_trading),
            queue_maxsize=int(os.getenv("COPY_QUEUE_MAXSIZE", CopyConfig.queue_maxsize)),
        ),
        sizing=SizingConfig(
            size_multiplier=float(os.getenv("SIZE_MULTIPLIER", SizingConfig.size_multiplier)),
            max_order_amount=_get_optional_float("MAX_ORDER_AMOUNT"),
            order_type=_get_order_type("ORDER_TYPE"),
            tick_size=os.getenv("TICK_SIZE", SizingConfig.tick_size).strip(),
            neg_risk=_get_bool("NEG_RISK", SizingConfig.neg_risk),
        ),
        redeem=RedeemConfig(
            interval_minutes=int(os.getenv("REDEEM_DURATION") or 0),
            max_attempts=int(os.getenv("REDEEM_MAX_RETRIES", RedeemConfig.max_attempts)),
            retry_delay_s=float(os.getenv("REDEEM_RETRY_DELAY_S", RedeemConfig.retry_delay_s)),
        ),
        storage=StorageConfig(
            holdings_path=os.getenv("HOLDINGS_PATH", StorageConfig.holdings_path),
            credential_path=os.getenv("CREDENTIAL_PATH", StorageConfig.credential_path),
            audit_dir=os.getenv("COPY_AUDIT_DIR", StorageConfig.audit_dir),
        ),
        polymarket=PolymarketConfig(
            clob_url=os.getenv("CLOB_API_URL", PolymarketConfig.clob_url),
            gamma_api_url=os.getenv("GAMMA_API_URL", PolymarketConfig.gamma_api_url),
            rtds_ws_url=os.getenv("RTDS_WS_URL", PolymarketConfig.rtds_ws_url),
            chain_id=int(os.getenv("CHAIN_ID", PolymarketConfig.chain_id)),
            private_key=os.getenv("PRIVATE_KEY", ""),
            funder=os.getenv("FUNDER", ""),
            signature_type=int(os.getenv("SIGNATURE_TYPE", PolymarketConfig.signature_type)),
            api_key=os.getenv("CLOB_API_KEY", ""),
            api_secret=os.getenv("CLOB_SECRET", ""),
            api_passphrase=os.getenv("CLOB_PASS_PHRASE", ""),
            rpc_url=os.getenv("RPC_URL", ""),
            rpc_token=os.getenv("RPC_TOKEN", ""),
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: AppConfig) -> None:
    if not cfg.copy.target_wallet:
        raise ValueError("TARGET_WALLET environment variable is not set")
    if not _WALLET_RE.match(cfg.copy.target_wallet):
        raise ValueError("TARGET_WALLET must be a 42-char 0x address")
    if cfg.copy.queue_maxsize <= 0:
        raise ValueError("COPY_QUEUE_MAXSIZE must be > 0")
    if cfg.sizing.size_multiplier <= 0:
        raise ValueError("SIZE_MULTIPLIER must be > 0")
    if cfg.sizing.max_order_amount is not None and cfg.sizing.max_order_amount <= 0:
        raise ValueError("MAX_ORDER_AMOUNT must be > 0 when set")
    if cfg.sizing.tick_size not in TICK_SIZES:
        raise ValueError("TICK_SIZE must be one of: 0.1, 0.01, 0.001, 0.0001")
    if cfg.redeem.interval_minutes < 0:
        raise ValueError("REDEEM_DURATION must be >= 0")
    if cfg.redeem.max_attempts <= 0:
        raise ValueError("REDEEM_MAX_RETRIES must be > 0")
    if cfg.redeem.retry_delay_s < 0:
        raise ValueError("REDEEM_RETRY_DELAY_S must be >= 0")
    if cfg.polymarket.chain_id not in {POLYGON_CHAIN_ID, AMOY_CHAIN_ID}:
        raise ValueError("CHAIN_ID must be 137 (Polygon) or 80002 (Amoy)")
    if cfg.polymarket.signature_type not in {0, 1, 2}:
        raise ValueError("SIGNATURE_TYPE must be 0, 1 or 2")
    if (cfg.copy.enable_copy_trading or cfg.redeem.enabled) and not cfg.polymarket.private_key:
        raise ValueError("PRIVATE_KEY is required when copy trading or redemption is enabled")
