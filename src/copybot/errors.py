"""Exceptions raised by copybot adapters and stores."""

from __future__ import annotations


class CopybotError(Exception):
    """Base exception for copybot errors."""


class GatewayRejection(CopybotError):
    """Raised when the exchange rejects an order submission."""


class HoldingsError(CopybotError):
    """Base for failures reading or writing the holdings ledger."""


class HoldingsDocumentError(HoldingsError):
    """Raised when the holdings ledger document cannot be read or parsed."""


class HoldingsWriteError(HoldingsError):
    """Raised when the holdings ledger document cannot be replaced on disk."""


class RedemptionNotReady(CopybotError):
    """Raised when a market's payout has not been reported on-chain yet."""


class RedemptionReverted(CopybotError):
    """Raised when a redemption transaction is mined with a failed status."""


class NothingToRedeem(CopybotError):
    """Raised when the signing account holds none of the winning tokens on-chain."""


# Substrings the CLOB uses for balance and allowance rejections.
BALANCE_ALLOWANCE_MARKERS: tuple[str, ...] = ("not enough balance", "allowance")


def is_balance_or_allowance_error(message: str) -> bool:
    normalized = message.lower()
    return any(marker in normalized for marker in BALANCE_ALLOWANCE_MARKERS)
