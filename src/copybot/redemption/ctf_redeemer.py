from __future__ import annotations

import asyncio
import logging

from copybot.errors import NothingToRedeem, RedemptionNotReady, RedemptionReverted
from copybot.executor.allowance import AllowanceManager
from copybot.executor.chain import ChainClient, to_bytes32
from copybot.schemas import MarketResolution

# Binary markets: index set 1 is outcome 0, index set 2 is outcome 1.
BINARY_INDEX_SETS = [1, 2]
REDEEM_GAS_LIMIT = 300_000


class CtfRedeemer:
    """Converts winning outcome tokens back into USDC once a condition has a payout.

    Redemption is sent from the signing account; tokens held by a proxy or
    funder wallet are not redeemable here and raise ``NothingToRedeem``.
    """

    def __init__(self, chain: ChainClient, allowances: AllowanceManager | None = None) -> None:
        self._chain = chain
        self._allowances = allowances or AllowanceManager(chain)
        self._adapter_approved = False
        self._log = logging.getLogger(self.__class__.__name__)

    async def redeem(self, resolution: MarketResolution, held_token_ids: list[str]) -> str:
        return await asyncio.to_thread(self.redeem_sync, resolution, held_token_ids)

    def redeem_sync(self, resolution: MarketResolution, held_token_ids: list[str]) -> str:
        condition = to_bytes32(resolution.market_id)
        ctf = self._chain.ctf()
        if ctf.functions.payoutDenominator(condition).call() == 0:
            raise RedemptionNotReady(f"payout not reported for {resolution.market_id}")

        balances = {
            token_id: ctf.functions.balanceOf(self._chain.address, int(token_id)).call()
            for token_id in dict.fromkeys([*resolution.token_ids, *held_token_ids])
        }
        winning = [t for t in held_token_ids if t in resolution.winning_token_ids] or held_token_ids
        if not any(balances[t] > 0 for t in winning):
            self._log.warning(
                "redeem_no_onchain_balance market_id=%s address=%s tokens=%s",
                resolution.market_id,
                self._chain.address,
                winning,
            )
            raise NothingToRedeem(
                f"{self._chain.address} holds none of {winning} for {resolution.market_id}"
            )

        if resolution.neg_risk:
            self._ensure_adapter_approved()
            amounts = [balances[token_id] for token_id in resolution.token_ids]
            self._log.info(
                "redeem_neg_risk market_id=%s held=%s amounts=%s",
                resolution.market_id,
                held_token_ids,
                amounts,
            )
            fn = self._chain.neg_risk_adapter().functions.redeemPositions(condition, amounts)
        else:
            self._log.info("redeem_ctf market_id=%s held=%s", resolution.market_id, held_token_ids)
            fn = ctf.functions.redeemPositions(
                self._chain.contracts.collateral,
                bytes(32),
                condition,
                BINARY_INDEX_SETS,
            )
        tx_hash, status = self._chain.send(fn, gas=REDEEM_GAS_LIMIT)
        if status != 1:
            raise RedemptionReverted(f"redemption for {resolution.market_id} reverted: {tx_hash}")
        return tx_hash

    def _ensure_adapter_approved(self) -> None:
        # Neg-risk markets can resolve here even when copying runs with NEG_RISK off.
        if self._adapter_approved:
            return
        tx_hash = self._allowances.approve_neg_risk_adapter_sync()
        if tx_hash:
            self._log.info("neg_risk_adapter_approved_for_redemption tx=%s", tx_hash)
        self._adapter_approved = True
