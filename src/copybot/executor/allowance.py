from __future__ import annotations

import asyncio
import logging

from copybot.executor.chain import MAX_UINT256, ChainClient
from copybot.schemas import SideEffectResult


class AllowanceManager:
    """Raises on-chain allowances so the exchange can move collateral and outcome tokens.

    USDC (ERC20) needs a max allowance for the ConditionalTokens and Exchange
    contracts; outcome tokens (ERC1155) need ``setApprovalForAll`` for every
    exchange that may sell them. Neg-risk markets add the NegRiskExchange and
    NegRiskAdapter as spenders.
    """

    def __init__(self, chain: ChainClient, *, neg_risk: bool = False) -> None:
        self._chain = chain
        self._neg_risk = neg_risk
        self._log = logging.getLogger(self.__class__.__name__)

    def approve_all(self) -> list[str]:
        contracts = self._chain.contracts
        self._log.info(
            "allowance_setup address=%s usdc=%s ctf=%s exchange=%s neg_risk=%s",
            self._chain.address,
            contracts.collateral,
            contracts.conditional_tokens,
            contracts.exchange,
            self._neg_risk,
        )
        tx_hashes: list[str] = []
        usdc_spenders = [
            ("ConditionalTokens", contracts.conditional_tokens),
            ("Exchange", contracts.exchange),
        ]
        operators = [("Exchange", contracts.exchange)]
        if self._neg_risk:
            usdc_spenders += [
                ("NegRiskAdapter", contracts.neg_risk_adapter),
                ("NegRiskExchange", contracts.neg_risk_exchange),
            ]
            operators += [
                ("NegRiskExchange", contracts.neg_risk_exchange),
                ("NegRiskAdapter", contracts.neg_risk_adapter),
            ]

        for name, spender in usdc_spenders:
            tx_hash = self._approve_usdc(name, spender)
            if tx_hash:
                tx_hashes.append(tx_hash)
        for name, operator in operators:
            tx_hash = self._approve_ctf(name, operator)
            if tx_hash:
                tx_hashes.append(tx_hash)
        self._log.info("allowance_setup_complete txs=%s", len(tx_hashes))
        return tx_hashes

    def approve_tokens_after_buy_sync(self) -> list[str]:
        contracts = self._chain.contracts
        operators = [("Exchange", contracts.exchange)]
        if self._neg_risk:
            operators.append(("NegRiskExchange", contracts.neg_risk_exchange))
        tx_hashes: list[str] = []
        for name, operator in operators:
            tx_hash = self._approve_ctf(name, operator)
            if tx_hash:
                tx_hashes.append(tx_hash)
        return tx_hashes

    def approve_neg_risk_adapter_sync(self) -> str | None:
        return self._approve_ctf("NegRiskAdapter", self._chain.contracts.neg_risk_adapter)

    async def approve_tokens_after_buy(self) -> SideEffectResult:
        try:
            await asyncio.to_thread(self.approve_tokens_after_buy_sync)
        except Exception as exc:
            return SideEffectResult(name="approve_tokens_after_buy", ok=False, error=str(exc))
        return SideEffectResult(name="approve_tokens_after_buy", ok=True)

    def _approve_usdc(self, name: str, spender: str) -> str | None:
        usdc = self._chain.usdc()
        current = usdc.functions.allowance(self._chain.address, spender).call()
        if current == MAX_UINT256:
            self._log.info("usdc_already_approved spender=%s", name)
            return None
        self._log.info("usdc_approve spender=%s current=%s", name, current)
        tx_hash, status = self._chain.send(usdc.functions.approve(spender, MAX_UINT256))
        if status != 1:
            raise RuntimeError(f"USDC approval for {name} reverted: {tx_hash}")
        self._log.info("usdc_approved spender=%s tx=%s", name, tx_hash)
        return tx_hash

    def _approve_ctf(self, name: str, operator: str) -> str | None:
        ctf = self._chain.ctf()
        if ctf.functions.isApprovedForAll(self._chain.address, operator).call():
            return None
        self._log.info("ctf_approve operator=%s", name)
        tx_hash, status = self._chain.send(ctf.functions.setApprovalForAll(operator, True))
        if status != 1:
            raise RuntimeError(f"ConditionalTokens approval for {name} reverted: {tx_hash}")
        self._log.info("ctf_approved operator=%s tx=%s", name, tx_hash)
        return tx_hash
