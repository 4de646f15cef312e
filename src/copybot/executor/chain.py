from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from py_clob_client.config import get_contract_config
from web3 import Web3

from copybot.config import PolymarketConfig

MAX_UINT256 = 2**256 - 1
GAS_LIMIT = 200_000
FALLBACK_GAS_PRICE_GWEI = 100
RECEIPT_TIMEOUT_S = 120

# Same address on Polygon and Amoy.
NEG_RISK_ADAPTER_ADDRESS = "0xd91E80cF2E7be2e162c6513ceD06f1dD0dA35296"

ERC20_ABI = [
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

CTF_ABI = [
    {
        "inputs": [
            {"name": "operator", "type": "address"},
            {"name": "approved", "type": "bool"},
        ],
        "name": "setApprovalForAll",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "operator", "type": "address"},
        ],
        "name": "isApprovedForAll",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "indexSets", "type": "uint256[]"},
        ],
        "name": "redeemPositions",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "bytes32"}],
        "name": "payoutDenominator",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

NEG_RISK_ADAPTER_ABI = [
    {
        "inputs": [
            {"name": "_conditionId", "type": "bytes32"},
            {"name": "_amounts", "type": "uint256[]"},
        ],
        "name": "redeemPositions",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


@dataclass(frozen=True)
class ContractAddresses:
    collateral: str
    conditional_tokens: str
    exchange: str
    neg_risk_exchange: str
    neg_risk_adapter: str


def contract_addresses(chain_id: int) -> ContractAddresses:
    standard = get_contract_config(chain_id, False)
    neg_risk = get_contract_config(chain_id, True)
    return ContractAddresses(
        collateral=Web3.to_checksum_address(standard.collateral),
        conditional_tokens=Web3.to_checksum_address(standard.conditional_tokens),
        exchange=Web3.to_checksum_address(standard.exchange),
        neg_risk_exchange=Web3.to_checksum_address(neg_risk.exchange),
        neg_risk_adapter=Web3.to_checksum_address(NEG_RISK_ADAPTER_ADDRESS),
    )


class ChainClient:
    """Signs and sends contract transactions from the configured key."""

    def __init__(self, polymarket: PolymarketConfig) -> None:
        if not polymarket.private_key:
            raise ValueError("PRIVATE_KEY not found")
        self._chain_id = polymarket.chain_id
        self.w3 = Web3(Web3.HTTPProvider(polymarket.resolved_rpc_url()))
        self.account = Account.from_key(polymarket.private_key)
        self.address = self.account.address
        self.contracts = contract_addresses(polymarket.chain_id)
        self._log = logging.getLogger(self.__class__.__name__)

    def contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def usdc(self) -> Any:
        return self.contract(self.contracts.collateral, ERC20_ABI)

    def ctf(self) -> Any:
        return self.contract(self.contracts.conditional_tokens, CTF_ABI)

    def neg_risk_adapter(self) -> Any:
        return self.contract(self.contracts.neg_risk_adapter, NEG_RISK_ADAPTER_ABI)

    def send(self, fn: Any, *, gas: int = GAS_LIMIT) -> tuple[str, int]:
        tx = fn.build_transaction(
            {
                "from": self.address,
                "nonce": self.w3.eth.get_transaction_count(self.address),
                "gas": gas,
                "gasPrice": self._gas_price(),
                "chainId": self._chain_id,
            }
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        hex_hash = self.w3.to_hex(tx_hash)
        self._log.info("tx_sent hash=%s", hex_hash)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_S)
        return hex_hash, int(receipt["status"])

    def _gas_price(self) -> int:
        try:
            return int(self.w3.eth.gas_price * 120 // 100)
        except Exception as exc:
            self._log.warning("gas_price_fallback error=%s", exc)
            return Web3.to_wei(FALLBACK_GAS_PRICE_GWEI, "gwei")


def to_bytes32(hex_id: str) -> bytes:
    raw = hex_id[2:] if hex_id.startswith("0x") else hex_id
    return bytes.fromhex(raw.rjust(64, "0"))
