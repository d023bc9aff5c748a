"""On-chain swap submission for Base (UniswapV2-compatible router)."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from eth_account.signers.local import LocalAccount
from web3 import HTTPProvider, Web3
from web3.contract import Contract

import config
from trading.errors import DataUnavailable, SubmissionError

logger = logging.getLogger(__name__)


ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "WETH",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "swapExactTokensForETHSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]


@dataclass
class SwapSubmission:
    submitted: bool
    confirmation_handle: str
    side: str
    token_address: str
    amount: float


class LiveSwapExecutor:
    """Builds, signs and broadcasts router swaps; settlement is checked elsewhere."""

    def __init__(self, rpc_url: str | None = None, router_address: str | None = None) -> None:
        router = (router_address or config.LIVE_ROUTER_ADDRESS or "").strip()
        if not router:
            raise ValueError("LIVE_ROUTER_ADDRESS is empty")
        rpc = (rpc_url or config.RPC_PRIMARY or config.RPC_SECONDARY or "").strip()
        if not rpc:
            raise ValueError("RPC_PRIMARY/RPC_SECONDARY is empty")

        self.w3 = Web3(HTTPProvider(rpc, request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS}))
        self.router_address = self.w3.to_checksum_address(router)
        self.router: Contract = self.w3.eth.contract(address=self.router_address, abi=ROUTER_ABI)
        self._weth: str | None = self.w3.to_checksum_address(config.WETH_ADDRESS) if config.WETH_ADDRESS else None

    @property
    def weth(self) -> str:
        if self._weth is None:
            self._weth = self.w3.to_checksum_address(self.router.functions.WETH().call())
        return self._weth

    async def native_balance(self, wallet_address: str) -> float:
        def _balance() -> float:
            wei = self.w3.eth.get_balance(self.w3.to_checksum_address(wallet_address))
            return float(self.w3.from_wei(wei, "ether"))

        try:
            return await asyncio.to_thread(_balance)
        except Exception as exc:
            raise DataUnavailable(f"native balance lookup failed: {exc}") from exc

    async def buy(self, wallet: LocalAccount, token_address: str, amount_in_base_unit: float, max_slippage: float) -> SwapSubmission:
        try:
            tx_hash = await asyncio.to_thread(self._buy_sync, wallet, token_address, float(amount_in_base_unit), float(max_slippage))
        except SubmissionError:
            raise
        except Exception as exc:
            raise SubmissionError(f"buy_submit_failed:{exc}") from exc
        logger.info("SWAP_SUBMIT side=buy token=%s amount_eth=%.8f tx=%s", token_address, amount_in_base_unit, tx_hash)
        return SwapSubmission(True, tx_hash, "buy", token_address, float(amount_in_base_unit))

    async def sell(self, wallet: LocalAccount, token_address: str, amount_in_base_unit: int, max_slippage: float) -> SwapSubmission:
        try:
            tx_hash = await asyncio.to_thread(self._sell_sync, wallet, token_address, int(amount_in_base_unit), float(max_slippage))
        except SubmissionError:
            raise
        except Exception as exc:
            raise SubmissionError(f"sell_submit_failed:{exc}") from exc
        logger.info("SWAP_SUBMIT side=sell token=%s amount_raw=%s tx=%s", token_address, amount_in_base_unit, tx_hash)
        return SwapSubmission(True, tx_hash, "sell", token_address, float(amount_in_base_unit))

    def _buy_sync(self, wallet: LocalAccount, token_address: str, spend_eth: float, max_slippage: float) -> str:
        token = self.w3.to_checksum_address(token_address)
        amount_in = int(self.w3.to_wei(spend_eth, "ether"))
        if amount_in <= 0:
            raise SubmissionError("amount_in is zero")

        path = [self.weth, token]
        amount_out_min = self._estimate_amount_out_min(amount_in, path, max_slippage)
        tx = self.router.functions.swapExactETHForTokensSupportingFeeOnTransferTokens(
            amount_out_min,
            path,
            wallet.address,
            self._deadline(),
        ).build_transaction(self._tx_params(wallet, value_wei=amount_in))
        return self._sign_and_send(wallet, tx)

    def _sell_sync(self, wallet: LocalAccount, token_address: str, token_amount_raw: int, max_slippage: float) -> str:
        token = self.w3.to_checksum_address(token_address)
        if token_amount_raw <= 0:
            raise SubmissionError("token_amount_raw is zero")

        token_contract = self.w3.eth.contract(address=token, abi=ERC20_ABI)
        self._ensure_allowance(wallet, token_contract, token_amount_raw)

        path = [token, self.weth]
        amount_out_min = self._estimate_amount_out_min(token_amount_raw, path, max_slippage)
        tx = self.router.functions.swapExactTokensForETHSupportingFeeOnTransferTokens(
            int(token_amount_raw),
            amount_out_min,
            path,
            wallet.address,
            self._deadline(),
        ).build_transaction(self._tx_params(wallet))
        return self._sign_and_send(wallet, tx)

    def _ensure_allowance(self, wallet: LocalAccount, token_contract: Contract, required_amount: int) -> None:
        allowance = int(token_contract.functions.allowance(wallet.address, self.router_address).call())
        if allowance >= required_amount:
            return
        approve_tx = token_contract.functions.approve(self.router_address, (2**256) - 1).build_transaction(
            self._tx_params(wallet)
        )
        tx_hash = self._sign_and_send(wallet, approve_tx)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=int(config.LIVE_APPROVE_TIMEOUT_SECONDS))
        if int(receipt.status) != 1:
            raise SubmissionError(f"approve_failed hash={tx_hash}")

    def _estimate_amount_out_min(self, amount_in: int, path: list[str], max_slippage_percent: float) -> int:
        try:
            amounts = self.router.functions.getAmountsOut(int(amount_in), path).call()
        except Exception as exc:
            raise SubmissionError(f"quote_failed:{exc}") from exc
        quoted_out = int(amounts[-1]) if amounts else 0
        if quoted_out <= 0:
            raise SubmissionError("quote_zero")
        slip_bps = max(1, min(9_999, int(round(float(max_slippage_percent) * 100))))
        return max(1, int(quoted_out * (10_000 - slip_bps) / 10_000))

    def _deadline(self) -> int:
        return int(time.time()) + int(config.LIVE_SWAP_DEADLINE_SECONDS)

    def _tx_params(self, wallet: LocalAccount, value_wei: int = 0) -> dict[str, Any]:
        pending_nonce = self.w3.eth.get_transaction_count(wallet.address, "pending")
        latest = self.w3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(self.w3.to_wei(max(0.0, float(config.LIVE_PRIORITY_FEE_GWEI)), "gwei"))
        cap = int(self.w3.to_wei(max(0.0, float(config.LIVE_MAX_GAS_GWEI)), "gwei"))
        if cap <= 0:
            cap = int(self.w3.to_wei(1, "gwei"))

        observed_gas_price = int(self.w3.eth.gas_price or 0)
        if observed_gas_price > cap:
            obs_gwei = float(self.w3.from_wei(observed_gas_price, "gwei"))
            cap_gwei = float(self.w3.from_wei(cap, "gwei"))
            raise SubmissionError(f"gas_price_too_high observed_gwei={obs_gwei:.3f} cap_gwei={cap_gwei:.3f}")

        # Keep max fee between the observed gas price and the configured cap.
        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        if max_fee <= 0:
            max_fee = min(cap, int(self.w3.to_wei(1, "gwei")))

        return {
            "from": wallet.address,
            "chainId": int(config.LIVE_CHAIN_ID),
            "nonce": pending_nonce,
            "value": int(value_wei),
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority, max_fee),
            "type": 2,
        }

    def _sign_and_send(self, wallet: LocalAccount, tx: dict[str, Any]) -> str:
        gas = self.w3.eth.estimate_gas(tx)
        gas_limit = int(gas * 1.15)
        gas_cap = int(getattr(config, "LIVE_MAX_SWAP_GAS", 0) or 0)
        if gas_cap > 0 and gas_limit > gas_cap:
            raise SubmissionError(f"gas_estimate_too_high gas={gas_limit} cap={gas_cap}")
        tx["gas"] = gas_limit

        bal = int(self.w3.eth.get_balance(wallet.address))
        worst_cost = (gas_limit * int(tx.get("maxFeePerGas") or 0)) + int(tx.get("value") or 0)
        # Base charges an extra L1 data fee on top of the L2 gas.
        if int(worst_cost * 1.20) > bal:
            have_eth = float(self.w3.from_wei(bal, "ether"))
            want_eth = float(self.w3.from_wei(int(worst_cost * 1.20), "ether"))
            raise SubmissionError(f"insufficient_balance_for_tx have_eth={have_eth:.8f} want_eth={want_eth:.8f}")

        signed = wallet.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise SubmissionError("signed_tx_missing_raw_bytes")
        tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
        return self.w3.to_hex(tx_hash)
