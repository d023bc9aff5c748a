"""Finalized transaction lookup over a web3 RPC."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from web3 import HTTPProvider, Web3
from web3.exceptions import TransactionNotFound

import config
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = Web3.keccak(text="Transfer(address,address,uint256)").hex().lower().removeprefix("0x")


@dataclass
class TokenTransfer:
    token: str
    sender: str
    recipient: str
    amount: int


@dataclass
class TransactionRecord:
    tx_hash: str
    succeeded: bool
    block_number: int = 0
    error: str = ""
    transfers: list[TokenTransfer] = field(default_factory=list)

    def token_delta(self, token_address: str, owner: str) -> int:
        """Net change of ``owner``'s balance of ``token_address`` within this transaction."""
        token = normalize_address(token_address)
        holder = normalize_address(owner)
        delta = 0
        for transfer in self.transfers:
            if transfer.token != token:
                continue
            if transfer.recipient == holder:
                delta += int(transfer.amount)
            if transfer.sender == holder:
                delta -= int(transfer.amount)
        return delta


def _topic_address(topic) -> str:
    raw = topic.hex() if hasattr(topic, "hex") else str(topic)
    raw = raw.lower().removeprefix("0x")
    return "0x" + raw[-40:]


def _log_amount(data) -> int:
    if isinstance(data, (bytes, bytearray)):
        return int.from_bytes(bytes(data), "big") if data else 0
    text = str(data or "").lower().removeprefix("0x")
    return int(text, 16) if text else 0


def parse_transfers(logs) -> list[TokenTransfer]:
    out: list[TokenTransfer] = []
    for log in logs or []:
        topics = list(log.get("topics") or [])
        if len(topics) < 3:
            continue
        topic0 = topics[0].hex() if hasattr(topics[0], "hex") else str(topics[0])
        if topic0.lower().removeprefix("0x") != TRANSFER_TOPIC:
            continue
        out.append(
            TokenTransfer(
                token=normalize_address(log.get("address")),
                sender=_topic_address(topics[1]),
                recipient=_topic_address(topics[2]),
                amount=_log_amount(log.get("data")),
            )
        )
    return out


class Web3Chain:
    """Waits for a receipt and its confirmation depth under one deadline."""

    def __init__(
        self,
        rpc_url: str | None = None,
        min_confirmations: int | None = None,
        receipt_timeout: float | None = None,
        poll_seconds: float | None = None,
        w3: Web3 | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if w3 is None:
            rpc = (rpc_url or config.RPC_PRIMARY or config.RPC_SECONDARY or "").strip()
            if not rpc:
                raise ValueError("RPC_PRIMARY/RPC_SECONDARY is empty")
            w3 = Web3(HTTPProvider(rpc, request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS}))
        self.w3 = w3
        self.min_confirmations = max(1, int(min_confirmations or config.CHAIN_MIN_CONFIRMATIONS))
        self.receipt_timeout = float(config.CHAIN_RECEIPT_TIMEOUT_SECONDS if receipt_timeout is None else receipt_timeout)
        self.poll_seconds = float(config.CHAIN_POLL_SECONDS if poll_seconds is None else poll_seconds)
        self._sleep = sleep

    async def get_finalized_transaction(self, confirmation_handle: str) -> TransactionRecord | None:
        return await asyncio.to_thread(self._get_finalized_transaction, confirmation_handle)

    def _get_finalized_transaction(self, tx_hash: str) -> TransactionRecord | None:
        """None only once the deadline passes with the transaction still unmined or shallow."""
        deadline = time.monotonic() + self.receipt_timeout
        attempts = 0
        while True:
            attempts += 1
            record = self._lookup(tx_hash)
            if record is not None:
                return record
            if time.monotonic() >= deadline:
                logger.warning("CHAIN_TIMEOUT tx=%s attempts=%s waited_s=%.1f", tx_hash, attempts, self.receipt_timeout)
                return None
            self._sleep(self.poll_seconds)

    def _lookup(self, tx_hash: str) -> TransactionRecord | None:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        block_number = int(receipt.get("blockNumber") or 0)
        head = int(self.w3.eth.block_number)
        if block_number <= 0 or (head - block_number + 1) < self.min_confirmations:
            logger.debug("CHAIN_PENDING tx=%s block=%s head=%s", tx_hash, block_number, head)
            return None
        succeeded = int(receipt.get("status", 0)) == 1
        return TransactionRecord(
            tx_hash=str(tx_hash),
            succeeded=succeeded,
            block_number=block_number,
            error="" if succeeded else "execution_reverted",
            transfers=parse_transfers(receipt.get("logs")),
        )
