"""Address normalization helpers."""

from __future__ import annotations

import re

EVM_ADDRESS_RE = re.compile(r"^0x[a-f0-9]{40}$")
ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for storage lookups and dedup."""
    return str(value or "").strip().lower()


def is_tradable_address(value: str | None) -> bool:
    address = normalize_address(value)
    return bool(EVM_ADDRESS_RE.match(address)) and address != ZERO_ADDRESS
