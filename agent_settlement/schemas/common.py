"""Field validators shared by the request schemas."""

import re

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_address(v: str) -> str:
    """Accept any checksum casing; store lower-cased."""
    if not _ETH_ADDRESS_RE.match(v):
        raise ValueError("Invalid Ethereum address format (expected 0x + 40 hex chars)")
    return v.lower()


def validate_tx_hash(v: str) -> str:
    # Normalize: accept with or without 0x prefix
    v = v.strip()
    if not v.startswith("0x"):
        v = f"0x{v}"
    if not _TX_HASH_RE.match(v):
        raise ValueError("Invalid transaction hash (expected 64 hex chars, optional 0x prefix)")
    return v.lower()


def validate_agent_id(v: str) -> str:
    v = v.strip()
    if not _AGENT_ID_RE.match(v):
        raise ValueError("Agent id must be 1-64 letters, digits, hyphens or underscores")
    return v


def serialize_enum(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)
