import re
from typing import Optional

from pydantic import BaseModel, Field

# Base58 alphabet (no 0, O, I, l); ed25519 pubkeys encode to 32-44 chars.
SOLANA_ADDRESS_REGEX = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def validate_solana_address(address: str) -> str:
    """Validate Solana address format"""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not SOLANA_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Solana address format: {address}")

    return address


def validate_limit(value: int, max_limit: int = 1000) -> int:
    """Clamp a page limit into [1, max_limit]"""
    if value < 1:
        return 1
    if value > max_limit:
        return max_limit
    return value


class BackfillParams(BaseModel):
    """Optional overrides for a historical sync"""

    signature_limit: Optional[int] = Field(default=None, ge=1, le=1000)
