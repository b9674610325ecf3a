"""Transient ledger records and per-day aggregates.

Nothing in this module is persisted. ``LedgerTransaction`` instances are
produced by the transaction parser, consumed once by a classifier and then
dropped; ``DayAggregate`` lives only for the duration of one verification
run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_CEILING, Decimal
from typing import Optional

from config import settings
from models.quest import TokenKind

SYSTEM_PROGRAM = "system"
SPL_TOKEN_PROGRAMS = frozenset({"spl-token", "spl-token-2022"})

TOKEN_DECIMALS = {
    TokenKind.SOL: settings.SOL_DECIMALS,
    TokenKind.USDC: settings.USDC_DECIMALS,
}


def to_raw_units(amount: float, token: TokenKind) -> int:
    """Whole-token amount to base units (lamports, micro-USDC), rounded up.

    Rounding up keeps ``raw_total >= to_raw_units(minimum)`` equivalent to
    ``raw_total >= minimum`` for any decimal minimum.
    """
    scaled = Decimal(str(amount)).scaleb(TOKEN_DECIMALS[token])
    return int(scaled.to_integral_value(rounding=ROUND_CEILING))


def from_raw_units(amount_raw: int, token: TokenKind) -> float:
    return float(Decimal(int(amount_raw)).scaleb(-TOKEN_DECIMALS[token]))


@dataclass(frozen=True)
class SignatureInfo:
    """One row of ``getSignaturesForAddress``."""

    signature: str
    block_time: Optional[int]
    failed: bool = False


@dataclass(frozen=True)
class TokenBalance:
    account: str
    mint: str
    owner: Optional[str]
    amount_raw: int
    decimals: int


@dataclass(frozen=True)
class TransferInstruction:
    """A parsed native or SPL-token transfer, top-level or inner."""

    program: str  # "system" | "spl-token" | "spl-token-2022"
    source: Optional[str]
    destination: Optional[str]
    amount_raw: int
    mint: Optional[str] = None
    decimals: Optional[int] = None
    authority: Optional[str] = None
    source_owner: Optional[str] = None  # wallet owning the source token account
    destination_owner: Optional[str] = None  # wallet owning the destination token account
    inner: bool = False

    @property
    def is_native(self) -> bool:
        return self.program == SYSTEM_PROGRAM


@dataclass(frozen=True)
class LedgerTransaction:
    signature: str
    block_time: int
    account_keys: tuple[str, ...] = ()
    signers: tuple[str, ...] = ()
    program_ids: tuple[str, ...] = ()
    transfers: tuple[TransferInstruction, ...] = ()
    log_messages: tuple[str, ...] = ()
    pre_token_balances: tuple[TokenBalance, ...] = ()
    post_token_balances: tuple[TokenBalance, ...] = ()
    failed: bool = False


@dataclass(frozen=True)
class ClassifiedMatch:
    """One unit of evidence a classifier found in a transaction.

    Savings classifiers emit one per matched transfer (with ``token`` and
    ``amount_raw`` in base units); protocol classifiers emit one per matching
    transaction.
    """

    signature: str
    block_time: int
    token: Optional[TokenKind] = None
    amount_raw: int = 0
    detail: str = ""

    @property
    def amount(self) -> float:
        return from_raw_units(self.amount_raw, self.token) if self.token is not None else 0.0


@dataclass
class DayAggregate:
    day: date
    match_count: int = 0
    totals: dict[TokenKind, int] = field(default_factory=dict)  # base units
    first_matching_signature: Optional[str] = None
    _first_block_time: Optional[int] = field(default=None, repr=False, compare=False)

    def add(self, match: ClassifiedMatch) -> None:
        self.match_count += 1
        if match.token is not None:
            self.totals[match.token] = self.totals.get(match.token, 0) + match.amount_raw
        # Earliest match in the day is the evidence signature; ties keep the first seen.
        if self._first_block_time is None or match.block_time < self._first_block_time:
            self._first_block_time = match.block_time
            self.first_matching_signature = match.signature

    def total_for(self, token: TokenKind) -> int:
        return self.totals.get(token, 0)

    def display_totals(self) -> dict[str, float]:
        return {token.value: from_raw_units(raw, token) for token, raw in self.totals.items()}

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "match_count": self.match_count,
            "totals": self.display_totals(),
            "signature": self.first_matching_signature,
        }


@dataclass(frozen=True)
class NewCompletion:
    quest_id: str
    completed_date: date
    tx_signature: Optional[str] = None
    auto_verified: bool = True
