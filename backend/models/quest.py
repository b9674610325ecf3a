"""Quest verification rules as seen by the verification engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable, Optional


class VerificationKind(str, enum.Enum):
    MANUAL = "manual"
    SAVINGS_TRANSFER = "savings-transfer"
    PROTOCOL_INTERACTION = "protocol-interaction"


class TokenKind(str, enum.Enum):
    SOL = "SOL"
    USDC = "USDC"


class TokenSelector(str, enum.Enum):
    SOL = "SOL"
    USDC = "USDC"
    EITHER = "EITHER"

    @classmethod
    def parse(cls, raw: Any) -> "TokenSelector":
        text = str(raw or "").strip().upper()
        if text == "BOTH":  # legacy spelling
            return cls.EITHER
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown token selector: {raw!r}") from None

    def accepts(self, token: TokenKind) -> bool:
        if self is TokenSelector.EITHER:
            return True
        return self.value == token.value

    @property
    def tokens(self) -> tuple[TokenKind, ...]:
        if self is TokenSelector.EITHER:
            return (TokenKind.SOL, TokenKind.USDC)
        return (TokenKind(self.value),)


def _clean_strings(values: Iterable[Any]) -> frozenset[str]:
    return frozenset(s for s in (str(v).strip() for v in values if v is not None) if s)


@dataclass(frozen=True)
class ProtocolIdentifierSet:
    """Substrings that identify (``match``) or rule out (``exclude``) a protocol.

    Entries may be full program addresses or short log keywords; the
    classifier tests them by substring containment.
    """

    match: frozenset[str] = frozenset()
    exclude: frozenset[str] = frozenset()

    @classmethod
    def of(cls, match: Iterable[Any] = (), exclude: Iterable[Any] = ()) -> "ProtocolIdentifierSet":
        return cls(match=_clean_strings(match), exclude=_clean_strings(exclude))

    @classmethod
    def from_json(cls, raw: Any) -> Optional["ProtocolIdentifierSet"]:
        """Accept ``{"match": [...], "exclude": [...]}`` or a bare list of match strings."""
        if raw is None:
            return None
        if isinstance(raw, dict):
            identifiers = cls.of(raw.get("match") or (), raw.get("exclude") or ())
        elif isinstance(raw, (list, tuple, set, frozenset)):
            identifiers = cls.of(raw)
        else:
            return None
        return identifiers if identifiers.match else None

    @property
    def is_empty(self) -> bool:
        return not self.match

    def to_json(self) -> dict[str, list[str]]:
        return {"match": sorted(self.match), "exclude": sorted(self.exclude)}


EMPTY_IDENTIFIER_SET = ProtocolIdentifierSet()


@dataclass(frozen=True)
class QuestRule:
    """Immutable view of one quest's verification predicate.

    ``wallets`` are the candidate addresses in priority order. For
    savings-transfer quests each candidate is a destination (savings) wallet
    and ``source_wallet`` is the optional sender constraint. For
    protocol-interaction quests they are the wallets whose activity is
    inspected.
    """

    id: str
    owner_id: str
    kind: VerificationKind
    wallets: tuple[str, ...] = ()
    source_wallet: Optional[str] = None
    token_selector: TokenSelector = TokenSelector.EITHER
    min_amount: float = 0.0
    protocol: Optional[str] = None
    custom_identifiers: Optional[ProtocolIdentifierSet] = None
    title: str = ""

    @property
    def primary_wallet(self) -> Optional[str]:
        return self.wallets[0] if self.wallets else None

    @property
    def is_auto_verifiable(self) -> bool:
        return self.kind is not VerificationKind.MANUAL

    def validate(self) -> "QuestRule":
        """Raise ``ValueError`` when the rule violates its kind's invariants."""
        if self.min_amount < 0:
            raise ValueError("min_amount must be non-negative")
        if self.kind is VerificationKind.SAVINGS_TRANSFER:
            if not self.primary_wallet:
                raise ValueError("savings-transfer quests require a destination wallet")
        elif self.kind is VerificationKind.PROTOCOL_INTERACTION:
            if not self.wallets:
                raise ValueError("protocol-interaction quests require at least one wallet")
            if not (self.protocol or "").strip() and self.custom_identifiers is None:
                raise ValueError("protocol-interaction quests require a protocol or custom identifiers")
        return self

    @classmethod
    def from_row(cls, row: Any) -> "QuestRule":
        """Build a rule from a ``models.database.Quest`` row (or any object with its attributes)."""
        wallets = tuple(
            w for w in (str(x).strip() for x in (getattr(row, "wallets", None) or ())) if w
        )
        min_amount = getattr(row, "min_amount", None)
        return cls(
            id=str(row.id),
            owner_id=str(getattr(row, "user_id", "") or ""),
            kind=VerificationKind(row.verification_kind),
            wallets=wallets,
            source_wallet=(getattr(row, "source_wallet", None) or "").strip() or None,
            token_selector=TokenSelector.parse(getattr(row, "token_type", None) or "EITHER"),
            min_amount=float(min_amount) if min_amount is not None else 0.0,
            protocol=(getattr(row, "protocol", None) or "").strip().lower() or None,
            custom_identifiers=ProtocolIdentifierSet.from_json(getattr(row, "custom_identifiers", None)),
            title=str(getattr(row, "title", "") or ""),
        )
