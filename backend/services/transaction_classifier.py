"""Pure predicates deciding whether one transaction satisfies a quest rule.

Two families exist, one per auto-verifiable quest kind:

* savings-transfer: every native or SPL-token transfer (top-level or inner)
  into the quest's destination wallet, optionally constrained to a sender,
  filtered by token selector. All matches are returned so the day bucket
  can sum batched transfers.
* protocol-interaction: substring search of account keys, program ids and
  log lines for the protocol's identifiers, with exclusion taking
  precedence on the same key or line.

Failed transactions never match.
"""

from __future__ import annotations

from itertools import chain
from typing import Iterable, Optional

from config import settings
from models.ledger import ClassifiedMatch, LedgerTransaction, TransferInstruction
from models.quest import (
    ProtocolIdentifierSet,
    QuestRule,
    TokenKind,
    TokenSelector,
    VerificationKind,
)
from services.protocol_registry import ProtocolRegistry, protocol_registry

# ==================== SAVINGS TRANSFERS ====================


def _token_of(transfer: TransferInstruction, usdc_mint: str) -> Optional[TokenKind]:
    if transfer.is_native:
        return TokenKind.SOL
    if transfer.mint == usdc_mint:
        return TokenKind.USDC
    return None


def _pays_into(transfer: TransferInstruction, destination: str) -> bool:
    if transfer.destination == destination:
        return True
    # SPL transfers name the token account; resolve it to its owning wallet.
    return not transfer.is_native and transfer.destination_owner == destination


def _sent_by(transfer: TransferInstruction, tx: LedgerTransaction, source: Optional[str]) -> bool:
    if not source:
        return True
    if source in (transfer.source, transfer.authority, transfer.source_owner):
        return True
    # Some wallets route through an intermediate account; the signer set still names the sender.
    return source in tx.signers


def _usdc_delta(tx: LedgerTransaction, owner: str, usdc_mint: str) -> int:
    def owned(balances) -> int:
        return sum(b.amount_raw for b in balances if b.owner == owner and b.mint == usdc_mint)

    return owned(tx.post_token_balances) - owned(tx.pre_token_balances)


def _delta_sender_ok(tx: LedgerTransaction, source: Optional[str], usdc_mint: str) -> bool:
    if not source:
        return True
    if source in tx.signers:
        return True
    return any(b.owner == source and b.mint == usdc_mint for b in tx.pre_token_balances)


def match_savings_transfers(
    tx: LedgerTransaction,
    destination: str,
    source: Optional[str] = None,
    selector: TokenSelector = TokenSelector.EITHER,
    *,
    usdc_mint: Optional[str] = None,
) -> list[ClassifiedMatch]:
    """Every transfer in ``tx`` that pays ``destination`` in a selected token."""
    if tx.failed or not destination:
        return []
    usdc_mint = usdc_mint or settings.USDC_MINT

    matches: list[ClassifiedMatch] = []
    saw_usdc_instruction = False
    for transfer in tx.transfers:
        token = _token_of(transfer, usdc_mint)
        if token is None or not _pays_into(transfer, destination):
            continue
        if token is TokenKind.USDC:
            saw_usdc_instruction = True
        if not selector.accepts(token) or transfer.amount_raw <= 0:
            continue
        if not _sent_by(transfer, tx, source):
            continue
        matches.append(
            ClassifiedMatch(
                signature=tx.signature,
                block_time=tx.block_time,
                token=token,
                amount_raw=transfer.amount_raw,
                detail=f"{'inner ' if transfer.inner else ''}{transfer.program} transfer",
            )
        )

    # Swaps and program-mediated deposits may credit USDC without a parsed
    # transfer instruction; fall back to the owner's balance delta.
    if selector.accepts(TokenKind.USDC) and not saw_usdc_instruction:
        delta = _usdc_delta(tx, destination, usdc_mint)
        if delta > 0 and _delta_sender_ok(tx, source, usdc_mint):
            matches.append(
                ClassifiedMatch(
                    signature=tx.signature,
                    block_time=tx.block_time,
                    token=TokenKind.USDC,
                    amount_raw=delta,
                    detail="token balance delta",
                )
            )
    return matches


# ==================== PROTOCOL INTERACTION ====================


def _excluded(text_lower: str, identifiers: ProtocolIdentifierSet) -> bool:
    return any(ex.lower() in text_lower for ex in identifiers.exclude)


def _first_hit(
    candidates: Iterable[str],
    identifiers: ProtocolIdentifierSet,
    *,
    case_sensitive: bool,
) -> Optional[tuple[str, str]]:
    for text in candidates:
        lowered = text.lower()
        for ident in identifiers.match:
            hit = ident in text if case_sensitive else ident.lower() in lowered
            if not hit:
                continue
            if _excluded(lowered, identifiers):
                break
            return ident, text
    return None


def match_protocol(
    tx: LedgerTransaction, identifiers: ProtocolIdentifierSet
) -> Optional[ClassifiedMatch]:
    """Evidence that ``tx`` interacted with the protocol, or ``None``."""
    if tx.failed or identifiers.is_empty:
        return None

    hit = _first_hit(chain(tx.account_keys, tx.program_ids), identifiers, case_sensitive=True)
    where = "account"
    if hit is None:
        hit = _first_hit(tx.log_messages, identifiers, case_sensitive=False)
        where = "log"
    if hit is None:
        return None

    ident, _text = hit
    return ClassifiedMatch(
        signature=tx.signature,
        block_time=tx.block_time,
        detail=f"{where} matched {ident}",
    )


# ==================== QUEST BINDING ====================


class SavingsTransferClassifier:
    """Savings predicate bound to one quest's wallet, sender and token selector."""

    def __init__(
        self,
        destination: str,
        source: Optional[str] = None,
        selector: TokenSelector = TokenSelector.EITHER,
        usdc_mint: Optional[str] = None,
    ):
        self.destination = destination
        self.source = source
        self.selector = selector
        self.usdc_mint = usdc_mint or settings.USDC_MINT

    def __call__(self, tx: LedgerTransaction) -> list[ClassifiedMatch]:
        return match_savings_transfers(
            tx, self.destination, self.source, self.selector, usdc_mint=self.usdc_mint
        )


class ProtocolInteractionClassifier:
    def __init__(self, identifiers: ProtocolIdentifierSet):
        self.identifiers = identifiers

    def __call__(self, tx: LedgerTransaction) -> list[ClassifiedMatch]:
        match = match_protocol(tx, self.identifiers)
        return [match] if match is not None else []


def classifier_for_quest(
    quest: QuestRule,
    wallet: str,
    registry: Optional[ProtocolRegistry] = None,
    usdc_mint: Optional[str] = None,
):
    """Build the per-wallet classifier for ``quest``; manual quests raise ``ValueError``."""
    if quest.kind is VerificationKind.SAVINGS_TRANSFER:
        return SavingsTransferClassifier(wallet, quest.source_wallet, quest.token_selector, usdc_mint)
    if quest.kind is VerificationKind.PROTOCOL_INTERACTION:
        registry = registry or protocol_registry
        return ProtocolInteractionClassifier(registry.resolve(quest.protocol, quest.custom_identifiers))
    raise ValueError(f"Quest {quest.id} is {quest.kind.value} and cannot be auto-verified")
