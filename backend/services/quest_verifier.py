"""Verification orchestrator: ledger -> classifier -> day buckets -> completions.

Two modes:

* ``check_today`` walks the candidate wallets in order, looks only at the
  current UTC day and stops at the first wallet whose day aggregate meets
  the quest threshold.
* ``backfill`` scans the most recent signature page of the primary wallet
  and records every qualifying day not already recorded.

An invocation reads recorded dates once and writes one batch at the end, so
cancelling it at any await leaves the store untouched. Per-transaction
fetch failures only drop that transaction. A wallet whose signature listing
fails is skipped; only when nothing could be checked, or the store is down,
does the caller see ``VerificationError``.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from models.ledger import DayAggregate, LedgerTransaction, NewCompletion, SignatureInfo
from models.quest import QuestRule, TokenKind, VerificationKind
from services.completion_reconciler import reconcile, threshold_for_quest
from services.completion_store import CompletionStore, QuestStore
from services.day_window import bucketize, signatures_for_day
from services.ledger_client import LedgerError, SolanaLedgerClient, ledger_client
from services.protocol_registry import ProtocolRegistry, protocol_registry
from services.transaction_classifier import classifier_for_quest
from utils.logger import verifier_logger
from utils.utcnow import utc_today


class VerificationState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    RECONCILING = "reconciling"
    PERSISTED = "persisted"
    FAILED = "failed"


class VerificationError(Exception):
    """Ledger or store outage that prevented a verdict."""


@dataclass
class VerificationResult:
    quest_id: str
    mode: str
    verified: bool = False
    message: str = ""
    state: VerificationState = VerificationState.IDLE
    wallet: Optional[str] = None
    completed_date: Optional[date] = None
    signature: Optional[str] = None
    totals: dict[str, float] = field(default_factory=dict)
    match_count: int = 0
    already_recorded: bool = False
    new_dates: list[date] = field(default_factory=list)
    inserted: int = 0
    days_scanned: int = 0
    wallet_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "quest_id": self.quest_id,
            "mode": self.mode,
            "verified": self.verified,
            "message": self.message,
            "state": self.state.value,
            "wallet": self.wallet,
            "completed_date": self.completed_date.isoformat() if self.completed_date else None,
            "signature": self.signature,
            "totals": dict(self.totals),
            "match_count": self.match_count,
            "already_recorded": self.already_recorded,
            "new_dates": [d.isoformat() for d in self.new_dates],
            "inserted": self.inserted,
            "days_scanned": self.days_scanned,
            "wallet_errors": dict(self.wallet_errors),
        }


def _merge_signatures(*listings: list[SignatureInfo]) -> list[SignatureInfo]:
    """Union by signature, newest first; entries without a block time sort first."""
    seen: dict[str, SignatureInfo] = {}
    for listing in listings:
        for info in listing:
            seen.setdefault(info.signature, info)
    return sorted(
        seen.values(),
        key=lambda s: s.block_time if s.block_time is not None else float("inf"),
        reverse=True,
    )


class QuestVerifier:
    """Runs check-today and backfill for one quest at a time.

    Holds no per-invocation state; one instance is shared by the API and the
    worker.
    """

    def __init__(
        self,
        ledger: Optional[SolanaLedgerClient] = None,
        completion_store: Optional[CompletionStore] = None,
        registry: Optional[ProtocolRegistry] = None,
        *,
        concurrency: Optional[int] = None,
        check_today_limit: Optional[int] = None,
        backfill_limit: Optional[int] = None,
        usdc_mint: Optional[str] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        self.ledger = ledger or ledger_client
        self.store = completion_store or CompletionStore()
        self.registry = registry or protocol_registry
        self.concurrency = max(1, int(concurrency or settings.TX_FETCH_CONCURRENCY))
        self.check_today_limit = check_today_limit or settings.CHECK_TODAY_SIGNATURE_LIMIT
        self.backfill_limit = backfill_limit or settings.BACKFILL_SIGNATURE_LIMIT
        self.usdc_mint = usdc_mint or settings.USDC_MINT
        self.clock = clock or utc_today

    # ==================== FETCHING ====================

    def _tracks_usdc_accounts(self, quest: QuestRule) -> bool:
        return (
            quest.kind is VerificationKind.SAVINGS_TRANSFER
            and quest.token_selector.accepts(TokenKind.USDC)
        )

    async def _list_wallet_signatures(
        self, quest: QuestRule, wallet: str, limit: int
    ) -> list[SignatureInfo]:
        """Wallet signatures, merged with its USDC token accounts' for savings quests."""
        signatures = await self.ledger.list_signatures(wallet, limit)
        if not self._tracks_usdc_accounts(quest):
            return signatures

        log = verifier_logger.with_context(quest_id=quest.id, wallet=wallet)
        try:
            accounts = await self.ledger.get_token_accounts(wallet, self.usdc_mint)
        except LedgerError as e:
            log.warning("USDC token account lookup failed", error=str(e))
            return signatures

        listings = [signatures]
        for account in accounts:
            try:
                listings.append(await self.ledger.list_signatures(account.account, limit))
            except LedgerError as e:
                log.warning(
                    "USDC token account signature listing failed",
                    token_account=account.account,
                    error=str(e),
                )
        return _merge_signatures(*listings)

    async def _fetch_transactions(
        self, signatures: list[SignatureInfo]
    ) -> list[LedgerTransaction]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def fetch(info: SignatureInfo) -> Optional[LedgerTransaction]:
            async with semaphore:
                try:
                    return await self.ledger.get_transaction(info.signature, info.block_time)
                except LedgerError as e:
                    verifier_logger.warning(
                        "Transaction fetch failed", signature=info.signature, error=str(e)
                    )
                    return None

        wanted = [s for s in signatures if not s.failed]
        results = await asyncio.gather(*(fetch(s) for s in wanted))
        return [tx for tx in results if tx is not None]

    # ==================== STORE ====================

    async def _existing_dates(self, quest: QuestRule) -> set[date]:
        try:
            return await self.store.list_completed_dates(quest.id)
        except SQLAlchemyError as e:
            raise VerificationError(f"Completion store unavailable: {e}") from e

    async def _persist(self, quest: QuestRule, completions: list[NewCompletion]) -> int:
        try:
            return await self.store.insert_completions(completions, user_id=quest.owner_id)
        except SQLAlchemyError as e:
            raise VerificationError(f"Failed to record completions: {e}") from e

    # ==================== MODES ====================

    def _prepare(self, quest: QuestRule) -> None:
        if not quest.is_auto_verifiable:
            raise ValueError(f"Quest {quest.id} is a manual quest and cannot be auto-verified")
        quest.validate()

    async def check_today(self, quest: QuestRule) -> VerificationResult:
        self._prepare(quest)
        today = self.clock()
        result = VerificationResult(quest_id=quest.id, mode="check_today", completed_date=today)
        log = verifier_logger.with_context(quest_id=quest.id, mode="check_today")

        result.state = VerificationState.FETCHING
        existing = await self._existing_dates(quest)
        if today in existing:
            result.verified = True
            result.already_recorded = True
            result.state = VerificationState.PERSISTED
            result.message = "Quest already completed today"
            return result

        threshold = threshold_for_quest(quest)
        for wallet in quest.wallets:
            result.state = VerificationState.FETCHING
            try:
                signatures = await self._list_wallet_signatures(
                    quest, wallet, self.check_today_limit
                )
            except LedgerError as e:
                log.warning("Signature listing failed; skipping wallet", wallet=wallet, error=str(e))
                result.wallet_errors[wallet] = str(e)
                continue

            transactions = await self._fetch_transactions(signatures_for_day(signatures, today))

            result.state = VerificationState.CLASSIFYING
            classifier = classifier_for_quest(quest, wallet, self.registry, self.usdc_mint)
            buckets = bucketize(transactions, classifier, only_day=today)

            result.state = VerificationState.RECONCILING
            new = reconcile(quest.id, buckets, existing, threshold)
            if not new:
                log.debug("No qualifying activity today", wallet=wallet, transactions=len(transactions))
                continue

            result.inserted = await self._persist(quest, new)
            result.state = VerificationState.PERSISTED
            self._fill_evidence(result, wallet, buckets[today])
            result.verified = True
            result.new_dates = [c.completed_date for c in new]
            result.message = "Quest verified for today"
            log.info(
                "Quest verified",
                wallet=wallet,
                signature=result.signature,
                totals=result.totals,
                inserted=result.inserted,
            )
            return result

        if quest.wallets and len(result.wallet_errors) == len(quest.wallets):
            result.state = VerificationState.FAILED
            raise VerificationError(
                f"Ledger unavailable for every wallet of quest {quest.id}: "
                + "; ".join(f"{w}: {err}" for w, err in result.wallet_errors.items())
            )

        result.state = VerificationState.IDLE
        result.message = "No qualifying activity yet today"
        return result

    async def backfill(self, quest: QuestRule, limit: Optional[int] = None) -> VerificationResult:
        self._prepare(quest)
        wallet = quest.primary_wallet
        result = VerificationResult(quest_id=quest.id, mode="backfill", wallet=wallet)
        log = verifier_logger.with_context(quest_id=quest.id, mode="backfill", wallet=wallet)

        result.state = VerificationState.FETCHING
        existing = await self._existing_dates(quest)
        try:
            signatures = await self._list_wallet_signatures(
                quest, wallet, limit or self.backfill_limit
            )
        except LedgerError as e:
            result.state = VerificationState.FAILED
            raise VerificationError(f"Ledger unavailable for {wallet}: {e}") from e
        transactions = await self._fetch_transactions(signatures)

        result.state = VerificationState.CLASSIFYING
        classifier = classifier_for_quest(quest, wallet, self.registry, self.usdc_mint)
        buckets = bucketize(transactions, classifier)
        result.days_scanned = len(buckets)

        result.state = VerificationState.RECONCILING
        new = reconcile(quest.id, buckets, existing, threshold_for_quest(quest))
        if new:
            result.inserted = await self._persist(quest, new)
        result.state = VerificationState.PERSISTED

        result.new_dates = [c.completed_date for c in new]
        result.verified = bool(new)
        if new:
            latest = new[-1].completed_date
            self._fill_evidence(result, wallet, buckets[latest])
            result.completed_date = latest
            result.message = f"Recorded {len(new)} new completion(s)"
        else:
            result.message = "No new completions found"

        log.info(
            "Backfill finished",
            signatures=len(signatures),
            transactions=len(transactions),
            days_with_activity=len(buckets),
            already_recorded=len(existing),
            new_completions=len(new),
            inserted=result.inserted,
        )
        return result

    @staticmethod
    def _fill_evidence(result: VerificationResult, wallet: str, aggregate: DayAggregate) -> None:
        result.wallet = wallet
        result.signature = aggregate.first_matching_signature
        result.match_count = aggregate.match_count
        result.totals = aggregate.display_totals()


async def run_auto_verify_cycle(
    verifier: QuestVerifier,
    quest_store: Optional[QuestStore] = None,
    today: Optional[date] = None,
) -> dict[str, Any]:
    """Run ``check_today`` for every auto-verifiable quest still open today."""
    quest_store = quest_store or QuestStore()
    today = today or verifier.clock()
    quests = await quest_store.list_auto_verifiable(today)

    summary: dict[str, Any] = {
        "date": today.isoformat(),
        "checked": 0,
        "verified": 0,
        "not_yet": 0,
        "failed": 0,
        "results": [],
    }
    for quest in quests:
        summary["checked"] += 1
        try:
            result = await verifier.check_today(quest)
        except (VerificationError, ValueError) as e:
            summary["failed"] += 1
            verifier_logger.warning("Auto-verify failed", quest_id=quest.id, error=str(e))
            summary["results"].append({"quest_id": quest.id, "verified": False, "error": str(e)})
            continue
        summary["verified" if result.verified else "not_yet"] += 1
        summary["results"].append(result.to_dict())

    verifier_logger.info(
        "Auto-verify cycle complete",
        date=summary["date"],
        checked=summary["checked"],
        verified=summary["verified"],
        not_yet=summary["not_yet"],
        failed=summary["failed"],
    )
    return summary


# Singleton instance
quest_verifier = QuestVerifier()
