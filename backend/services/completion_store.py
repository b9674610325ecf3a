"""Persistence adapters for the verification engine.

``CompletionStore`` performs exactly the two operations an invocation needs:
one read of recorded dates and one batch insert. Duplicate (quest, date)
rows are ignored by the database (``ON CONFLICT DO NOTHING`` on SQLite and
PostgreSQL) so concurrent checks for the same quest cannot double-record a
day. ``QuestStore`` is read-only.
"""

from __future__ import annotations

from datetime import date
from typing import Optional, Sequence

from sqlalchemy import and_, exists, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from models.database import AsyncSessionLocal, Quest, QuestCompletion
from models.ledger import NewCompletion
from models.quest import QuestRule, VerificationKind
from utils.logger import store_logger as logger


class StoreConflict(Exception):
    """A completion for this (quest, date) already exists."""


class CompletionStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def list_completed_dates(self, quest_id: str) -> set[date]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QuestCompletion.completed_date).where(QuestCompletion.quest_id == quest_id)
            )
            return set(result.scalars().all())

    async def list_completions(self, quest_id: str) -> list[QuestCompletion]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QuestCompletion)
                .where(QuestCompletion.quest_id == quest_id)
                .order_by(QuestCompletion.completed_date.desc())
            )
            return list(result.scalars().all())

    async def insert_completions(
        self, completions: Sequence[NewCompletion], user_id: Optional[str] = None
    ) -> int:
        """Insert in one transaction; returns how many rows were actually new."""
        if not completions:
            return 0
        rows = [
            {
                "quest_id": c.quest_id,
                "user_id": user_id,
                "completed_date": c.completed_date,
                "auto_verified": c.auto_verified,
                "tx_signature": c.tx_signature,
            }
            for c in completions
        ]

        async with self._session_factory() as session:
            dialect = session.bind.dialect.name if session.bind is not None else ""
            if dialect in ("sqlite", "postgresql"):
                insert = sqlite_insert if dialect == "sqlite" else pg_insert
                stmt = insert(QuestCompletion).values(rows).on_conflict_do_nothing(
                    index_elements=["quest_id", "completed_date"]
                )
                result = await session.execute(stmt)
                await session.commit()
                if result is None or result.rowcount is None or result.rowcount < 0:
                    # Conservative fallback if driver does not report rowcount.
                    inserted = len(rows)
                else:
                    inserted = int(result.rowcount)
            else:
                inserted = await self._insert_one_by_one(session, rows)

        skipped = len(rows) - inserted
        if skipped:
            logger.debug("Ignored duplicate completions", skipped=skipped)
        return inserted

    async def _insert_row(self, session, row: dict) -> None:
        try:
            async with session.begin_nested():
                session.add(QuestCompletion(**row))
        except IntegrityError as e:
            raise StoreConflict(
                f"{row['quest_id']} already completed on {row['completed_date']}"
            ) from e

    async def _insert_one_by_one(self, session, rows: list[dict]) -> int:
        inserted = 0
        for row in rows:
            try:
                await self._insert_row(session, row)
                inserted += 1
            except StoreConflict as e:
                logger.debug("Completion already recorded", error=str(e))
        await session.commit()
        return inserted


class QuestStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def get_quest(self, quest_id: str) -> Optional[Quest]:
        async with self._session_factory() as session:
            return await session.get(Quest, quest_id)

    async def get_rule(self, quest_id: str) -> Optional[QuestRule]:
        quest = await self.get_quest(quest_id)
        return QuestRule.from_row(quest) if quest is not None else None

    async def list_auto_verifiable(self, today: date) -> list[QuestRule]:
        """Auto-verify quests of a ledger kind that have no completion for ``today``."""
        done_today = exists().where(
            and_(
                QuestCompletion.quest_id == Quest.id,
                QuestCompletion.completed_date == today,
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(Quest)
                .where(
                    Quest.auto_verify.is_(True),
                    Quest.verification_kind != VerificationKind.MANUAL.value,
                    ~done_today,
                )
                .order_by(Quest.created_at)
            )
            quests = result.scalars().all()

        rules = []
        for quest in quests:
            try:
                rules.append(QuestRule.from_row(quest).validate())
            except ValueError as e:
                logger.warning("Skipping invalid quest", quest_id=quest.id, error=str(e))
        return rules
