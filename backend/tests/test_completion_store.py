import sys
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base, Quest, QuestCompletion, install_sqlite_pragmas
from models.ledger import NewCompletion
from models.quest import TokenSelector, VerificationKind
from services.completion_store import CompletionStore, QuestStore


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "completion_store.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    install_sqlite_pragmas(engine)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


async def _seed_quest(session_factory, quest_id="quest-1", **overrides):
    fields = dict(
        id=quest_id,
        user_id="user-1",
        title="Save daily",
        verification_kind=VerificationKind.SAVINGS_TRANSFER.value,
        wallets=["SavingsWa11et"],
        token_type=TokenSelector.SOL.value,
        min_amount=0.01,
        auto_verify=True,
    )
    fields.update(overrides)
    async with session_factory() as session:
        session.add(Quest(**fields))
        await session.commit()


@pytest.mark.asyncio
async def test_insert_completions_ignores_duplicates(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        await _seed_quest(session_factory)
        store = CompletionStore(session_factory)

        first = await store.insert_completions(
            [
                NewCompletion("quest-1", date(2024, 5, 1), "sigA"),
                NewCompletion("quest-1", date(2024, 5, 2), "sigB"),
            ],
            user_id="user-1",
        )
        second = await store.insert_completions(
            [
                NewCompletion("quest-1", date(2024, 5, 2), "sigOther"),
                NewCompletion("quest-1", date(2024, 5, 3), "sigC"),
            ]
        )

        assert first == 2
        assert second == 1
        assert await store.list_completed_dates("quest-1") == {
            date(2024, 5, 1),
            date(2024, 5, 2),
            date(2024, 5, 3),
        }

        rows = await store.list_completions("quest-1")
        assert [r.completed_date for r in rows] == [date(2024, 5, 3), date(2024, 5, 2), date(2024, 5, 1)]
        # The first writer's evidence is kept.
        assert rows[1].tx_signature == "sigB"
        assert rows[2].user_id == "user-1"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_insert_nothing_returns_zero(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        assert await CompletionStore(session_factory).insert_completions([]) == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_deleting_quest_cascades_completions(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        await _seed_quest(session_factory)
        store = CompletionStore(session_factory)
        await store.insert_completions([NewCompletion("quest-1", date(2024, 5, 1), "sigA")])

        async with session_factory() as session:
            quest = await session.get(Quest, "quest-1")
            await session.delete(quest)
            await session.commit()

        async with session_factory() as session:
            remaining = await session.scalar(select(func.count()).select_from(QuestCompletion))
        assert remaining == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_list_auto_verifiable_skips_manual_disabled_and_done_today(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        today = date(2024, 5, 1)
        await _seed_quest(session_factory, "open")
        await _seed_quest(session_factory, "done")
        await _seed_quest(session_factory, "manual", verification_kind=VerificationKind.MANUAL.value)
        await _seed_quest(session_factory, "disabled", auto_verify=False)
        await _seed_quest(
            session_factory,
            "defi",
            verification_kind=VerificationKind.PROTOCOL_INTERACTION.value,
            wallets=["A", "B"],
            protocol="Jupiter",
        )
        await _seed_quest(
            session_factory,
            "invalid",
            verification_kind=VerificationKind.PROTOCOL_INTERACTION.value,
            wallets=[],
            protocol="jupiter",
        )
        await CompletionStore(session_factory).insert_completions([NewCompletion("done", today, "sig")])

        rules = await QuestStore(session_factory).list_auto_verifiable(today)

        assert sorted(r.id for r in rules) == ["defi", "open"]
        defi = next(r for r in rules if r.id == "defi")
        assert defi.wallets == ("A", "B")
        assert defi.protocol == "jupiter"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_get_rule_maps_row_fields(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        await _seed_quest(session_factory, source_wallet="SenderWa11et", token_type="BOTH")
        store = QuestStore(session_factory)

        rule = await store.get_rule("quest-1")

        assert rule.kind is VerificationKind.SAVINGS_TRANSFER
        assert rule.primary_wallet == "SavingsWa11et"
        assert rule.source_wallet == "SenderWa11et"
        assert rule.token_selector is TokenSelector.EITHER
        assert rule.min_amount == pytest.approx(0.01)
        assert await store.get_rule("missing") is None
    finally:
        await engine.dispose()
