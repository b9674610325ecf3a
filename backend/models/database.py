from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    Numeric,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
import logging
import uuid

from config import settings
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


# ==================== QUESTS ====================


class Quest(Base):
    """A user-owned quest; auto-verifiable kinds carry their ledger rule"""

    __tablename__ = "quests"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="")
    description = Column(Text, nullable=True)

    # Verification rule
    verification_kind = Column(
        String, nullable=False, default="manual"
    )  # manual | savings-transfer | protocol-interaction
    wallets = Column(JSON, nullable=False, default=list)  # candidate wallets, priority order
    source_wallet = Column(String, nullable=True)  # sender constraint for savings quests
    token_type = Column(String, nullable=False, default="EITHER")  # SOL | USDC | EITHER
    min_amount = Column(Numeric(24, 12, asdecimal=False), nullable=False, default=0.0)
    protocol = Column(String, nullable=True)
    custom_identifiers = Column(JSON, nullable=True)  # {"match": [...], "exclude": [...]}
    auto_verify = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    completions = relationship(
        "QuestCompletion",
        back_populates="quest",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_quests_kind_auto", "verification_kind", "auto_verify"),)


class QuestCompletion(Base):
    """Fact that a quest was satisfied on one UTC calendar day"""

    __tablename__ = "quest_completions"

    id = Column(String, primary_key=True, default=_new_id)
    quest_id = Column(
        String, ForeignKey("quests.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String, nullable=True)
    completed_date = Column(Date, nullable=False)
    auto_verified = Column(Boolean, nullable=False, default=False)
    tx_signature = Column(String, nullable=True)  # evidence only
    created_at = Column(DateTime, default=utcnow)

    quest = relationship("Quest", back_populates="completions")

    __table_args__ = (
        UniqueConstraint("quest_id", "completed_date", name="uq_quest_completion_day"),
        Index("idx_quest_completion_quest", "quest_id"),
    )


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite connections: WAL, busy timeout, FK enforcement for cascades."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def install_sqlite_pragmas(engine) -> None:
    """Attach the SQLite pragma hook to an async engine (no-op for other backends)."""
    if engine.dialect.name != "sqlite":
        return
    event.listens_for(engine.sync_engine, "connect")(_set_sqlite_pragma)


install_sqlite_pragmas(async_engine)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


async def init_database(engine=None):
    """Create quest tables if they do not exist yet."""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", engine.url.render_as_string(hide_password=True))
