"""Quest verification routes: manual refresh, historical sync and the cron trigger."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from config import settings
from models.quest import QuestRule
from services.completion_store import CompletionStore, QuestStore
from services.day_window import calculate_streak, seconds_until_utc_midnight
from services.ledger_client import LedgerError, ledger_client
from services.protocol_registry import protocol_registry
from services.quest_verifier import VerificationError, quest_verifier, run_auto_verify_cycle
from utils.logger import api_logger as logger
from utils.utcnow import utc_today
from utils.validation import BackfillParams, validate_solana_address

router = APIRouter()

quest_store = QuestStore()
completion_store = CompletionStore()


async def _load_rule(quest_id: str) -> QuestRule:
    try:
        rule = await quest_store.get_rule(quest_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if rule is None:
        raise HTTPException(status_code=404, detail="Quest not found")
    if not rule.is_auto_verifiable:
        raise HTTPException(status_code=400, detail="Manual quests cannot be auto-verified")
    return rule


@router.post("/quests/{quest_id}/check")
async def check_quest(quest_id: str):
    """Check today's UTC window for a quest (manual refresh)."""
    rule = await _load_rule(quest_id)
    try:
        result = await quest_verifier.check_today(rule)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except VerificationError as e:
        logger.error("Quest check failed", quest_id=quest_id, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.post("/quests/{quest_id}/backfill")
async def backfill_quest(quest_id: str, params: Optional[BackfillParams] = None):
    """Record every qualifying day found in the primary wallet's recent history."""
    rule = await _load_rule(quest_id)
    limit = params.signature_limit if params else None
    try:
        result = await quest_verifier.backfill(rule, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except VerificationError as e:
        logger.error("Quest backfill failed", quest_id=quest_id, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.get("/quests/{quest_id}/completions")
async def get_quest_completions(quest_id: str):
    quest = await quest_store.get_quest(quest_id)
    if quest is None:
        raise HTTPException(status_code=404, detail="Quest not found")

    completions = await completion_store.list_completions(quest_id)
    today = utc_today()
    return {
        "quest_id": quest_id,
        "completions": [
            {
                "date": c.completed_date.isoformat(),
                "auto_verified": bool(c.auto_verified),
                "tx_signature": c.tx_signature,
            }
            for c in completions
        ],
        "completed_today": any(c.completed_date == today for c in completions),
        "streak": calculate_streak((c.completed_date for c in completions), today),
        "seconds_until_reset": seconds_until_utc_midnight(),
    }


@router.post("/auto-verify")
async def auto_verify(authorization: Optional[str] = Header(default=None)):
    """Cron entry point: check every open auto-verifiable quest once."""
    secret = settings.CRON_SECRET
    if secret:
        expected = f"Bearer {secret}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")
    return await run_auto_verify_cycle(quest_verifier, quest_store)


@router.get("/protocols")
async def list_protocols():
    return {
        "protocols": [
            {"name": name, **protocol_registry.identifiers_for(name).to_json()}
            for name in protocol_registry.names()
        ],
        "shared_identifiers": protocol_registry.shared_identifiers(),
    }


@router.get("/wallets/{address}/balance")
async def get_wallet_balance(address: str):
    try:
        address = validate_solana_address(address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        sol = await ledger_client.get_balance(address)
        usdc = await ledger_client.get_token_balance(address, settings.USDC_MINT)
    except LedgerError as e:
        logger.warning("Balance lookup failed", address=address, error=str(e))
        raise HTTPException(status_code=503, detail="Ledger unavailable")
    return {"address": address, "sol": sol, "usdc": usdc}
