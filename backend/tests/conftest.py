"""Shared fixtures for quest verification tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from datetime import datetime, timezone

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
JUPITER_V6 = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


def unix(year, month, day, hour=0, minute=0, second=0) -> int:
    return int(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp())


# ---------------------------------------------------------------------------
# Raw RPC payload builders (mimicking getTransaction jsonParsed results)
# ---------------------------------------------------------------------------


def system_transfer(source, destination, lamports, kind="transfer"):
    return {
        "program": "system",
        "programId": SYSTEM_PROGRAM_ID,
        "parsed": {
            "type": kind,
            "info": {"source": source, "destination": destination, "lamports": lamports},
        },
    }


def token_transfer_checked(source, destination, amount, authority, mint=USDC_MINT, decimals=6):
    return {
        "program": "spl-token",
        "programId": TOKEN_PROGRAM_ID,
        "parsed": {
            "type": "transferChecked",
            "info": {
                "source": source,
                "destination": destination,
                "mint": mint,
                "authority": authority,
                "tokenAmount": {
                    "amount": str(amount),
                    "decimals": decimals,
                    "uiAmount": amount / (10**decimals),
                },
            },
        },
    }


def token_transfer(source, destination, amount, authority):
    return {
        "program": "spl-token",
        "programId": TOKEN_PROGRAM_ID,
        "parsed": {
            "type": "transfer",
            "info": {
                "source": source,
                "destination": destination,
                "amount": str(amount),
                "authority": authority,
            },
        },
    }


def program_call(program_id):
    return {"programId": program_id, "accounts": [], "data": "3Bxs4h24hBtQy9rw"}


def token_balance(index, owner, amount, mint=USDC_MINT, decimals=6):
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {
            "amount": str(amount),
            "decimals": decimals,
            "uiAmount": amount / (10**decimals),
        },
    }


def raw_transaction(
    signature,
    block_time,
    account_keys,
    *,
    signers=(),
    instructions=(),
    inner_instructions=(),
    logs=(),
    pre_token_balances=(),
    post_token_balances=(),
    err=None,
):
    return {
        "slot": 262_000_000,
        "blockTime": block_time,
        "meta": {
            "err": err,
            "fee": 5000,
            "logMessages": list(logs),
            "preTokenBalances": list(pre_token_balances),
            "postTokenBalances": list(post_token_balances),
            "innerInstructions": (
                [{"index": 0, "instructions": list(inner_instructions)}] if inner_instructions else []
            ),
            "loadedAddresses": {"writable": [], "readonly": []},
        },
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [
                    {
                        "pubkey": key,
                        "signer": key in signers,
                        "writable": True,
                        "source": "transaction",
                    }
                    for key in account_keys
                ],
                "instructions": list(instructions),
            },
        },
    }


@pytest.fixture
def raw_sol_transfer():
    """0.02 SOL from a sender wallet to a savings wallet on 2024-05-01."""
    return raw_transaction(
        "sigSolTransfer1",
        unix(2024, 5, 1, 14, 30),
        ["SenderWa11et", "SavingsWa11et", SYSTEM_PROGRAM_ID],
        signers=("SenderWa11et",),
        instructions=[system_transfer("SenderWa11et", "SavingsWa11et", 20_000_000)],
        logs=["Program 11111111111111111111111111111111 invoke [1]"],
    )


@pytest.fixture
def raw_usdc_transfer():
    """2.5 USDC between token accounts, resolved to wallets via token balances."""
    return raw_transaction(
        "sigUsdcTransfer1",
        unix(2024, 5, 2, 9),
        ["SenderWa11et", "SenderUsdcAta", "SavingsUsdcAta", TOKEN_PROGRAM_ID],
        signers=("SenderWa11et",),
        instructions=[
            token_transfer_checked("SenderUsdcAta", "SavingsUsdcAta", 2_500_000, "SenderWa11et")
        ],
        pre_token_balances=[
            token_balance(1, "SenderWa11et", 10_000_000),
            token_balance(2, "SavingsWa11et", 0),
        ],
        post_token_balances=[
            token_balance(1, "SenderWa11et", 7_500_000),
            token_balance(2, "SavingsWa11et", 2_500_000),
        ],
    )


@pytest.fixture
def raw_jupiter_swap():
    return raw_transaction(
        "sigJupiterSwap1",
        unix(2024, 5, 3, 12),
        ["TraderWa11et", JUPITER_V6],
        signers=("TraderWa11et",),
        instructions=[program_call(JUPITER_V6)],
        logs=[
            f"Program {JUPITER_V6} invoke [1]",
            "Program log: Instruction: Route",
            f"Program {JUPITER_V6} success",
        ],
    )
