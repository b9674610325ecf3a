import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import (
    JUPITER_V6,
    USDC_MINT,
    raw_transaction,
    system_transfer,
    token_balance,
    token_transfer,
    unix,
)
from services.transaction_parser import parse_transaction


def test_parses_native_transfer(raw_sol_transfer):
    tx = parse_transaction(raw_sol_transfer, "sigSolTransfer1")

    assert tx.signature == "sigSolTransfer1"
    assert tx.block_time == unix(2024, 5, 1, 14, 30)
    assert tx.signers == ("SenderWa11et",)
    assert tx.failed is False
    assert len(tx.transfers) == 1
    transfer = tx.transfers[0]
    assert transfer.is_native
    assert transfer.destination == "SavingsWa11et"
    assert transfer.amount_raw == 20_000_000


def test_transfer_checked_resolves_owners_from_token_balances(raw_usdc_transfer):
    tx = parse_transaction(raw_usdc_transfer, "sigUsdcTransfer1")

    transfer = tx.transfers[0]
    assert transfer.mint == USDC_MINT
    assert transfer.decimals == 6
    assert transfer.amount_raw == 2_500_000
    assert transfer.source_owner == "SenderWa11et"
    assert transfer.destination_owner == "SavingsWa11et"
    assert transfer.authority == "SenderWa11et"


def test_plain_token_transfer_takes_mint_from_balances():
    raw = raw_transaction(
        "sigPlain",
        unix(2024, 5, 2),
        ["Owner", "SrcAta", "DstAta"],
        signers=("Owner",),
        instructions=[token_transfer("SrcAta", "DstAta", 1_000_000, "Owner")],
        pre_token_balances=[token_balance(1, "Owner", 5_000_000), token_balance(2, "Saver", 0)],
        post_token_balances=[token_balance(1, "Owner", 4_000_000), token_balance(2, "Saver", 1_000_000)],
    )
    transfer = parse_transaction(raw, "sigPlain").transfers[0]

    assert transfer.mint == USDC_MINT
    assert transfer.decimals == 6
    assert transfer.destination_owner == "Saver"


def test_inner_instructions_are_included_and_flagged():
    raw = raw_transaction(
        "sigInner",
        unix(2024, 5, 2),
        ["Payer", "Saver", JUPITER_V6],
        signers=("Payer",),
        instructions=[{"programId": JUPITER_V6, "accounts": [], "data": "x"}],
        inner_instructions=[system_transfer("Payer", "Saver", 1_000)],
    )
    tx = parse_transaction(raw, "sigInner")

    assert [t.inner for t in tx.transfers] == [True]
    assert JUPITER_V6 in tx.program_ids
    assert "11111111111111111111111111111111" in tx.program_ids


def test_lookup_table_addresses_are_appended_to_account_keys():
    raw = raw_transaction("sigV0", unix(2024, 5, 2), ["Payer"], signers=("Payer",))
    raw["meta"]["loadedAddresses"] = {"writable": ["LoadedW"], "readonly": ["LoadedR", "Payer"]}

    tx = parse_transaction(raw, "sigV0")

    assert tx.account_keys == ("Payer", "LoadedW", "LoadedR")


def test_missing_block_time_uses_fallback_then_fails():
    raw = raw_transaction("sigNoTime", None, ["Payer"])

    assert parse_transaction(raw, "sigNoTime", fallback_block_time=123).block_time == 123
    with pytest.raises(ValueError):
        parse_transaction(raw, "sigNoTime")


@pytest.mark.parametrize(
    "raw",
    [
        None,
        {"blockTime": 1},
        {"blockTime": 1, "transaction": {"message": {"accountKeys": []}}},
    ],
)
def test_malformed_payloads_raise_value_error(raw):
    with pytest.raises(ValueError):
        parse_transaction(raw, "sigBad")


def test_failed_transaction_is_flagged():
    raw = raw_transaction("sigErr", unix(2024, 5, 2), ["Payer"], err={"InstructionError": [0, "Custom"]})
    assert parse_transaction(raw, "sigErr").failed is True


def test_unreadable_instruction_is_skipped():
    bad = system_transfer("Payer", "Saver", "not-a-number")
    good = system_transfer("Payer", "Saver", 5)
    raw = raw_transaction("sigMixed", unix(2024, 5, 2), ["Payer", "Saver"], instructions=[bad, good])

    tx = parse_transaction(raw, "sigMixed")

    assert [t.amount_raw for t in tx.transfers] == [5]
