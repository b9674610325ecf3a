import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import USDC_MINT, unix
from models.ledger import LedgerTransaction, TokenBalance, TransferInstruction
from models.quest import (
    ProtocolIdentifierSet,
    QuestRule,
    TokenKind,
    TokenSelector,
    VerificationKind,
)
from services.protocol_registry import ProtocolRegistry, protocol_registry
from services.transaction_classifier import (
    ProtocolInteractionClassifier,
    SavingsTransferClassifier,
    classifier_for_quest,
    match_protocol,
    match_savings_transfers,
)
from services.transaction_parser import parse_transaction

SAVER = "SavingsWa11et"
SENDER = "SenderWa11et"


def _native(source, destination, lamports, inner=False):
    return TransferInstruction(
        program="system", source=source, destination=destination, amount_raw=lamports, inner=inner
    )


def _usdc(source_ata, dest_ata, amount, *, source_owner=SENDER, dest_owner=SAVER, authority=SENDER):
    return TransferInstruction(
        program="spl-token",
        source=source_ata,
        destination=dest_ata,
        amount_raw=amount,
        mint=USDC_MINT,
        decimals=6,
        authority=authority,
        source_owner=source_owner,
        destination_owner=dest_owner,
    )


def _tx(transfers=(), *, signers=(SENDER,), failed=False, **kwargs):
    return LedgerTransaction(
        signature=kwargs.pop("signature", "sig1"),
        block_time=kwargs.pop("block_time", unix(2024, 5, 1, 12)),
        signers=tuple(signers),
        transfers=tuple(transfers),
        failed=failed,
        **kwargs,
    )


# ==================== SAVINGS ====================


def test_native_transfer_matches_in_sol_units(raw_sol_transfer):
    tx = parse_transaction(raw_sol_transfer, "sigSolTransfer1")

    matches = match_savings_transfers(tx, SAVER, None, TokenSelector.SOL)

    assert len(matches) == 1
    assert matches[0].token is TokenKind.SOL
    assert matches[0].amount_raw == 20_000_000
    assert matches[0].amount == pytest.approx(0.02)
    assert matches[0].signature == "sigSolTransfer1"


def test_usdc_transfer_matches_via_destination_owner(raw_usdc_transfer):
    tx = parse_transaction(raw_usdc_transfer, "sigUsdcTransfer1")

    matches = match_savings_transfers(tx, SAVER, SENDER, TokenSelector.USDC, usdc_mint=USDC_MINT)

    assert [(m.token, m.amount) for m in matches] == [(TokenKind.USDC, pytest.approx(2.5))]


def test_selector_filters_token_kind():
    tx = _tx([_native(SENDER, SAVER, 1_000_000_000), _usdc("a", "b", 3_000_000)])

    sol_only = match_savings_transfers(tx, SAVER, None, TokenSelector.SOL, usdc_mint=USDC_MINT)
    usdc_only = match_savings_transfers(tx, SAVER, None, TokenSelector.USDC, usdc_mint=USDC_MINT)
    either = match_savings_transfers(tx, SAVER, None, TokenSelector.EITHER, usdc_mint=USDC_MINT)

    assert [m.token for m in sol_only] == [TokenKind.SOL]
    assert [m.token for m in usdc_only] == [TokenKind.USDC]
    assert len(either) == 2


def test_batched_transfers_are_all_returned():
    tx = _tx([_native(SENDER, SAVER, 10_000_000), _native(SENDER, SAVER, 5_000_000, inner=True)])

    matches = match_savings_transfers(tx, SAVER)

    assert [m.amount for m in matches] == [pytest.approx(0.01), pytest.approx(0.005)]
    assert matches[1].detail.startswith("inner")


def test_other_mints_and_other_destinations_do_not_match():
    other_mint = TransferInstruction(
        program="spl-token",
        source="a",
        destination="b",
        amount_raw=1_000_000,
        mint="So11111111111111111111111111111111111111112",
        destination_owner=SAVER,
    )
    tx = _tx([other_mint, _native(SENDER, "SomeoneElse", 1_000)])

    assert match_savings_transfers(tx, SAVER, usdc_mint=USDC_MINT) == []


def test_source_constraint_accepts_declared_source_or_signer():
    declared = _tx([_native(SENDER, SAVER, 1_000)], signers=("Relayer",))
    via_signer = _tx([_native("IntermediateAcct", SAVER, 1_000)], signers=(SENDER,))
    stranger = _tx([_native("Stranger", SAVER, 1_000)], signers=("Stranger",))

    assert match_savings_transfers(declared, SAVER, SENDER)
    assert match_savings_transfers(via_signer, SAVER, SENDER)
    assert match_savings_transfers(stranger, SAVER, SENDER) == []


def test_failed_transaction_never_matches():
    tx = _tx([_native(SENDER, SAVER, 1_000_000_000)], failed=True)
    assert match_savings_transfers(tx, SAVER) == []


def test_usdc_balance_delta_fallback_without_transfer_instruction():
    tx = _tx(
        [],
        signers=(SENDER,),
        pre_token_balances=(TokenBalance("SaverAta", USDC_MINT, SAVER, 1_000_000, 6),),
        post_token_balances=(TokenBalance("SaverAta", USDC_MINT, SAVER, 4_000_000, 6),),
    )

    matches = match_savings_transfers(tx, SAVER, SENDER, TokenSelector.EITHER, usdc_mint=USDC_MINT)

    assert len(matches) == 1
    assert matches[0].token is TokenKind.USDC
    assert matches[0].amount == pytest.approx(3.0)
    assert matches[0].detail == "token balance delta"


def test_balance_delta_is_not_double_counted_with_instruction():
    tx = _tx(
        [_usdc("SenderAta", "SaverAta", 2_000_000)],
        pre_token_balances=(TokenBalance("SaverAta", USDC_MINT, SAVER, 0, 6),),
        post_token_balances=(TokenBalance("SaverAta", USDC_MINT, SAVER, 2_000_000, 6),),
    )

    matches = match_savings_transfers(tx, SAVER, usdc_mint=USDC_MINT)

    assert [m.amount for m in matches] == [pytest.approx(2.0)]


def test_balance_delta_respects_source_constraint():
    tx = _tx(
        [],
        signers=("Stranger",),
        pre_token_balances=(TokenBalance("SaverAta", USDC_MINT, SAVER, 0, 6),),
        post_token_balances=(TokenBalance("SaverAta", USDC_MINT, SAVER, 1_000_000, 6),),
    )
    assert match_savings_transfers(tx, SAVER, SENDER, usdc_mint=USDC_MINT) == []


# ==================== PROTOCOL ====================


def test_protocol_match_on_account_key(raw_jupiter_swap):
    tx = parse_transaction(raw_jupiter_swap, "sigJupiterSwap1")

    match = match_protocol(tx, protocol_registry.identifiers_for("jupiter"))

    assert match is not None
    assert match.signature == "sigJupiterSwap1"
    assert match.token is None


def test_protocol_match_on_log_is_case_insensitive():
    identifiers = ProtocolIdentifierSet.of(["JustUseJupiter"])
    tx = _tx(log_messages=("Program log: justusejupiter route",))

    assert match_protocol(tx, identifiers) is not None


def test_exclusion_takes_precedence_over_match():
    jupiter = protocol_registry.identifiers_for("jupiter")
    tx = _tx(log_messages=("Program log: JustUseJupiter via Titan router",))

    assert match_protocol(tx, jupiter) is None
    assert match_protocol(tx, protocol_registry.identifiers_for("titan")) is not None


def test_exclusion_is_scoped_to_the_same_key_or_line():
    jupiter = protocol_registry.identifiers_for("jupiter")
    tx = _tx(log_messages=("Program log: titan quote", "Program log: JustUseJupiter"))

    assert match_protocol(tx, jupiter) is not None


def test_account_keys_are_case_sensitive():
    identifiers = ProtocolIdentifierSet.of(["JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"])
    tx = _tx(account_keys=("jup6lkbzbjs1jkkwapdhny74zcz3tluzoi5qnyvtav4",))

    assert match_protocol(tx, identifiers) is None


def test_empty_identifiers_and_failed_tx_never_match(raw_jupiter_swap):
    tx = parse_transaction(raw_jupiter_swap, "sigJupiterSwap1")
    unknown = ProtocolRegistry({}).identifiers_for("jupiter")

    assert match_protocol(tx, unknown) is None
    assert match_protocol(_tx(failed=True, program_ids=(tx.program_ids)), protocol_registry.identifiers_for("jupiter")) is None


# ==================== QUEST BINDING ====================


def test_classifier_for_quest_builds_expected_predicate():
    savings = QuestRule(
        id="q1",
        owner_id="u1",
        kind=VerificationKind.SAVINGS_TRANSFER,
        wallets=(SAVER,),
        source_wallet=SENDER,
        token_selector=TokenSelector.SOL,
    )
    protocol = QuestRule(
        id="q2",
        owner_id="u1",
        kind=VerificationKind.PROTOCOL_INTERACTION,
        wallets=("A",),
        protocol="orca",
    )

    savings_classifier = classifier_for_quest(savings, SAVER)
    protocol_classifier = classifier_for_quest(protocol, "A")

    assert isinstance(savings_classifier, SavingsTransferClassifier)
    assert savings_classifier.source == SENDER
    assert isinstance(protocol_classifier, ProtocolInteractionClassifier)
    assert protocol_classifier.identifiers == protocol_registry.identifiers_for("orca")


def test_classifier_for_manual_quest_raises():
    manual = QuestRule(id="q3", owner_id="u1", kind=VerificationKind.MANUAL)
    with pytest.raises(ValueError):
        classifier_for_quest(manual, "A")
