"""Turn a ``getTransaction`` (jsonParsed) result into a ``LedgerTransaction``.

Only the fields the classifiers need are kept: account keys, signers,
program ids, native/SPL transfers (top-level and inner), log lines and the
token balance snapshots. Anything else in the RPC payload is ignored.

Parsing errors raise ``ValueError``; the ledger client turns them into
``MalformedUpstreamData`` for the one signature concerned.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from models.ledger import (
    SPL_TOKEN_PROGRAMS,
    SYSTEM_PROGRAM,
    LedgerTransaction,
    TokenBalance,
    TransferInstruction,
)
from utils.logger import get_logger

logger = get_logger("transaction_parser")

_NATIVE_TRANSFER_TYPES = {"transfer", "transferWithSeed"}
_TOKEN_TRANSFER_TYPES = {"transfer", "transferChecked"}


def _key_of(entry: Any) -> Optional[str]:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        key = entry.get("pubkey")
        return str(key) if key else None
    return None


def _account_keys(message: dict, meta: dict) -> tuple[list[str], list[str]]:
    raw_keys = message.get("accountKeys")
    if not isinstance(raw_keys, list) or not raw_keys:
        raise ValueError("transaction message has no accountKeys")

    keys: list[str] = []
    signers: list[str] = []
    for entry in raw_keys:
        key = _key_of(entry)
        if key is None:
            raise ValueError(f"unreadable account key entry: {entry!r}")
        keys.append(key)
        if isinstance(entry, dict) and entry.get("signer"):
            signers.append(key)

    # Non-parsed encodings list signers as the first numRequiredSignatures keys.
    if not signers:
        header = message.get("header") or {}
        required = int(header.get("numRequiredSignatures") or 0)
        signers = keys[:required]

    # v0 transactions: jsonParsed already folds lookup-table addresses into
    # accountKeys, other encodings report them separately.
    loaded = meta.get("loadedAddresses") or {}
    seen = set(keys)
    for bucket in ("writable", "readonly"):
        for address in loaded.get(bucket) or ():
            if address and address not in seen:
                keys.append(str(address))
                seen.add(address)
    return keys, signers


def _token_balances(raw: Any, keys: list[str]) -> tuple[TokenBalance, ...]:
    balances = []
    for entry in raw or ():
        try:
            index = int(entry["accountIndex"])
            ui_amount = entry.get("uiTokenAmount") or {}
            balances.append(
                TokenBalance(
                    account=keys[index],
                    mint=str(entry["mint"]),
                    owner=entry.get("owner"),
                    amount_raw=int(ui_amount.get("amount") or 0),
                    decimals=int(ui_amount.get("decimals") or 0),
                )
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.debug("Skipping unreadable token balance", entry=entry, error=str(e))
    return tuple(balances)


def _program_id(instruction: dict, keys: list[str]) -> Optional[str]:
    program_id = instruction.get("programId")
    if program_id:
        return str(program_id)
    index = instruction.get("programIdIndex")
    if isinstance(index, int) and 0 <= index < len(keys):
        return keys[index]
    return None


def _parse_transfer(
    instruction: dict,
    balances_by_account: dict[str, TokenBalance],
    inner: bool,
) -> Optional[TransferInstruction]:
    program = instruction.get("program")
    parsed = instruction.get("parsed")
    if not isinstance(parsed, dict):
        return None
    kind = parsed.get("type")
    info = parsed.get("info") or {}

    if program == SYSTEM_PROGRAM and kind in _NATIVE_TRANSFER_TYPES:
        return TransferInstruction(
            program=SYSTEM_PROGRAM,
            source=info.get("source"),
            destination=info.get("destination"),
            amount_raw=int(info.get("lamports") or 0),
            inner=inner,
        )

    if program in SPL_TOKEN_PROGRAMS and kind in _TOKEN_TRANSFER_TYPES:
        source = info.get("source")
        destination = info.get("destination")
        source_balance = balances_by_account.get(source or "")
        destination_balance = balances_by_account.get(destination or "")

        if kind == "transferChecked":
            token_amount = info.get("tokenAmount") or {}
            amount_raw = int(token_amount.get("amount") or 0)
            decimals = token_amount.get("decimals")
            mint = info.get("mint")
        else:
            amount_raw = int(info.get("amount") or 0)
            decimals = None
            mint = None

        known = destination_balance or source_balance
        if mint is None and known is not None:
            mint = known.mint
        if decimals is None and known is not None:
            decimals = known.decimals

        return TransferInstruction(
            program=str(program),
            source=source,
            destination=destination,
            amount_raw=amount_raw,
            mint=mint,
            decimals=int(decimals) if decimals is not None else None,
            authority=info.get("authority") or info.get("multisigAuthority"),
            source_owner=source_balance.owner if source_balance else None,
            destination_owner=destination_balance.owner if destination_balance else None,
            inner=inner,
        )
    return None


def _iter_instructions(message: dict, meta: dict) -> Iterable[tuple[dict, bool]]:
    for instruction in message.get("instructions") or ():
        if isinstance(instruction, dict):
            yield instruction, False
    for group in meta.get("innerInstructions") or ():
        for instruction in (group or {}).get("instructions") or ():
            if isinstance(instruction, dict):
                yield instruction, True


def parse_transaction(
    raw: Any,
    signature: str,
    fallback_block_time: Optional[int] = None,
) -> LedgerTransaction:
    """Build a ``LedgerTransaction`` from one ``getTransaction`` result.

    ``fallback_block_time`` comes from the signature listing and is used when
    the transaction payload omits ``blockTime``.
    """
    if not isinstance(raw, dict):
        raise ValueError("transaction result is not an object")

    transaction = raw.get("transaction")
    if not isinstance(transaction, dict) or not isinstance(transaction.get("message"), dict):
        raise ValueError("transaction result has no message")
    message = transaction["message"]
    meta = raw.get("meta") or {}

    block_time = raw.get("blockTime")
    if block_time is None:
        block_time = fallback_block_time
    if block_time is None:
        raise ValueError("transaction has no block time")

    keys, signers = _account_keys(message, meta)
    pre_balances = _token_balances(meta.get("preTokenBalances"), keys)
    post_balances = _token_balances(meta.get("postTokenBalances"), keys)

    # Post balances win: a destination account may be created by this very transaction.
    balances_by_account = {b.account: b for b in pre_balances}
    balances_by_account.update({b.account: b for b in post_balances})

    program_ids: list[str] = []
    transfers: list[TransferInstruction] = []
    for instruction, inner in _iter_instructions(message, meta):
        program_id = _program_id(instruction, keys)
        if program_id and program_id not in program_ids:
            program_ids.append(program_id)
        try:
            transfer = _parse_transfer(instruction, balances_by_account, inner)
        except (TypeError, ValueError) as e:
            logger.debug(
                "Skipping unreadable instruction",
                signature=signature,
                program=instruction.get("program"),
                error=str(e),
            )
            continue
        if transfer is not None:
            transfers.append(transfer)

    return LedgerTransaction(
        signature=signature,
        block_time=int(block_time),
        account_keys=tuple(keys),
        signers=tuple(signers),
        program_ids=tuple(program_ids),
        transfers=tuple(transfers),
        log_messages=tuple(str(line) for line in (meta.get("logMessages") or ()) if line is not None),
        pre_token_balances=pre_balances,
        post_token_balances=post_balances,
        failed=meta.get("err") is not None,
    )
