from .quest import (
    VerificationKind,
    TokenKind,
    TokenSelector,
    ProtocolIdentifierSet,
    EMPTY_IDENTIFIER_SET,
    QuestRule,
)
from .ledger import (
    SignatureInfo,
    TokenBalance,
    TransferInstruction,
    LedgerTransaction,
    ClassifiedMatch,
    DayAggregate,
    NewCompletion,
)

__all__ = [
    "VerificationKind",
    "TokenKind",
    "TokenSelector",
    "ProtocolIdentifierSet",
    "EMPTY_IDENTIFIER_SET",
    "QuestRule",
    "SignatureInfo",
    "TokenBalance",
    "TransferInstruction",
    "LedgerTransaction",
    "ClassifiedMatch",
    "DayAggregate",
    "NewCompletion",
]
