from importlib import import_module

__all__ = [
    "ledger_client",
    "SolanaLedgerClient",
    "protocol_registry",
    "ProtocolRegistry",
    "quest_verifier",
    "QuestVerifier",
    "CompletionStore",
    "QuestStore",
]

_LAZY_EXPORTS = {
    "ledger_client": ("services.ledger_client", "ledger_client"),
    "SolanaLedgerClient": ("services.ledger_client", "SolanaLedgerClient"),
    "protocol_registry": ("services.protocol_registry", "protocol_registry"),
    "ProtocolRegistry": ("services.protocol_registry", "ProtocolRegistry"),
    "quest_verifier": ("services.quest_verifier", "quest_verifier"),
    "QuestVerifier": ("services.quest_verifier", "QuestVerifier"),
    "CompletionStore": ("services.completion_store", "CompletionStore"),
    "QuestStore": ("services.completion_store", "QuestStore"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
