"""Static protocol identifier table used by the protocol-interaction classifier.

Each entry lists program addresses and log keywords (``match``) plus
strings that veto a match for that protocol (``exclude``). Jupiter excludes
the Titan markers because Titan routes through Jupiter-shaped instructions
and emits "titan" in its logs and frontend account names.

The registry is built once at import and is read-only afterwards; callers
that need a different table (tests, custom deployments) construct their own
``ProtocolRegistry`` and inject it into the verifier.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from models.quest import EMPTY_IDENTIFIER_SET, ProtocolIdentifierSet

DEFAULT_PROTOCOL_IDENTIFIERS: dict[str, ProtocolIdentifierSet] = {
    "jupiter": ProtocolIdentifierSet.of(
        match=[
            "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4",
            "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB",
            "JustUseJupiter",
        ],
        exclude=["titan"],
    ),
    "titan": ProtocolIdentifierSet.of(
        match=[
            "T1TANpTeScyeqVzzgNViGDNrkQ6qHz9KrSBS4aNXvGT",
            "TITAN7VfQvnFwWHhJjJLQn8S7SfgsL65vWNSckQvp2F",
            "TITANQvGLLPjnPzzLTRwm7xagDjKExqR7naRMz6N8yG",
            "jitodontfronttitans",
            "titan",
        ],
    ),
    "meteora": ProtocolIdentifierSet.of(
        match=[
            "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo",
            "Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB",
        ],
    ),
    "raydium": ProtocolIdentifierSet.of(
        match=[
            "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",
            "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",
            "routeUGWgWzqBWFcrCfv8tritsqukccJPu3q5GPP3xS",
        ],
    ),
    "orca": ProtocolIdentifierSet.of(
        match=[
            "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
            "9W959DqEETiGZocYWCQPaJ6sBmUzgfxXfqGeTEdp3aQP",
        ],
    ),
    "marinade": ProtocolIdentifierSet.of(match=["MarBmsSgKXdrN1egZf5sqe1TMai9K1rChYNDJgjq7aD"]),
    "lifinity": ProtocolIdentifierSet.of(match=["2wT8Yq49kHgDzXuPxZSaeLaH1qbmGXtEyPy64bL7aD3c"]),
    "phoenix": ProtocolIdentifierSet.of(match=["PhoeNiXZ8ByJGLkxNfZRnkUfjvmuYqLR89jjFHGqdXY"]),
    "drift": ProtocolIdentifierSet.of(match=["dRiftyHA39MWEi3m9aunc5MzRF1JYuBsbn6VPcn33UH"]),
    "sanctum": ProtocolIdentifierSet.of(match=["5ocnV1qiCgaQR8Jb8xWnVbApfaygJ8tNoZfgPwsgx9kx"]),
    "kamino": ProtocolIdentifierSet.of(match=["KLend2g3cP87ber41SdPpZskyrQgPpg9GfLpLLKqKms"]),
    "marginfi": ProtocolIdentifierSet.of(match=["MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA"]),
}


def _normalize_name(name: Optional[str]) -> str:
    return str(name or "").strip().lower()


class ProtocolRegistry:
    """Immutable name -> ProtocolIdentifierSet map with case-insensitive lookup."""

    def __init__(self, protocols: Mapping[str, ProtocolIdentifierSet]):
        self._protocols = MappingProxyType(
            {_normalize_name(name): identifiers for name, identifiers in protocols.items()}
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ProtocolRegistry":
        """Build from plain data, e.g. ``{"jupiter": {"match": [...], "exclude": [...]}}``."""
        protocols: dict[str, ProtocolIdentifierSet] = {}
        for name, value in raw.items():
            if isinstance(value, ProtocolIdentifierSet):
                protocols[name] = value
                continue
            parsed = ProtocolIdentifierSet.from_json(value)
            if parsed is not None:
                protocols[name] = parsed
        return cls(protocols)

    def identifiers_for(self, protocol_name: Optional[str]) -> ProtocolIdentifierSet:
        """Unknown names yield an empty set, which never matches."""
        return self._protocols.get(_normalize_name(protocol_name), EMPTY_IDENTIFIER_SET)

    def resolve(
        self,
        protocol_name: Optional[str],
        custom: Optional[ProtocolIdentifierSet] = None,
    ) -> ProtocolIdentifierSet:
        """Per-quest custom identifiers win over the registry entry."""
        if custom is not None and not custom.is_empty:
            return custom
        return self.identifiers_for(protocol_name)

    def names(self) -> list[str]:
        return sorted(self._protocols)

    def shared_identifiers(self) -> dict[str, list[str]]:
        """Match identifiers claimed by more than one protocol (ambiguity report)."""
        owners: dict[str, list[str]] = {}
        for name, identifiers in self._protocols.items():
            for ident in identifiers.match:
                owners.setdefault(ident.lower(), []).append(name)
        return {ident: sorted(names) for ident, names in owners.items() if len(names) > 1}

    def __contains__(self, protocol_name: object) -> bool:
        return isinstance(protocol_name, str) and _normalize_name(protocol_name) in self._protocols

    def __iter__(self) -> Iterable[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._protocols)


protocol_registry = ProtocolRegistry(DEFAULT_PROTOCOL_IDENTIFIERS)


def identifiers_for(protocol_name: Optional[str]) -> ProtocolIdentifierSet:
    return protocol_registry.identifiers_for(protocol_name)
