"""Retrying Solana JSON-RPC client used by the verification engine.

Every RPC goes through the per-client token bucket and ``call_with_retry``.
Network failures and 5xx responses are retried with exponential backoff;
HTTP 429 and JSON-RPC rate-limit errors back off from the longer
rate-limit delay. A transaction whose payload cannot be parsed is logged and
reported as not found so a batch never aborts on one bad record.
"""

from __future__ import annotations

import itertools
from typing import Any, Optional

import httpx

from config import settings
from models.ledger import SignatureInfo, LedgerTransaction, TokenBalance
from services.transaction_parser import parse_transaction
from utils.logger import ledger_logger as logger
from utils.rate_limiter import RateLimiter, endpoint_for_url, limiter_for_rate
from utils.retry import RetryConfig, call_with_retry
from utils.validation import validate_limit

MAX_SIGNATURE_PAGE = 1000

# JSON-RPC codes Solana nodes use for "try again later" conditions.
_TRANSIENT_RPC_CODES = {-32004, -32005, -32014, -32016}
_RATE_LIMIT_RPC_CODES = {429, -32429}


class LedgerError(Exception):
    """Base class for ledger RPC failures."""


class TransientNetworkError(LedgerError):
    """Network error, timeout or 5xx; safe to retry."""


class RateLimitedError(LedgerError):
    """The RPC provider throttled us (HTTP 429 or a rate-limit RPC error)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedUpstreamData(LedgerError):
    """Response body is not the JSON-RPC shape we expect."""


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def default_retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.LEDGER_MAX_ATTEMPTS,
        base_delay=settings.LEDGER_BASE_DELAY,
        max_delay=settings.LEDGER_MAX_DELAY,
        rate_limit_delay=settings.LEDGER_RATE_LIMIT_DELAY,
        retryable_exceptions=(TransientNetworkError,),
        rate_limit_exceptions=(RateLimitedError,),
    )


class SolanaLedgerClient:
    """Client for the Solana JSON-RPC methods the quest engine needs"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        retry_config: Optional[RetryConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url or settings.ledger_rpc_url
        self.retry_config = retry_config or default_retry_config()
        self._endpoint = endpoint_for_url(self.rpc_url)
        self._limiter = rate_limiter or limiter_for_rate(
            self.rpc_url, settings.LEDGER_REQUESTS_PER_SECOND
        )
        self._timeout = timeout if timeout is not None else settings.LEDGER_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ==================== TRANSPORT ====================

    async def _post_rpc(self, method: str, params: list) -> Any:
        await self._limiter.acquire(self._endpoint)
        client = await self._get_client()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }

        try:
            response = await client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} timed out") from e
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"{method} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"{method} rate limited (HTTP 429)", retry_after=_retry_after(response))
        if response.status_code >= 400:
            raise TransientNetworkError(f"{method} returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedUpstreamData(f"{method} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise MalformedUpstreamData(f"{method} returned a non-object body")

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
            if code in _RATE_LIMIT_RPC_CODES or "rate limit" in message.lower():
                raise RateLimitedError(f"{method} rate limited: {message}")
            if code in _TRANSIENT_RPC_CODES:
                raise TransientNetworkError(f"{method} RPC error {code}: {message}")
            raise LedgerError(f"{method} RPC error {code}: {message}")

        if "result" not in body:
            raise MalformedUpstreamData(f"{method} response has no result")
        return body["result"]

    async def _rpc(self, method: str, params: list) -> Any:
        return await call_with_retry(
            self._post_rpc, method, params, config=self.retry_config, description=method
        )

    # ==================== SIGNATURES ====================

    async def list_signatures(
        self, address: str, limit: int, before: Optional[str] = None
    ) -> list[SignatureInfo]:
        """Signatures touching ``address``, newest first, exactly as the node returns them."""
        address = (address or "").strip()
        if not address:
            raise ValueError("address must be non-empty")
        if limit <= 0:
            raise ValueError("limit must be positive")

        options: dict[str, Any] = {"limit": validate_limit(int(limit), MAX_SIGNATURE_PAGE)}
        if before:
            options["before"] = before
        result = await self._rpc("getSignaturesForAddress", [address, options])
        if not isinstance(result, list):
            raise MalformedUpstreamData("getSignaturesForAddress result is not a list")

        signatures = []
        for entry in result:
            if not isinstance(entry, dict) or not entry.get("signature"):
                logger.warning("Discarding malformed signature entry", address=address, entry=entry)
                continue
            block_time = entry.get("blockTime")
            signatures.append(
                SignatureInfo(
                    signature=str(entry["signature"]),
                    block_time=int(block_time) if block_time is not None else None,
                    failed=entry.get("err") is not None,
                )
            )
        return signatures

    # ==================== TRANSACTIONS ====================

    async def get_transaction(
        self, signature: str, fallback_block_time: Optional[int] = None
    ) -> Optional[LedgerTransaction]:
        """Fetch and parse one transaction. ``None`` means not found or unreadable."""
        params = [
            signature,
            {
                "encoding": "jsonParsed",
                "maxSupportedTransactionVersion": 0,
                "commitment": "confirmed",
            },
        ]
        try:
            result = await self._rpc("getTransaction", params)
        except MalformedUpstreamData as e:
            logger.warning("Malformed transaction response", signature=signature, error=str(e))
            return None
        if result is None:
            return None

        try:
            return parse_transaction(result, signature, fallback_block_time)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unparseable transaction", signature=signature, error=str(e))
            return None

    # ==================== BALANCES ====================

    async def get_token_accounts(self, owner: str, mint: str) -> list[TokenBalance]:
        """Token accounts of ``owner`` holding ``mint``."""
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        if not isinstance(result, dict) or not isinstance(result.get("value"), list):
            raise MalformedUpstreamData("getTokenAccountsByOwner result has no value list")

        accounts = []
        for entry in result["value"]:
            try:
                info = entry["account"]["data"]["parsed"]["info"]
                token_amount = info.get("tokenAmount") or {}
                accounts.append(
                    TokenBalance(
                        account=str(entry["pubkey"]),
                        mint=str(info.get("mint") or mint),
                        owner=info.get("owner") or owner,
                        amount_raw=int(token_amount.get("amount") or 0),
                        decimals=int(token_amount.get("decimals") or 0),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding malformed token account", owner=owner, error=str(e))
        return accounts

    async def get_balance(self, address: str) -> float:
        """Native balance in SOL."""
        result = await self._rpc("getBalance", [address, {"commitment": "confirmed"}])
        value = result.get("value") if isinstance(result, dict) else result
        if not isinstance(value, int):
            raise MalformedUpstreamData("getBalance result has no integer value")
        return value / (10**settings.SOL_DECIMALS)

    async def get_token_balance(self, owner: str, mint: Optional[str] = None) -> float:
        """Sum of ``owner``'s balances for ``mint`` (USDC by default), in whole tokens."""
        accounts = await self.get_token_accounts(owner, mint or settings.USDC_MINT)
        return sum(a.amount_raw / (10**a.decimals) for a in accounts)


# Singleton instance
ledger_client = SolanaLedgerClient()
