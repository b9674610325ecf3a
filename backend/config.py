import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "questledger.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_HELIUS_RPC_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={api_key}"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Ledger RPC
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    HELIUS_API_KEY: Optional[str] = None  # When set, overrides SOLANA_RPC_URL with Helius mainnet

    # Token constants for this ledger
    USDC_MINT: str = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    SOL_DECIMALS: int = 9
    USDC_DECIMALS: int = 6

    # Ledger client retry/backoff (per call, never shared across invocations)
    LEDGER_MAX_ATTEMPTS: int = 3
    LEDGER_BASE_DELAY: float = 0.5
    LEDGER_RATE_LIMIT_DELAY: float = 2.0  # Base delay after HTTP 429 / RPC rate-limit errors
    LEDGER_MAX_DELAY: float = 20.0
    LEDGER_TIMEOUT_SECONDS: float = 20.0
    LEDGER_REQUESTS_PER_SECOND: float = 10.0

    # Verification windows
    CHECK_TODAY_SIGNATURE_LIMIT: int = 100
    BACKFILL_SIGNATURE_LIMIT: int = 200
    TX_FETCH_CONCURRENCY: int = 5  # In-flight getTransaction calls per invocation

    # Scheduled auto-verify
    AUTO_VERIFY_ENABLED: bool = True
    AUTO_VERIFY_INTERVAL_SECONDS: int = 900
    CRON_SECRET: Optional[str] = None

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None
    CORS_ORIGINS: list[str] = ["*"]

    @property
    def ledger_rpc_url(self) -> str:
        """RPC endpoint actually used by the ledger client."""
        if self.HELIUS_API_KEY:
            return _HELIUS_RPC_TEMPLATE.format(api_key=self.HELIUS_API_KEY)
        return self.SOLANA_RPC_URL

    @field_validator("SOLANA_RPC_URL", mode="before")
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("HELIUS_API_KEY", "CRON_SECRET", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if value is None:
            return None
        text = str(value).strip().strip('"').strip("'")
        return text or None

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            try:
                absolute.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _LOGGER.warning(
                    "Could not create SQLite data directory",
                    extra={"path": str(absolute.parent), "error": str(exc)},
                )
            return f"{prefix}{absolute}"

        return text

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        validate_default = True


settings = Settings()
