from __future__ import annotations

import os
import re
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from predictgate.exceptions import ConfigurationError
from predictgate.utils.config_manager import ConfigManager

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"

USDC_DECIMALS = 6
SOL_DECIMALS = 9
LAMPORTS_PER_SOL = 10**SOL_DECIMALS

_HEX_KEY_RE = re.compile(r"[0-9a-fA-F]{64}")

# field name -> environment variable
_ENV_NAMES = {
    "database_url": "DATABASE_URL",
    "encryption_key": "ENCRYPTION_KEY",
    "solana_rpc_url": "SOLANA_RPC_URL",
    "solana_rpc_fallback": "SOLANA_RPC_FALLBACK",
    "commitment": "SOLANA_COMMITMENT",
    "quote_api_url": "QUOTE_API_URL",
    "quote_api_key": "QUOTE_API_KEY",
    "market_api_url": "MARKET_API_URL",
    "http_timeout": "HTTP_TIMEOUT",
    "confirmation_timeout": "CONFIRMATION_TIMEOUT",
    "confirmation_poll_interval": "CONFIRMATION_POLL_INTERVAL",
    "quote_min_interval": "QUOTE_MIN_INTERVAL",
    "serialize_signing": "SERIALIZE_SIGNING",
    "public_url": "PUBLIC_URL",
}


class TokenSettings(BaseModel):
    """Known SPL token mints."""

    usdc: str = Field(default=USDC_MINT)
    usdt: str = Field(default=USDT_MINT)
    sol: str = Field(default=WRAPPED_SOL_MINT)


class GatewaySettings(BaseModel):
    """Resolved configuration for the gateway process."""

    database_url: str = Field(default="sqlite+aiosqlite:///./predictgate.db")
    encryption_key: str = Field(default="", repr=False)

    solana_rpc_url: str = Field(default="https://api.mainnet-beta.solana.com")
    solana_rpc_fallback: Optional[str] = Field(default=None)
    commitment: str = Field(default="confirmed")

    quote_api_url: str = Field(default="https://quote-api.dflow.net")
    quote_api_key: Optional[str] = Field(default=None, repr=False)
    market_api_url: str = Field(default="https://prediction-markets-api.dflow.net")

    http_timeout: float = Field(default=30.0)
    confirmation_timeout: float = Field(default=60.0)
    confirmation_poll_interval: float = Field(default=1.0)
    quote_min_interval: float = Field(default=0.5)

    serialize_signing: bool = Field(default=True)
    public_url: str = Field(default="http://localhost:3002/mcp")

    tokens: TokenSettings = Field(default_factory=TokenSettings)

    @field_validator("solana_rpc_url", "quote_api_url", "market_api_url")
    @classmethod
    def _ensure_http_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return value.rstrip("/")

    @field_validator("commitment")
    @classmethod
    def _known_commitment(cls, value: str) -> str:
        if value not in {"processed", "confirmed", "finalized"}:
            raise ValueError("commitment must be processed, confirmed or finalized")
        return value

    def validate_required(self) -> "GatewaySettings":
        """Fail fast on settings without which no request may be served."""
        missing = [
            env
            for env, value in (("DATABASE_URL", self.database_url), ("ENCRYPTION_KEY", self.encryption_key))
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")
        if not _HEX_KEY_RE.fullmatch(self.encryption_key):
            raise ConfigurationError("ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
        return self

    @classmethod
    def load(cls, config_manager: Optional[ConfigManager] = None, *, dotenv: bool = True) -> "GatewaySettings":
        """Load settings from the environment with config.json fallbacks."""
        if dotenv:
            load_dotenv()
        manager = config_manager or ConfigManager()
        raw_config = manager.section("gateway")

        values: Dict[str, Any] = {}
        for field_name, env_name in _ENV_NAMES.items():
            value = os.getenv(env_name)
            if value is None:
                value = raw_config.get(field_name)
            if value is not None and value != "":
                values[field_name] = value

        tokens = raw_config.get("tokens")
        if isinstance(tokens, dict):
            values["tokens"] = TokenSettings(**tokens)

        return cls(**values)
