"""Builds the process-wide service graph once at startup."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from predictgate.auth.access_codes import AccessCodeService
from predictgate.auth.api_keys import ApiKeyService
from predictgate.config import GatewaySettings
from predictgate.db.database import Database
from predictgate.trading.markets import MarketClient
from predictgate.trading.quotes import QuoteClient
from predictgate.trading.service import TradeService
from predictgate.wallet.encryption import SymmetricCipher
from predictgate.wallet.rpc import SolanaRpcClient
from predictgate.wallet.service import WalletCustodyService

logger = logging.getLogger(__name__)


@dataclass
class GatewayServices:
    settings: GatewaySettings
    db: Database
    cipher: SymmetricCipher
    rpc: SolanaRpcClient
    quotes: QuoteClient
    markets: MarketClient
    wallets: WalletCustodyService
    trades: TradeService
    api_keys: ApiKeyService
    access_codes: AccessCodeService

    @classmethod
    def build(
        cls,
        settings: GatewaySettings,
        *,
        rpc_transport: Optional[httpx.AsyncBaseTransport] = None,
        quote_transport: Optional[httpx.AsyncBaseTransport] = None,
        market_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> GatewayServices:
        """
        Validate configuration and wire every service.

        Raises `ConfigurationError` before anything is constructed when the
        master key or database URL is missing.
        """
        settings.validate_required()
        cipher = SymmetricCipher(settings.encryption_key)
        db = Database(settings.database_url)
        rpc = SolanaRpcClient(
            settings.solana_rpc_url,
            fallback_url=settings.solana_rpc_fallback,
            commitment=settings.commitment,
            timeout=settings.http_timeout,
            poll_interval=settings.confirmation_poll_interval,
            transport=rpc_transport,
        )
        quotes = QuoteClient(
            settings.quote_api_url,
            api_key=settings.quote_api_key,
            timeout=settings.http_timeout,
            min_interval=settings.quote_min_interval,
            transport=quote_transport,
        )
        markets = MarketClient(settings.market_api_url, timeout=settings.http_timeout, transport=market_transport)
        wallets = WalletCustodyService(db, cipher, rpc, settings)
        logger.info("Gateway services built (rpc=%s, quotes=%s)", settings.solana_rpc_url, settings.quote_api_url)
        return cls(
            settings=settings,
            db=db,
            cipher=cipher,
            rpc=rpc,
            quotes=quotes,
            markets=markets,
            wallets=wallets,
            trades=TradeService(wallets, quotes, markets, db, settings),
            api_keys=ApiKeyService(db, cipher),
            access_codes=AccessCodeService(db),
        )

    async def aclose(self) -> None:
        await self.rpc.aclose()
        await self.quotes.aclose()
        await self.markets.aclose()
        await self.db.dispose()
