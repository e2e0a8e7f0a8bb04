from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select

from predictgate.config import SOL_DECIMALS, USDC_DECIMALS, GatewaySettings
from predictgate.db.database import Database
from predictgate.db.models import OrderTable, PositionTable
from predictgate.exceptions import (
    ConfirmationTimeout,
    CryptoIntegrityError,
    GatewayError,
    InvalidRequestError,
    MarketNotFound,
    PasswordRequired,
    QuoteUnavailableError,
)
from predictgate.trading.markets import FINALIZED, REDEMPTION_OPEN, MarketClient, settlement_accounts, winning_mint
from predictgate.trading.quotes import OrderQuote, QuoteClient, TradeParams
from predictgate.utils.amounts import from_base_units, to_base_units
from predictgate.wallet.keypair import decode_public_key
from predictgate.wallet.service import EXPLORER_TX_URL, WalletCustodyService, WalletKind

logger = logging.getLogger(__name__)

REDEEM_SLIPPAGE_BPS = 10
SWAP_SLIPPAGE_BPS = 50


class TradeResult(BaseModel):
    quote: OrderQuote
    tx_signature: str
    status: str

    @property
    def explorer_url(self) -> str:
        return EXPLORER_TX_URL.format(self.tx_signature)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "quote": self.quote.to_wire(),
            "txSignature": self.tx_signature,
            "status": self.status,
            "explorerUrl": self.explorer_url,
        }


class TradeService:
    """Quote, sign and submit trades on behalf of a user, then record them."""

    def __init__(
        self,
        wallets: WalletCustodyService,
        quotes: QuoteClient,
        markets: MarketClient,
        db: Database,
        settings: GatewaySettings,
    ):
        self.wallets = wallets
        self.quotes = quotes
        self.markets = markets
        self.db = db
        self.settings = settings

    async def quote_for_user(
        self, user_id: str, input_mint: str, output_mint: str, amount: int, slippage_bps: Optional[int] = None
    ) -> OrderQuote:
        wallet = await self.wallets.require_wallet(user_id)
        return await self.quotes.get_quote(
            TradeParams(
                input_mint=input_mint,
                output_mint=output_mint,
                amount=amount,
                slippage_bps=slippage_bps,
                user_public_key=wallet.public_key,
            )
        )

    async def execute_trade(self, user_id: str, params: TradeParams, password: Optional[str] = None) -> TradeResult:
        wallet = await self.wallets.require_wallet(user_id)
        if wallet.kind is WalletKind.IMPORTED and not password:
            raise PasswordRequired()

        quote = await self.quotes.get_quote(params.model_copy(update={"user_public_key": wallet.public_key}))
        if not quote.transaction:
            raise QuoteUnavailableError()

        signature = await self.wallets.sign_and_submit(user_id, quote.transaction, password)
        status = "success" if quote.execution_mode == "sync" else "pending"
        logger.info("Trade %s -> %s for user %s: %s (%s)", params.input_mint, params.output_mint, user_id, signature, status)
        return TradeResult(quote=quote, tx_signature=signature, status=status)

    async def buy_yes(
        self,
        user_id: str,
        market_ticker: str,
        yes_outcome_mint: str,
        usdc_amount: float,
        slippage_bps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> TradeResult:
        return await self._buy(user_id, market_ticker, yes_outcome_mint, usdc_amount, slippage_bps, password)

    async def buy_no(
        self,
        user_id: str,
        market_ticker: str,
        no_outcome_mint: str,
        usdc_amount: float,
        slippage_bps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> TradeResult:
        return await self._buy(user_id, market_ticker, no_outcome_mint, usdc_amount, slippage_bps, password)

    async def _buy(self, user_id, market_ticker, outcome_mint, usdc_amount, slippage_bps, password) -> TradeResult:
        decode_public_key(outcome_mint)
        params = TradeParams(
            input_mint=self.settings.tokens.usdc,
            output_mint=outcome_mint,
            amount=to_base_units(usdc_amount, USDC_DECIMALS),
            slippage_bps=slippage_bps,
        )
        result = await self._execute_recorded(
            user_id, params, password, market_ticker, outcome_mint, "BUY", usdc_amount
        )
        await self._record(
            user_id,
            market_ticker,
            outcome_mint,
            "BUY",
            usdc_amount,
            result.tx_signature,
            _order_status(result),
            quantity_delta=int(result.quote.out_amount),
            cost_delta=usdc_amount,
        )
        return result

    async def sell_outcome(
        self,
        user_id: str,
        outcome_mint: str,
        token_amount: int,
        slippage_bps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> TradeResult:
        decode_public_key(outcome_mint)
        params = TradeParams(
            input_mint=outcome_mint,
            output_mint=self.settings.tokens.usdc,
            amount=int(token_amount),
            slippage_bps=slippage_bps,
        )
        result = await self._execute_recorded(
            user_id, params, password, None, outcome_mint, "SELL", float(token_amount)
        )
        await self._record(
            user_id,
            None,
            outcome_mint,
            "SELL",
            float(token_amount),
            result.tx_signature,
            _order_status(result),
            quantity_delta=-int(token_amount),
        )
        return result

    async def redeem_winnings(
        self,
        user_id: str,
        outcome_mint: str,
        token_amount: int,
        password: Optional[str] = None,
        *,
        market_ticker: Optional[str] = None,
    ) -> TradeResult:
        decode_public_key(outcome_mint)
        params = TradeParams(
            input_mint=outcome_mint,
            output_mint=self.settings.tokens.usdc,
            amount=int(token_amount),
            slippage_bps=REDEEM_SLIPPAGE_BPS,
        )
        result = await self._execute_recorded(
            user_id, params, password, market_ticker, outcome_mint, "REDEEM", float(token_amount)
        )
        await self._record(
            user_id,
            market_ticker,
            outcome_mint,
            "REDEEM",
            float(token_amount),
            result.tx_signature,
            _order_status(result),
            quantity_delta=-int(token_amount),
        )
        return result

    def resolve_mint(self, symbol_or_mint: str) -> str:
        symbols = {"SOL": self.settings.tokens.sol, "USDC": self.settings.tokens.usdc}
        return symbols.get(symbol_or_mint.upper(), symbol_or_mint)

    def decimals_for(self, mint: str) -> int:
        return USDC_DECIMALS if mint == self.settings.tokens.usdc else SOL_DECIMALS

    async def swap_quote(
        self, user_id: str, input_token: str, output_token: str, amount: float, slippage_bps: Optional[int] = None
    ) -> Dict[str, Any]:
        input_mint = self.resolve_mint(input_token)
        output_mint = self.resolve_mint(output_token)
        quote = await self.quote_for_user(
            user_id,
            input_mint,
            output_mint,
            to_base_units(amount, self.decimals_for(input_mint)),
            slippage_bps or SWAP_SLIPPAGE_BPS,
        )
        return {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "inputAmount": amount,
            "outputAmount": from_base_units(quote.out_amount, self.decimals_for(output_mint)),
            "priceImpactPct": quote.price_impact_pct,
            "slippageBps": slippage_bps or SWAP_SLIPPAGE_BPS,
        }

    async def execute_swap(
        self,
        user_id: str,
        input_token: str,
        output_token: str,
        amount: float,
        slippage_bps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Swap between SOL, USDC or any mint; ``amount`` is in whole tokens."""
        input_mint = self.resolve_mint(input_token)
        output_mint = self.resolve_mint(output_token)
        if input_mint == output_mint:
            raise InvalidRequestError("Input and output tokens must differ")
        params = TradeParams(
            input_mint=input_mint,
            output_mint=output_mint,
            amount=to_base_units(amount, self.decimals_for(input_mint)),
            slippage_bps=slippage_bps or SWAP_SLIPPAGE_BPS,
        )
        result = await self.execute_trade(user_id, params, password)
        return {
            "success": True,
            "txSignature": result.tx_signature,
            "inputAmount": amount,
            "outputAmount": from_base_units(result.quote.out_amount, self.decimals_for(output_mint)),
            "inputMint": input_mint,
            "outputMint": output_mint,
            "status": result.status,
            "explorerUrl": result.explorer_url,
        }

    async def swap_sol_to_usdc(
        self, user_id: str, sol_amount: float, slippage_bps: Optional[int] = None, password: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.execute_swap(user_id, "SOL", "USDC", sol_amount, slippage_bps, password)

    async def swap_usdc_to_sol(
        self, user_id: str, usdc_amount: float, slippage_bps: Optional[int] = None, password: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.execute_swap(user_id, "USDC", "SOL", usdc_amount, slippage_bps, password)

    # ------------------------------------------------------------------ #
    # Settlement
    # ------------------------------------------------------------------ #

    async def check_redemption_status(self, ticker: str, settlement_mint: Optional[str] = None) -> Dict[str, Any]:
        """Whether ``ticker`` has settled, which side won and whether its vault pays out yet."""
        settlement_mint = settlement_mint or self.settings.tokens.usdc
        market = await self.markets.get_market(ticker)
        if market is None:
            raise MarketNotFound(f"Market not found: {ticker}")

        accounts = settlement_accounts(market, settlement_mint)
        status = market.get("status")
        result = market.get("result")
        redemption_status = accounts.get("redemptionStatus")
        winner = winning_mint(market, settlement_mint)
        can_redeem = winner is not None and redemption_status in (None, REDEMPTION_OPEN)

        if status != FINALIZED:
            message = "Market not yet settled."
        elif not result:
            message = "Market settled but no winner determined."
        elif not can_redeem:
            message = f"Market settled but redemption status is {redemption_status!r}; the vault may still be funding."
        else:
            message = f"Market settled. {result.upper()} won. Use redeem_winnings to claim."

        return {
            "ticker": ticker,
            "status": status,
            "result": result,
            "isSettled": status == FINALIZED,
            "winningSide": result or None,
            "winningMint": winner,
            "redemptionStatus": redemption_status,
            "canRedeem": can_redeem,
            "yesMint": accounts.get("yesMint"),
            "noMint": accounts.get("noMint"),
            "message": message,
        }

    async def get_redeemable_positions(self, user_id: str) -> List[Dict[str, Any]]:
        """Winning outcome tokens held by the user's wallet in finalized markets."""
        wallet = await self.wallets.require_wallet(user_id)
        holdings = await self.wallets.get_token_holdings(wallet.public_key)
        usdc = self.settings.tokens.usdc
        redeemable = []
        for holding in holdings:
            if holding.mint in (usdc, self.settings.tokens.sol) or int(holding.balance) <= 0:
                continue
            market = await self.markets.get_market_by_mint(holding.mint)
            if market is None or winning_mint(market, usdc) != holding.mint:
                continue
            redeemable.append(
                {
                    "mint": holding.mint,
                    "amount": int(holding.balance),
                    "uiAmount": holding.ui_amount,
                    "market": {
                        "ticker": market.get("ticker"),
                        "title": market.get("title"),
                        "result": market.get("result"),
                    },
                }
            )
        return redeemable

    async def redeem_all_positions(self, user_id: str, password: Optional[str] = None) -> Dict[str, Any]:
        """
        Redeem every winning position, one transaction each.

        A failure on one position does not stop the others; each outcome is
        reported per mint. A confirmation timeout is reported as ``unknown``
        with its signature. Integrity failures abort the whole run.
        """
        wallet = await self.wallets.require_wallet(user_id)
        if wallet.kind is WalletKind.IMPORTED and not password:
            raise PasswordRequired()

        results = []
        for position in await self.get_redeemable_positions(user_id):
            entry = {"mint": position["mint"], "market": position["market"]["ticker"], "amount": position["amount"]}
            try:
                trade = await self.redeem_winnings(
                    user_id, position["mint"], position["amount"], password, market_ticker=entry["market"]
                )
            except CryptoIntegrityError:
                raise
            except ConfirmationTimeout as e:
                results.append({**entry, "status": "unknown", "txSignature": e.signature, "error": e.public_message})
            except GatewayError as e:
                logger.warning("Redemption of %s for user %s failed: %s", position["mint"], user_id, e.message)
                results.append({**entry, "status": "failed", "kind": e.public_kind, "error": e.public_message})
            else:
                results.append(
                    {**entry, "status": "success", "txSignature": trade.tx_signature, "explorerUrl": trade.explorer_url}
                )

        return {
            "results": results,
            "successCount": sum(1 for r in results if r["status"] == "success"),
            "failedCount": sum(1 for r in results if r["status"] == "failed"),
            "unknownCount": sum(1 for r in results if r["status"] == "unknown"),
        }

    async def _execute_recorded(
        self,
        user_id: str,
        params: TradeParams,
        password: Optional[str],
        market_ticker: Optional[str],
        outcome_mint: str,
        side: str,
        amount: float,
    ) -> TradeResult:
        try:
            return await self.execute_trade(user_id, params, password)
        except ConfirmationTimeout as e:
            # Submitted but unconfirmed: keep the signature, leave the position alone.
            await self._record(user_id, market_ticker, outcome_mint, side, amount, e.signature, "SUBMITTED")
            raise

    async def _record(
        self,
        user_id: str,
        market_ticker: Optional[str],
        outcome_mint: str,
        side: str,
        amount: float,
        tx_signature: str,
        status: str,
        *,
        quantity_delta: Optional[int] = None,
        cost_delta: float = 0.0,
    ) -> None:
        """Store the order and, when ``quantity_delta`` is given, move the position by it."""
        async with self.db.session() as session:
            session.add(
                OrderTable(
                    user_id=user_id,
                    market_ticker=market_ticker,
                    outcome_mint=outcome_mint,
                    side=side,
                    amount=amount,
                    tx_signature=tx_signature,
                    status=status,
                )
            )
            if quantity_delta is None:
                return
            existing = await session.execute(
                select(PositionTable).where(PositionTable.user_id == user_id, PositionTable.outcome_mint == outcome_mint)
            )
            position = existing.scalar_one_or_none()
            if position is None:
                position = PositionTable(
                    user_id=user_id, market_ticker=market_ticker, outcome_mint=outcome_mint, quantity=0.0, cost_basis=0.0
                )
                session.add(position)
            position.quantity = max(0.0, position.quantity + quantity_delta)
            position.cost_basis = position.cost_basis + cost_delta
            if market_ticker and not position.market_ticker:
                position.market_ticker = market_ticker

    async def list_orders(self, user_id: str, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            stmt = select(OrderTable).where(OrderTable.user_id == user_id)
            if status:
                stmt = stmt.where(OrderTable.status == status)
            result = await session.execute(stmt.order_by(OrderTable.created_at.desc()).limit(limit))
            return [
                {
                    "id": row.id,
                    "marketTicker": row.market_ticker,
                    "outcomeMint": row.outcome_mint,
                    "side": row.side,
                    "amount": row.amount,
                    "txSignature": row.tx_signature,
                    "status": row.status,
                    "createdAt": row.created_at.isoformat() if row.created_at else None,
                }
                for row in result.scalars()
            ]

    async def list_positions(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(PositionTable).where(PositionTable.user_id == user_id).order_by(PositionTable.updated_at.desc())
            )
            return [
                {
                    "outcomeMint": row.outcome_mint,
                    "marketTicker": row.market_ticker,
                    "quantity": row.quantity,
                    "costBasis": row.cost_basis,
                }
                for row in result.scalars()
            ]


def _order_status(result: TradeResult) -> str:
    return "FILLED" if result.status == "success" else "SUBMITTED"
