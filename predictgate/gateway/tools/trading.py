from typing import Any, Dict, Optional

from predictgate.gateway.base import GatewayTool, ToolContext

_PASSWORD_PARAM = {"type": "string", "description": "Wallet password (required for imported wallets only)"}
_SLIPPAGE_PARAM = {"type": "integer", "description": "Slippage tolerance in basis points (100 = 1%)"}


class GetQuoteTool(GatewayTool):
    name: str = "get_quote"
    description: str = "Quote a trade between two mints without executing it. Amount is in base units."
    parameters: dict = {
        "type": "object",
        "properties": {
            "inputMint": {"type": "string", "description": "Mint being sold"},
            "outputMint": {"type": "string", "description": "Mint being bought"},
            "amount": {"type": "integer", "description": "Input amount in base units"},
            "slippageBps": _SLIPPAGE_PARAM,
        },
        "required": ["inputMint", "outputMint", "amount"],
    }

    async def execute(
        self, context: ToolContext, inputMint: str, outputMint: str, amount: int, slippageBps: Optional[int] = None
    ) -> Dict[str, Any]:
        quote = await self.services.trades.quote_for_user(context.user_id, inputMint, outputMint, amount, slippageBps)
        return {"quote": quote.to_wire()}


class _BuyOutcomeTool(GatewayTool):
    outcome: str = "YES"

    async def execute(
        self,
        context: ToolContext,
        marketTicker: str,
        outcomeMint: str,
        usdcAmount: float,
        slippageBps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        trades = self.services.trades
        buy = trades.buy_yes if self.outcome == "YES" else trades.buy_no
        result = await buy(context.user_id, marketTicker, outcomeMint, usdcAmount, slippageBps, password)
        return {"message": f"Buy {self.outcome} order executed", **result.to_wire()}


def _buy_parameters(side: str) -> dict:
    return {
        "type": "object",
        "properties": {
            "marketTicker": {"type": "string", "description": "Market ticker"},
            "outcomeMint": {"type": "string", "description": f"{side} outcome token mint"},
            "usdcAmount": {"type": "number", "description": "USDC to spend (e.g. 10 for $10)"},
            "slippageBps": _SLIPPAGE_PARAM,
            "password": _PASSWORD_PARAM,
        },
        "required": ["marketTicker", "outcomeMint", "usdcAmount"],
    }


class BuyYesTool(_BuyOutcomeTool):
    name: str = "buy_yes"
    description: str = "Buy YES outcome tokens of a market with USDC."
    parameters: dict = _buy_parameters("YES")
    outcome: str = "YES"


class BuyNoTool(_BuyOutcomeTool):
    name: str = "buy_no"
    description: str = "Buy NO outcome tokens of a market with USDC."
    parameters: dict = _buy_parameters("NO")
    outcome: str = "NO"


class SellPositionTool(GatewayTool):
    name: str = "sell_position"
    description: str = "Sell outcome tokens back to USDC. Amount is in token base units."
    parameters: dict = {
        "type": "object",
        "properties": {
            "outcomeMint": {"type": "string", "description": "Outcome token mint"},
            "tokenAmount": {"type": "integer", "description": "Token amount in base units"},
            "slippageBps": _SLIPPAGE_PARAM,
            "password": _PASSWORD_PARAM,
        },
        "required": ["outcomeMint", "tokenAmount"],
    }

    async def execute(
        self,
        context: ToolContext,
        outcomeMint: str,
        tokenAmount: int,
        slippageBps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = await self.services.trades.sell_outcome(
            context.user_id, outcomeMint, tokenAmount, slippageBps, password
        )
        return {"message": "Sell order executed", **result.to_wire()}


class RedeemWinningsTool(GatewayTool):
    name: str = "redeem_winnings"
    description: str = "Redeem winning outcome tokens of a settled market for USDC."
    parameters: dict = {
        "type": "object",
        "properties": {
            "outcomeMint": {"type": "string", "description": "Winning outcome token mint"},
            "tokenAmount": {"type": "integer", "description": "Token amount in base units"},
            "password": _PASSWORD_PARAM,
        },
        "required": ["outcomeMint", "tokenAmount"],
    }

    async def execute(
        self, context: ToolContext, outcomeMint: str, tokenAmount: int, password: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self.services.trades.redeem_winnings(context.user_id, outcomeMint, tokenAmount, password)
        return {"message": "Redemption executed", **result.to_wire()}


_SWAP_PROPERTIES = {
    "inputMint": {"type": "string", "description": "'SOL', 'USDC' or a mint address"},
    "outputMint": {"type": "string", "description": "'SOL', 'USDC' or a mint address"},
    "amount": {"type": "number", "description": "Input amount in whole tokens (e.g. 0.5 SOL)"},
    "slippageBps": _SLIPPAGE_PARAM,
}


class GetSwapQuoteTool(GatewayTool):
    name: str = "get_swap_quote"
    description: str = "Quote a token swap in human-readable amounts."
    parameters: dict = {
        "type": "object",
        "properties": dict(_SWAP_PROPERTIES),
        "required": ["inputMint", "outputMint", "amount"],
    }

    async def execute(
        self, context: ToolContext, inputMint: str, outputMint: str, amount: float, slippageBps: Optional[int] = None
    ) -> Dict[str, Any]:
        return await self.services.trades.swap_quote(context.user_id, inputMint, outputMint, amount, slippageBps)


class ExecuteSwapTool(GatewayTool):
    name: str = "execute_swap"
    description: str = "Swap tokens, e.g. SOL to USDC to fund trading."
    parameters: dict = {
        "type": "object",
        "properties": {**_SWAP_PROPERTIES, "password": _PASSWORD_PARAM},
        "required": ["inputMint", "outputMint", "amount"],
    }

    async def execute(
        self,
        context: ToolContext,
        inputMint: str,
        outputMint: str,
        amount: float,
        slippageBps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.services.trades.execute_swap(
            context.user_id, inputMint, outputMint, amount, slippageBps, password
        )


class GetOrdersTool(GatewayTool):
    name: str = "get_orders"
    description: str = "Your order history, newest first."
    parameters: dict = {
        "type": "object",
        "properties": {
            "status": {"type": "string", "description": "Filter by status (FILLED or SUBMITTED)"},
            "limit": {"type": "integer", "description": "Maximum number of orders (default 50)"},
        },
    }

    async def execute(self, context: ToolContext, status: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        orders = await self.services.trades.list_orders(context.user_id, status, max(1, min(limit, 200)))
        return {"orders": orders}


class GetPositionsTool(GatewayTool):
    name: str = "get_positions"
    description: str = "Outcome-token positions recorded from your trades."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        return {"positions": await self.services.trades.list_positions(context.user_id)}


class GetOrderStatusTool(GatewayTool):
    name: str = "get_order_status"
    description: str = "Status of an asynchronously executed order at the quote service."
    parameters: dict = {
        "type": "object",
        "properties": {"orderId": {"type": "string", "description": "Order id or transaction signature"}},
        "required": ["orderId"],
    }

    async def execute(self, context: ToolContext, orderId: str) -> Dict[str, Any]:
        return await self.services.quotes.get_order_status(orderId)


class SwapSolToUsdcTool(GatewayTool):
    name: str = "swap_sol_to_usdc"
    description: str = "Swap SOL to USDC to fund trading."
    parameters: dict = {
        "type": "object",
        "properties": {
            "solAmount": {"type": "number", "description": "Amount of SOL to swap (e.g. 0.5)"},
            "slippageBps": _SLIPPAGE_PARAM,
            "password": _PASSWORD_PARAM,
        },
        "required": ["solAmount"],
    }

    async def execute(
        self,
        context: ToolContext,
        solAmount: float,
        slippageBps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.services.trades.swap_sol_to_usdc(context.user_id, solAmount, slippageBps, password)


class SwapUsdcToSolTool(GatewayTool):
    name: str = "swap_usdc_to_sol"
    description: str = "Swap USDC to SOL, e.g. to pay transaction fees."
    parameters: dict = {
        "type": "object",
        "properties": {
            "usdcAmount": {"type": "number", "description": "Amount of USDC to swap (e.g. 10 for $10)"},
            "slippageBps": _SLIPPAGE_PARAM,
            "password": _PASSWORD_PARAM,
        },
        "required": ["usdcAmount"],
    }

    async def execute(
        self,
        context: ToolContext,
        usdcAmount: float,
        slippageBps: Optional[int] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.services.trades.swap_usdc_to_sol(context.user_id, usdcAmount, slippageBps, password)


class CheckRedemptionStatusTool(GatewayTool):
    name: str = "check_redemption_status"
    description: str = "Check whether a market has settled and its winning tokens can be redeemed."
    parameters: dict = {
        "type": "object",
        "properties": {
            "ticker": {"type": "string", "description": "Market ticker"},
            "settlementMint": {"type": "string", "description": "Settlement token mint (default: USDC)"},
        },
        "required": ["ticker"],
    }

    async def execute(self, context: ToolContext, ticker: str, settlementMint: Optional[str] = None) -> Dict[str, Any]:
        return await self.services.trades.check_redemption_status(ticker, settlementMint)


class GetRedeemablePositionsTool(GatewayTool):
    name: str = "get_redeemable_positions"
    description: str = "Winning positions in settled markets that are ready to redeem."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        positions = await self.services.trades.get_redeemable_positions(context.user_id)
        return {
            "redeemablePositions": positions,
            "count": len(positions),
            "message": (
                f"Found {len(positions)} redeemable position(s). Use redeem_all_positions to claim."
                if positions
                else "No redeemable positions found."
            ),
        }


class RedeemAllPositionsTool(GatewayTool):
    name: str = "redeem_all_positions"
    description: str = "Redeem every winning position for USDC, one transaction per position."
    parameters: dict = {
        "type": "object",
        "properties": {"password": _PASSWORD_PARAM},
    }

    async def execute(self, context: ToolContext, password: Optional[str] = None) -> Dict[str, Any]:
        return await self.services.trades.redeem_all_positions(context.user_id, password)
