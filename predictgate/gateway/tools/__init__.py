from typing import List

from predictgate.gateway.base import GatewayTool

from .api_keys import CreateAdditionalApiKeyTool, ListApiKeysTool, RevokeApiKeyTool
from .onboarding import GetWalletImportInstructionsTool, ImportPrivateKeyTool, RequestApiKeyTool, SignupTool
from .trading import (
    BuyNoTool,
    BuyYesTool,
    CheckRedemptionStatusTool,
    ExecuteSwapTool,
    GetOrdersTool,
    GetOrderStatusTool,
    GetPositionsTool,
    GetQuoteTool,
    GetRedeemablePositionsTool,
    GetSwapQuoteTool,
    RedeemAllPositionsTool,
    RedeemWinningsTool,
    SellPositionTool,
    SwapSolToUsdcTool,
    SwapUsdcToSolTool,
)
from .wallet import (
    ExportPrivateKeyTool,
    GetBalancesTool,
    GetDepositAddressTool,
    GetTokenHoldingsTool,
    GetWalletInfoTool,
    GetWalletStatusTool,
    ImportWalletTool,
    SendSolTool,
    SendTokenTool,
    SendUsdcTool,
    SetupWalletTool,
)

TOOL_CLASSES = (
    # onboarding
    SignupTool,
    RequestApiKeyTool,
    ImportPrivateKeyTool,
    GetWalletImportInstructionsTool,
    # wallet
    SetupWalletTool,
    ImportWalletTool,
    GetWalletInfoTool,
    GetBalancesTool,
    GetTokenHoldingsTool,
    GetWalletStatusTool,
    GetDepositAddressTool,
    ExportPrivateKeyTool,
    SendSolTool,
    SendUsdcTool,
    SendTokenTool,
    # trading
    GetQuoteTool,
    BuyYesTool,
    BuyNoTool,
    SellPositionTool,
    RedeemWinningsTool,
    CheckRedemptionStatusTool,
    GetRedeemablePositionsTool,
    RedeemAllPositionsTool,
    GetSwapQuoteTool,
    ExecuteSwapTool,
    SwapSolToUsdcTool,
    SwapUsdcToSolTool,
    GetOrdersTool,
    GetOrderStatusTool,
    GetPositionsTool,
    # api keys
    ListApiKeysTool,
    CreateAdditionalApiKeyTool,
    RevokeApiKeyTool,
)


def build_tools(services) -> List[GatewayTool]:
    return [tool_cls(services=services) for tool_cls in TOOL_CLASSES]
