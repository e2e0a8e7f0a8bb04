from .quotes import OrderQuote, QuoteClient, TradeParams
from .service import TradeResult, TradeService

__all__ = ["OrderQuote", "QuoteClient", "TradeParams", "TradeResult", "TradeService"]
