from .market_price import MarketPrice
from .user import User


__all__ = ["MarketPrice", "User"]
