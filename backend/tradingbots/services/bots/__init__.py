"""Trading bot strategies."""

from .base import BotType, TradingBot
from .grid import GridBot, GridParameters, GridStrategy
from .market_spread import MarketSpreadBot, MarketSpreadParameters, OpenOrder
from .arbitrage import ArbitrageBot, ArbitrageParameters, parse_trading_pairs

BOT_CLASSES = {
    BotType.GRID: GridBot,
    BotType.MARKET_SPREAD: MarketSpreadBot,
    BotType.ARBITRAGE: ArbitrageBot,
}

__all__ = [
    "BotType",
    "TradingBot",
    "GridBot",
    "GridParameters",
    "GridStrategy",
    "MarketSpreadBot",
    "MarketSpreadParameters",
    "OpenOrder",
    "ArbitrageBot",
    "ArbitrageParameters",
    "parse_trading_pairs",
    "BOT_CLASSES",
]
