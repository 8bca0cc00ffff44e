# Business Logic Services

from .config import (
    ConfigService,
    ConfigValidationError,
    ConfigValidationException,
    BotConfigurationError,
    config_service,
)
from .exchange import (
    ExchangeGateway,
    ExchangeGatewayError,
    ExchangeGatewayPool,
    CcxtExchangeGateway,
    SimulatedExchangeGateway,
    ExchangeOrder,
    Balance,
    Ticker,
    RecentTrade,
    MyTrade,
    OrderSide,
    OrderType,
)
from .activity_log import (
    ActivityLogService,
    ActivityLogStore,
    SqlActivityLogStore,
    ActivityEventKind,
    BotCreated,
    BotUpdated,
    BotStopped,
    TransactionLogged,
)
from .opportunity import (
    TradingPair,
    Opportunity,
    calculate_opportunity,
    check_opportunity,
)
from .trading_analytics import (
    TradeSummary,
    aggregate_my_trades,
    summarize_my_trades,
)
from .logging_service import (
    BotLoggingService,
    configure_logging,
)
from .bots import (
    BotType,
    TradingBot,
    GridBot,
    MarketSpreadBot,
    ArbitrageBot,
)
from .bots_tracker import BotsTracker
from .savings_plan import (
    FrequencyUnit,
    PlatformCredentials,
    SavingsPlanConfig,
    SavingsPlanService,
)

__all__ = [
    "ConfigService",
    "ConfigValidationError",
    "ConfigValidationException",
    "BotConfigurationError",
    "config_service",
    "ExchangeGateway",
    "ExchangeGatewayError",
    "ExchangeGatewayPool",
    "CcxtExchangeGateway",
    "SimulatedExchangeGateway",
    "ExchangeOrder",
    "Balance",
    "Ticker",
    "RecentTrade",
    "MyTrade",
    "OrderSide",
    "OrderType",
    "ActivityLogService",
    "ActivityLogStore",
    "SqlActivityLogStore",
    "ActivityEventKind",
    "BotCreated",
    "BotUpdated",
    "BotStopped",
    "TransactionLogged",
    "TradingPair",
    "Opportunity",
    "calculate_opportunity",
    "check_opportunity",
    "TradeSummary",
    "aggregate_my_trades",
    "summarize_my_trades",
    "BotLoggingService",
    "configure_logging",
    "BotType",
    "TradingBot",
    "GridBot",
    "MarketSpreadBot",
    "ArbitrageBot",
    "BotsTracker",
    "FrequencyUnit",
    "PlatformCredentials",
    "SavingsPlanConfig",
    "SavingsPlanService",
]
