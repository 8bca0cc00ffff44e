"""Runtime bootstrap.

``lifespan`` wires the configured services together and tears them down in
order: savings plans and bots first, then the activity log (so their last events are
persisted), then the exchange connections.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from .models import create_session_maker, init_db
from .services.activity_log import ActivityLogService, SqlActivityLogStore
from .services.bots_tracker import BotsTracker
from .services.config import ConfigService
from .services.exchange import ExchangeGatewayPool
from .services.logging_service import configure_logging
from .services.savings_plan import CredentialsProvider, SavingsPlanService

logger = logging.getLogger(__name__)


@dataclass
class TradingRuntime:
    """Services shared by everything running in the process."""
    config: Dict[str, Any]
    tracker: BotsTracker
    gateway_pool: ExchangeGatewayPool
    activity_log: ActivityLogService
    session_maker: async_sessionmaker
    savings_plans: SavingsPlanService


@asynccontextmanager
async def lifespan(
    config_path: Optional[str] = None,
    credentials_provider: Optional[CredentialsProvider] = None,
) -> AsyncIterator[TradingRuntime]:
    """Run the trading runtime for the duration of the context.

    ``credentials_provider`` looks up the exchange credentials savings plans
    buy with; without it only simulated plans can run.

    Raises:
        ConfigValidationException: If the configuration file is invalid
    """
    config_service = ConfigService(config_path)
    config = config_service.load_and_validate()

    configure_logging(config_service.get("logging.level", "INFO"), config_service.get("logging.format"))
    logger.info("Configuration validated successfully")

    session_maker = create_session_maker(config_service.get("database.url"))
    engine = session_maker.kw["bind"]
    await init_db(engine)
    logger.info("Database initialized")

    activity_log = ActivityLogService(
        SqlActivityLogStore(session_maker),
        queue_size=config_service.get("activity_log.queue_size", 1000),
    )
    activity_log.start()

    gateway_pool = ExchangeGatewayPool(sandbox=config_service.get("exchanges.sandbox", False))
    tracker = BotsTracker(activity_log=activity_log, config=config_service)

    savings_plans = SavingsPlanService(
        session_maker,
        gateway_pool,
        credentials_provider=credentials_provider,
        activity_log=activity_log,
    )
    if config_service.get("savings_plans.enabled", True):
        await savings_plans.load()
        savings_plans.start()

    try:
        yield TradingRuntime(
            config=config,
            tracker=tracker,
            gateway_pool=gateway_pool,
            activity_log=activity_log,
            session_maker=session_maker,
            savings_plans=savings_plans,
        )
    finally:
        logger.info("Initiating graceful shutdown...")

        await savings_plans.stop()

        stopped = await tracker.shutdown()
        if stopped > 0:
            logger.info(f"Stopped {stopped} bot(s)")

        await activity_log.stop(timeout=config_service.get("activity_log.shutdown_timeout_seconds", 5.0))
        await gateway_pool.close_all()
        await engine.dispose()

        logger.info("Graceful shutdown complete")
