"""Registry of running bots.

Maps each deterministic bot id to its running instance. Starting a bot whose
id is already registered stops the previous instance first, so there is never
more than one active bot per id.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from .activity_log import ActivityLogService, BotCreated, BotStopped
from .bots import (
    BOT_CLASSES,
    ArbitrageParameters,
    BotType,
    GridParameters,
    MarketSpreadParameters,
    TradingBot,
    parse_trading_pairs,
)
from .config import BotConfigurationError, ConfigService, config_service
from .exchange import ExchangeGateway
from .logging_service import BotLoggingService
from .opportunity import Opportunity, check_opportunity

logger = logging.getLogger(__name__)


def _resolve_bot_type(bot_type: Union[BotType, str]) -> BotType:
    try:
        return BotType(bot_type)
    except ValueError:
        raise BotConfigurationError(
            f"Bot type {bot_type} is not supported, the supported values are: "
            f"{','.join(t.value for t in BotType)}"
        )


class BotsTracker:
    """Starts, stops and looks up the bots of all users.

    Each bot runs in its own asyncio task. Hard-stopped bots leave the registry
    immediately; soft-stopped bots stay registered until their loop has
    drained and exited.
    """

    def __init__(
        self,
        activity_log: Optional[ActivityLogService] = None,
        bot_log_dir: Optional[str] = None,
        config: ConfigService = config_service,
    ):
        """Initialize the tracker.

        Args:
            activity_log: Receives lifecycle and transaction events of all bots
            bot_log_dir: Directory for per-bot activity files (defaults to the
                ``logging.bot_log_dir`` setting, None disables them)
            config: Source of interval defaults
        """
        self.activity_log = activity_log
        self.bot_log_dir = bot_log_dir if bot_log_dir is not None else config.get("logging.bot_log_dir")
        self._config = config
        self._bots: Dict[str, TradingBot] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stopped: Set[str] = set()
        self._lock = asyncio.Lock()

    def _parse_parameters(self, bot_type: BotType, parameters: Mapping[str, Any]):
        if not isinstance(parameters, Mapping):
            raise BotConfigurationError(f"Bot parameters must be an object, got {type(parameters).__name__}")

        if bot_type == BotType.GRID:
            return GridParameters.from_dict(
                parameters,
                default_interval=self._config.get("bots.grid.interval_seconds", 10),
            )
        if bot_type == BotType.MARKET_SPREAD:
            return MarketSpreadParameters.from_dict(
                parameters,
                default_interval=self._config.get("bots.market_spread.interval_seconds", 10),
                default_stale_order_seconds=self._config.get("bots.market_spread.stale_order_seconds", 60),
                default_soft_shutdown_timeout=self._config.get(
                    "bots.market_spread.soft_shutdown_timeout_seconds", 3600
                ),
            )
        return ArbitrageParameters.from_dict(
            parameters,
            default_interval=self._config.get("bots.arbitrage.check_interval_seconds", 30),
        )

    async def start_bot_for_user(
        self,
        user_email: str,
        user_id: str,
        bot_type: Union[BotType, str],
        platform_name: str,
        gateway: Optional[ExchangeGateway],
        parameters: Mapping[str, Any],
    ) -> TradingBot:
        """Start a bot, superseding a running one with the same id.

        Returns:
            The new, running bot

        Raises:
            BotConfigurationError: Unsupported bot type, malformed parameters
                or no gateway
        """
        bot_type = _resolve_bot_type(bot_type)
        if gateway is None:
            raise BotConfigurationError(f"No exchange gateway for user {user_email} on {platform_name}")

        bot_parameters = self._parse_parameters(bot_type, parameters)
        bot = BOT_CLASSES[bot_type](
            user_email, user_id, platform_name, gateway, bot_parameters,
            activity_log=self.activity_log,
        )
        bot_id = bot.get_id()

        async with self._lock:
            previous = self._bots.get(bot_id)
            if previous is not None:
                logger.info(f"Bot {bot_id} is already running ({previous.uuid}), stopping it before restart")
                self._stop_bot(bot_id, previous, soft=False)

            if self.bot_log_dir:
                bot.bot_logger = BotLoggingService(bot.uuid, bot_id, self.bot_log_dir)

            self._bots[bot_id] = bot
            self._publish(BotCreated(
                uuid=bot.uuid,
                user_id=str(user_id),
                bot_type=bot_type.value,
                platform_name=platform_name,
                additional_info={"botId": bot_id, "userEmail": user_email, **bot.snapshot()},
            ))

            task = asyncio.create_task(bot.run(), name=f"bot-{bot.uuid}")
            self._tasks[bot.uuid] = task
            task.add_done_callback(partial(self._on_bot_done, bot_id, bot))

        logger.info(f"Started bot {bot_id} ({bot.uuid})")
        return bot

    async def stop_bot_for_user(
        self,
        user_email: str,
        bot_type: Union[BotType, str],
        platform_name: str,
        parameters: Mapping[str, Any],
        soft: bool = False,
    ) -> bool:
        """Stop the bot identified by the request.

        Only the identifying parameters are read. Never raises.

        Returns:
            False if no such bot is registered or the request is malformed
        """
        try:
            bot_class = BOT_CLASSES[_resolve_bot_type(bot_type)]
            bot_id = bot_class.identity_from_parameters(platform_name, user_email, parameters or {})
        except BotConfigurationError as e:
            logger.warning(f"Cannot stop bot for user {user_email} on {platform_name}: {e}")
            return False

        async with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                logger.info(f"Bot {bot_id} not found, nothing to stop")
                return False
            self._stop_bot(bot_id, bot, soft)

        logger.info(f"{'Soft stopped' if soft else 'Stopped'} bot {bot_id}")
        return True

    def _stop_bot(self, bot_id: str, bot: TradingBot, soft: bool) -> None:
        """Stop a registered bot. Callers hold the lock."""
        was_running = bot.is_running
        bot.stop(soft=soft)

        if was_running:
            self._stopped.add(bot.uuid)
            self._publish(BotStopped(uuid=bot.uuid))

        if not soft:
            self._bots.pop(bot_id, None)

    def _on_bot_done(self, bot_id: str, bot: TradingBot, task: asyncio.Task) -> None:
        self._tasks.pop(bot.uuid, None)

        if self._bots.get(bot_id) is bot:
            del self._bots[bot_id]

        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Bot {bot_id} ({bot.uuid}) crashed: {task.exception()}")

        # Loop ended without a stop request, e.g. a failed start
        if bot.uuid not in self._stopped:
            self._publish(BotStopped(uuid=bot.uuid))
        self._stopped.discard(bot.uuid)

    def _publish(self, event) -> None:
        if self.activity_log is not None:
            self.activity_log.publish(event)

    def get_bot(self, bot_id: str) -> Optional[TradingBot]:
        return self._bots.get(bot_id)

    def get_task(self, bot: TradingBot) -> Optional[asyncio.Task]:
        """The task running ``bot``, None once it has finished."""
        return self._tasks.get(bot.uuid)

    def list_active_bots(self, user_email: Optional[str] = None) -> List[Dict[str, Any]]:
        """Describe registered bots, optionally only those of one user."""
        return [
            bot.describe()
            for bot in self._bots.values()
            if user_email is None or bot.user_email == user_email
        ]

    async def check_opportunity(
        self,
        gateway: ExchangeGateway,
        trading_pairs: Sequence[Any],
        compare_pair: str,
    ) -> Opportunity:
        """Price an arbitrage cycle without starting a bot.

        Raises:
            BotConfigurationError: If the trading pairs are malformed
            ExchangeGatewayError: If a ticker cannot be fetched
        """
        return await check_opportunity(gateway, parse_trading_pairs(list(trading_pairs)), compare_pair)

    async def shutdown(self, timeout: float = 10.0) -> int:
        """Stop every bot and wait for their loops to end.

        Returns:
            Number of bots that were registered
        """
        async with self._lock:
            bots = list(self._bots.items())
            for bot_id, bot in bots:
                self._stop_bot(bot_id, bot, soft=False)
            tasks = list(self._tasks.values())

        if not bots:
            logger.info("No running bots to shut down")

        if tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for bot tasks, cancelling...")
                for task in tasks:
                    task.cancel()

        logger.info(f"Bots tracker shut down, stopped {len(bots)} bot(s)")
        return len(bots)
