"""Lifecycle shared by every trading bot strategy."""

import asyncio
import logging
import uuid as uuid_lib
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..activity_log import ActivityLogService, ActivityEvent, BotUpdated, TransactionLogged
from ..config import BotConfigurationError
from ..exchange import ExchangeGateway
from ..logging_service import BotLoggingService

logger = logging.getLogger(__name__)


class BotType(str, Enum):
    """Supported bot strategies."""
    GRID = "grid"
    MARKET_SPREAD = "marketSpread"
    ARBITRAGE = "arbitrage"


def require_positive(parameters: Mapping[str, Any], key: str, default: Any = None) -> float:
    """Read a strictly positive number from request parameters.

    Raises:
        BotConfigurationError: If the value is missing, not a number or <= 0
    """
    value = parameters.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise BotConfigurationError(f"Parameter '{key}' must be a number, got {value!r}")
    if value <= 0:
        raise BotConfigurationError(f"Parameter '{key}' must be positive, got {value}")
    return float(value)


def require_text(parameters: Mapping[str, Any], key: str) -> str:
    value = parameters.get(key)
    if not isinstance(value, str) or not value.strip():
        raise BotConfigurationError(f"Parameter '{key}' is required")
    return value.strip()


class TradingBot(ABC):
    """A long-running polling loop bound to one exchange gateway.

    Lifecycle:
        - ``run()`` ticks until stopped, sleeping ``interval_seconds`` between ticks
        - ``stop(soft=False)`` ends the loop at its next wake-up (the sleep is
          interrupted, so in practice immediately after the current tick)
        - ``stop(soft=True)`` lets strategies holding inventory drain it first,
          see ``is_draining``

    Every instance carries a ``uuid`` generated once at construction; all
    events it emits are correlated by it.
    """

    bot_type: BotType

    def __init__(
        self,
        user_email: str,
        user_id: str,
        platform_name: str,
        gateway: ExchangeGateway,
        interval_seconds: float,
        activity_log: Optional[ActivityLogService] = None,
        bot_logger: Optional[BotLoggingService] = None,
    ):
        self.user_email = user_email
        self.user_id = user_id
        self.platform_name = platform_name
        self.gateway = gateway
        self.interval_seconds = interval_seconds
        self.activity_log = activity_log
        self.bot_logger = bot_logger

        self.uuid = str(uuid_lib.uuid4())
        self.is_running = True
        self.soft_shutdown = False
        self._wake = asyncio.Event()

    @abstractmethod
    def get_id(self) -> str:
        """Deterministic identity of this bot."""

    @abstractmethod
    async def tick(self) -> None:
        """Perform one polling step."""

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Strategy state, as stored with update events."""

    async def on_start(self) -> None:
        """Hook run once before the first tick."""

    def is_draining(self) -> bool:
        """Whether a soft-stopped bot still has inventory to work off."""
        return False

    def should_continue(self) -> bool:
        return self.is_running or (self.soft_shutdown and self.is_draining())

    def stop(self, soft: bool = False) -> None:
        self.is_running = False
        self.soft_shutdown = soft
        self._wake.set()

    async def run(self) -> None:
        logger.info(
            f"Start {self.bot_type.value} bot {self.get_id()} ({self.uuid}) "
            f"for user {self.user_email} on platform {self.platform_name}"
        )
        self._log_activity("Bot started")

        try:
            await self.on_start()
        except Exception as e:
            logger.exception(f"Bot {self.get_id()}: Failed to start: {e}")
            self._log_activity(f"Failed to start: {e}", level="ERROR")
            self.is_running = False
            return

        while self.should_continue():
            try:
                await self.tick()
            except Exception as e:
                # Anything the strategy did not expect: log and retry next tick
                logger.exception(f"Bot {self.get_id()}: Error in execution loop: {e}")

            if not self.should_continue():
                break
            await self._sleep(self.interval_seconds)

        logger.info(f"Bot {self.get_id()} ({self.uuid}): Execution loop ended")
        self._log_activity("Bot stopped")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wake.clear()

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.get_id(),
            "uuid": self.uuid,
            "botType": self.bot_type.value,
            "platformName": self.platform_name,
            "userEmail": self.user_email,
            "running": self.is_running,
            "softShutdown": self.soft_shutdown,
            "state": self.snapshot(),
        }

    def _publish(self, event: ActivityEvent) -> None:
        if self.activity_log is not None:
            self.activity_log.publish(event)

    def _publish_update(self) -> None:
        self._publish(BotUpdated(uuid=self.uuid, additional_info=self.snapshot()))

    def _log_activity(self, message: str, level: str = "INFO") -> None:
        if self.bot_logger is not None:
            self.bot_logger.log_activity(message, level)

    def _record_transaction(
        self,
        transaction_type: str,
        pair: str,
        amount: float,
        price: Optional[float] = None,
        order_id: Optional[str] = None,
        **additional_info: Any,
    ) -> None:
        """Emit a transaction event and write it to the bot's audit file."""
        info = dict(additional_info)
        if order_id is not None:
            info["orderId"] = order_id

        self._publish(TransactionLogged(
            uuid=self.uuid,
            transaction_type=transaction_type,
            amount=amount,
            pair=pair,
            price=price,
            additional_info=info,
        ))
        if self.bot_logger is not None:
            self.bot_logger.log_transaction(transaction_type, pair, amount, price, order_id)
