"""Market spread bot.

Buys slightly below the recent trade average, and once the buy fills places a
sell a fixed margin above the fill price. At most one order is open at a time;
orders that sit unfilled for too long are repriced in place with
``edit_order``.

A soft stop cancels an unfilled buy and lets an open sell drain; a hard stop
leaves whatever order is open resting on the exchange.
"""

import logging
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..config import BotConfigurationError
from ..exchange import ExchangeGatewayError, ExchangeOrder, OrderSide, OrderType, RecentTrade
from .base import BotType, TradingBot, require_positive, require_text

logger = logging.getLogger(__name__)

SIGNIFICANT_TRADES_REQUIRED = 10
TREND_WINDOW_MINUTES = 5


@dataclass(frozen=True)
class MarketSpreadParameters:
    coin_id: str
    amount: float
    interval_seconds: float = 10
    stale_order_seconds: float = 60
    minimum_trade_notional: float = 10.0
    buy_margin: float = 0.006
    sell_margin: float = 0.006
    reprice_buy_margin: float = 0.007
    reprice_sell_margin: float = 0.005
    price_offset: float = 0.001
    reprice_buy_offset: float = 0.0001
    trend_check: bool = True
    soft_shutdown_timeout_seconds: Optional[float] = 3600

    @classmethod
    def from_dict(
        cls,
        parameters: Mapping[str, Any],
        default_interval: float = 10,
        default_stale_order_seconds: float = 60,
        default_soft_shutdown_timeout: Optional[float] = 3600,
    ) -> "MarketSpreadParameters":
        """Validate request parameters.

        Raises:
            BotConfigurationError: On missing or malformed values
        """
        trend_check = parameters.get("trend_check", True)
        if not isinstance(trend_check, bool):
            raise BotConfigurationError(f"Parameter 'trend_check' must be a boolean, got {trend_check!r}")

        soft_timeout = parameters.get("soft_shutdown_timeout_seconds", default_soft_shutdown_timeout)
        if soft_timeout is not None:
            soft_timeout = require_positive({"soft_shutdown_timeout_seconds": soft_timeout},
                                            "soft_shutdown_timeout_seconds")

        defaults = cls.__dataclass_fields__
        margins = {
            key: require_positive(parameters, key, defaults[key].default)
            for key in (
                "minimum_trade_notional", "buy_margin", "sell_margin", "reprice_buy_margin",
                "reprice_sell_margin", "price_offset", "reprice_buy_offset",
            )
        }

        return cls(
            coin_id=require_text(parameters, "coin_id"),
            amount=require_positive(parameters, "amount"),
            interval_seconds=require_positive(parameters, "interval_seconds", default_interval),
            stale_order_seconds=require_positive(parameters, "stale_order_seconds", default_stale_order_seconds),
            trend_check=trend_check,
            soft_shutdown_timeout_seconds=soft_timeout,
            **margins,
        )


@dataclass
class OpenOrder:
    """The single order a market spread bot is working."""
    coin_id: str
    amount: float
    order_id: str
    price: float
    type: str  # OrderSide value
    fill_recorded: bool = False
    placed_at: Optional[float] = field(default=None, compare=False)  # clock seconds of the last placement


@dataclass(frozen=True)
class MarketAssessment:
    suggest_buy: bool
    average: Optional[float] = None


def select_significant_trades(
    trades: List[RecentTrade], bid: float, minimum_trade_notional: float
) -> List[RecentTrade]:
    """Trades whose size is worth at least ``minimum_trade_notional`` at ``bid``."""
    threshold = minimum_trade_notional / bid if bid > 0 else 0.0
    return [trade for trade in trades if trade.amount >= threshold]


def average_price(trades: List[RecentTrade]) -> Optional[float]:
    if not trades:
        return None
    return sum(trade.price for trade in trades) / len(trades)


def assess_market_trends(
    trades: List[RecentTrade], now_ms: float, window_minutes: int = TREND_WINDOW_MINUTES
) -> bool:
    """Whether the last few minutes of trading allow placing a buy.

    Trades are bucketed per minute over ``window_minutes`` and each bucket is
    averaged. A buy is rejected when too few buckets have trades (more than one
    gap), or when the newest bucket dropped below the previous one and the
    earlier buckets rose at most once.
    """
    buckets: List[List[float]] = [[] for _ in range(window_minutes)]
    for trade in trades:
        age_ms = now_ms - trade.timestamp
        if age_ms < 0 or age_ms >= window_minutes * 60 * 1000:
            continue
        buckets[int(age_ms // (60 * 1000))].append(trade.price)

    # Oldest first, empty minutes dropped
    averages = [sum(prices) / len(prices) for prices in reversed(buckets) if prices]

    if len(averages) < window_minutes - 1:
        logger.info("Very little trading activity at the moment, skipping buy orders until there is more")
        return False

    if averages[-1] < averages[-2]:
        earlier = averages[:-1]
        up_ticks = sum(1 for previous, current in zip(earlier, earlier[1:]) if current > previous)
        if up_ticks <= 1:
            logger.info("General market trend is negative, delaying buy orders until the market stabilises")
            return False

    return True


class MarketSpreadBot(TradingBot):
    """Spread capturing bot for one coin on one platform."""

    bot_type = BotType.MARKET_SPREAD

    def __init__(self, user_email, user_id, platform_name, gateway, parameters: MarketSpreadParameters,
                 activity_log=None, bot_logger=None, clock: Callable[[], float] = time.time):
        super().__init__(
            user_email, user_id, platform_name, gateway,
            interval_seconds=parameters.interval_seconds,
            activity_log=activity_log,
            bot_logger=bot_logger,
        )
        self.coin_id = parameters.coin_id
        self.amount = parameters.amount
        self.parameters = parameters
        self._clock = clock

        self.open_order: Optional[OpenOrder] = None
        self.remote_order: Optional[ExchangeOrder] = None
        self._drain_deadline: Optional[float] = None

    @staticmethod
    def generate_id(platform_name: str, user_email: str, coin_id: str) -> str:
        return f"MARKET_SPREAD_{platform_name}_{user_email}_{coin_id}"

    @classmethod
    def identity_from_parameters(cls, platform_name: str, user_email: str, parameters: Mapping[str, Any]) -> str:
        return cls.generate_id(platform_name, user_email, require_text(parameters, "coin_id"))

    def get_id(self) -> str:
        return self.generate_id(self.platform_name, self.user_email, self.coin_id)

    @staticmethod
    def compute_buy_price(bid: float, average: float, price_offset: float = 0.001, margin: float = 0.006) -> float:
        """Either just above the current bid or ``margin`` below the recent average."""
        return min(bid + price_offset, average * (1 - margin))

    @staticmethod
    def assess_current_market_situation(
        trades: List[RecentTrade],
        bid: float,
        now_ms: float,
        minimum_trade_notional: float = 10.0,
        trend_check: bool = True,
    ) -> MarketAssessment:
        """Decide whether recent trade flow supports a new buy order.

        Returns:
            The decision and, if positive, the average price of the last ten
            significant trades
        """
        significant = select_significant_trades(trades, bid, minimum_trade_notional)
        last_trades = significant[-SIGNIFICANT_TRADES_REQUIRED:]

        if len(last_trades) < SIGNIFICANT_TRADES_REQUIRED:
            return MarketAssessment(suggest_buy=False)

        if trend_check and not assess_market_trends(significant, now_ms):
            return MarketAssessment(suggest_buy=False)

        return MarketAssessment(suggest_buy=True, average=average_price(last_trades))

    def stop(self, soft: bool = False) -> None:
        super().stop(soft)
        timeout = self.parameters.soft_shutdown_timeout_seconds
        if soft and timeout is not None:
            self._drain_deadline = self._clock() + timeout

    def is_draining(self) -> bool:
        if self.open_order is None:
            return False
        if self._drain_deadline is not None and self._clock() >= self._drain_deadline:
            logger.warning(
                f"Market spread bot {self.get_id()}: soft shutdown timed out, "
                f"leaving {self.open_order.type} order {self.open_order.order_id} open"
            )
            return False
        return True

    async def tick(self) -> None:
        if self.open_order is None:
            if self.is_running:
                await self.check_market_for_buying_order()
            return

        order_id = self.open_order.order_id
        try:
            self.remote_order = await self.gateway.fetch_order(order_id, self.coin_id)
        except ExchangeGatewayError as e:
            logger.warning(
                f"Market spread bot {self.get_id()}: fetching order {order_id} failed: {e}, skipping for now"
            )
            return

        if self.remote_order.is_fully_executed:
            await self.react_to_executed_order()
        elif not self.is_running and self.open_order.type == OrderSide.BUY.value:
            await self.abandon_open_buy()
        else:
            await self.adjust_open_order()

    async def abandon_open_buy(self) -> bool:
        """Cancel the unfilled buy order of a stopping bot.

        The order stays tracked when the cancel fails, so the next tick tries
        again until the soft shutdown runs out.
        """
        order_id = self.open_order.order_id
        try:
            await self.gateway.cancel_order(order_id, self.coin_id)
        except ExchangeGatewayError as e:
            logger.warning(f"Market spread bot {self.get_id()}: cancelling buy order {order_id} failed: {e}")
            return False

        logger.info(f"Market spread bot {self.get_id()}: stopping, cancelled unfilled buy order {order_id}")
        self._log_activity(f"Cancelled unfilled buy order {order_id} on shutdown", level="WARNING")
        self.open_order = None
        self._publish_update()
        return True

    async def check_market_for_buying_order(self) -> bool:
        try:
            trades = await self.gateway.get_recent_trades(self.coin_id)
            ticker = await self.gateway.fetch_ticker(self.coin_id)
        except ExchangeGatewayError as e:
            logger.warning(f"Market spread bot {self.get_id()}: fetching market data failed: {e}, skipping for now")
            return False

        assessment = self.assess_current_market_situation(
            trades,
            ticker.bid,
            self._clock() * 1000,
            minimum_trade_notional=self.parameters.minimum_trade_notional,
            trend_check=self.parameters.trend_check,
        )
        if not assessment.suggest_buy:
            return False

        buy_price = self.compute_buy_price(
            ticker.bid, assessment.average, self.parameters.price_offset, self.parameters.buy_margin
        )

        try:
            logger.info(f"Market spread bot {self.get_id()}: creating buy order for {self.amount} at {buy_price}")
            order = await self.gateway.create_order(
                self.coin_id, buy_price, self.amount, OrderSide.BUY.value, OrderType.LIMIT.value
            )
        except ExchangeGatewayError as e:
            logger.error(
                f"Market spread bot {self.get_id()}: creating buy order for user {self.user_email}, "
                f"platform {self.platform_name} and coin {self.coin_id} failed: {e}, skipping for now"
            )
            return False

        self.open_order = OpenOrder(
            coin_id=self.coin_id,
            amount=self.amount,
            order_id=order.id,
            price=buy_price,
            type=OrderSide.BUY.value,
            placed_at=self._clock(),
        )
        self._log_activity(f"Placed buy order {order.id} for {self.amount} at {buy_price}")
        self._publish_update()
        return True

    async def react_to_executed_order(self) -> None:
        order = self.open_order
        fill_price = self.remote_order.average or order.price
        filled = self.remote_order.filled or order.amount

        if order.type == OrderSide.SELL.value:
            self._record_transaction(
                OrderSide.SELL.value, self.coin_id, filled, price=fill_price, order_id=order.order_id
            )
            self._log_activity(f"Sell order {order.order_id} filled at {fill_price}")
            self.open_order = None
            self._publish_update()
            return

        if not order.fill_recorded:
            self._record_transaction(
                OrderSide.BUY.value, self.coin_id, filled, price=fill_price, order_id=order.order_id
            )
            order.fill_recorded = True

        logger.info(
            f"Market spread bot {self.get_id()}: buy order {order.order_id} was fully executed, adding sell order"
        )

        try:
            ticker = await self.gateway.fetch_ticker(self.coin_id)
            sell_price = max(fill_price * (1 + self.parameters.sell_margin), ticker.ask - self.parameters.price_offset)
            sell_order = await self.gateway.create_order(
                self.coin_id, sell_price, order.amount, OrderSide.SELL.value, OrderType.LIMIT.value
            )
        except ExchangeGatewayError as e:
            logger.error(
                f"Market spread bot {self.get_id()}: creating sell order for user {self.user_email}, "
                f"platform {self.platform_name} and coin {self.coin_id} failed: {e}, skipping for now"
            )
            return

        self.open_order = OpenOrder(
            coin_id=self.coin_id,
            amount=order.amount,
            order_id=sell_order.id,
            price=sell_price,
            type=OrderSide.SELL.value,
            placed_at=self._clock(),
        )
        self._log_activity(f"Placed sell order {sell_order.id} for {order.amount} at {sell_price}")
        self._publish_update()

    async def adjust_open_order(self) -> bool:
        """Reprice the open order if it has been waiting too long.

        Returns:
            True if the order was edited
        """
        order = self.open_order
        placed_at = order.placed_at
        if self.remote_order.timestamp is not None:
            placed_at = self.remote_order.timestamp / 1000
        # Without any placement time the order counts as stale
        if placed_at is not None and self._clock() - placed_at < self.parameters.stale_order_seconds:
            return False

        logger.info(
            f"Market spread bot {self.get_id()}: unprocessed {order.type} order {order.order_id} "
            f"is blocking the execution, adjusting its price"
        )

        try:
            trades = await self.gateway.get_recent_trades(self.coin_id)
            ticker = await self.gateway.fetch_ticker(self.coin_id)
            minimum_quantity = await self.gateway.get_minimum_quantity(self.coin_id)
        except ExchangeGatewayError as e:
            logger.warning(f"Market spread bot {self.get_id()}: fetching market data failed: {e}")
            return False

        significant = select_significant_trades(trades, ticker.bid, self.parameters.minimum_trade_notional)
        average = average_price(significant[-SIGNIFICANT_TRADES_REQUIRED:])
        if average is None:
            logger.info(f"Market spread bot {self.get_id()}: no significant recent trades, keeping current price")
            return False

        if order.type == OrderSide.BUY.value:
            price = min(ticker.bid + self.parameters.reprice_buy_offset,
                        average * (1 - self.parameters.reprice_buy_margin))
        else:
            price = max(average * (1 + self.parameters.reprice_sell_margin),
                        ticker.ask - self.parameters.price_offset)

        amount = max(self.remote_order.remaining, minimum_quantity)

        try:
            new_order = await self.gateway.edit_order(
                self.coin_id, order.order_id, price, amount, order.type, OrderType.LIMIT.value
            )
        except ExchangeGatewayError as e:
            logger.error(f"Market spread bot {self.get_id()}: adjusting {order.type} order failed: {e}")
            return False

        self.open_order = replace(
            order, order_id=new_order.id, price=price, amount=amount, placed_at=self._clock()
        )
        self._log_activity(f"Repriced {order.type} order {new_order.id} to {price} for {amount}")
        self._publish_update()
        return True

    def snapshot(self) -> Dict[str, Any]:
        open_order = None
        if self.open_order is not None:
            hidden = ("fill_recorded", "placed_at")
            open_order = {k: v for k, v in asdict(self.open_order).items() if k not in hidden}
        return {
            "coinId": self.coin_id,
            "amount": self.amount,
            "openOrder": open_order,
        }
