"""Grid trading bot.

Places a market order each time the price crosses a grid level around a
reference price: sells above it, buys below it. The capital committed by the
bot (``currently_invested_funds``) moves one chunk per order and is kept within
``[0, maximum_investment]``.

Grid levels are 1-based: level +k is the k-th sell level, level -k the k-th
buy level. Hitting a level blocks it until the mirrored level on the other
side is hit (or the grid is regenerated), which keeps both sides trading
without letting either run away.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..config import BotConfigurationError
from ..exchange import ExchangeGatewayError, OrderSide, OrderType
from .base import BotType, TradingBot, require_positive, require_text

logger = logging.getLogger(__name__)

# Float slack for level and chunk arithmetic (0.009 / 0.004 must be 2, not 2.2499...)
EPSILON = 1e-9


class GridStrategy(str, Enum):
    """Initial capital bias of a grid bot."""
    NEUTRAL = "neutral"  # half invested: ready to buy and to sell
    LONG = "long"        # nothing invested: sells only after buys
    SHORT = "short"      # fully invested: buys only after sells


@dataclass
class GridLevel:
    value: float
    hit: bool = False


@dataclass(frozen=True)
class GridParameters:
    coin_id: str
    maximum_investment: float
    number_of_grids: int = 5
    percentage_per_grid: float = 0.4
    starting_price: Optional[float] = None
    strategy: GridStrategy = GridStrategy.NEUTRAL
    interval_seconds: float = 10

    @classmethod
    def from_dict(cls, parameters: Mapping[str, Any], default_interval: float = 10) -> "GridParameters":
        """Validate request parameters.

        Raises:
            BotConfigurationError: On missing or malformed values
        """
        number_of_grids = parameters.get("number_of_grids", 5)
        if isinstance(number_of_grids, bool) or not isinstance(number_of_grids, int) or number_of_grids < 1:
            raise BotConfigurationError(
                f"Parameter 'number_of_grids' must be a positive integer, got {number_of_grids!r}"
            )

        strategy = parameters.get("strategy", GridStrategy.NEUTRAL.value)
        try:
            strategy = GridStrategy(strategy)
        except ValueError:
            raise BotConfigurationError(
                f"Grid strategy '{strategy}' is not supported, "
                f"the supported values are: {','.join(s.value for s in GridStrategy)}"
            )

        starting_price = parameters.get("starting_price")
        if starting_price is not None:
            starting_price = require_positive(parameters, "starting_price")

        return cls(
            coin_id=require_text(parameters, "coin_id"),
            maximum_investment=require_positive(parameters, "maximum_investment"),
            number_of_grids=number_of_grids,
            percentage_per_grid=require_positive(parameters, "percentage_per_grid", 0.4),
            starting_price=starting_price,
            strategy=strategy,
            interval_seconds=require_positive(parameters, "interval_seconds", default_interval),
        )


def compute_grid_level(price: float, starting_price: float, percentage_per_grid: float) -> int:
    """Signed number of whole grid steps ``price`` is away from ``starting_price``."""
    percentage_diff = price / starting_price - 1
    multiplier = -1 if percentage_diff < 0 else 1
    return multiplier * int(math.floor(abs(percentage_diff) / (percentage_per_grid / 100) + EPSILON))


def initial_invested_funds(strategy: GridStrategy, maximum_investment: float) -> float:
    if strategy == GridStrategy.NEUTRAL:
        return maximum_investment / 2
    if strategy == GridStrategy.LONG:
        return 0.0
    return maximum_investment


class GridBot(TradingBot):
    """Grid bot for one coin on one platform."""

    bot_type = BotType.GRID

    def __init__(self, user_email, user_id, platform_name, gateway, parameters: GridParameters,
                 activity_log=None, bot_logger=None):
        super().__init__(
            user_email, user_id, platform_name, gateway,
            interval_seconds=parameters.interval_seconds,
            activity_log=activity_log,
            bot_logger=bot_logger,
        )
        self.coin_id = parameters.coin_id
        self.maximum_investment = parameters.maximum_investment
        self.number_of_grids = parameters.number_of_grids
        self.percentage_per_grid = parameters.percentage_per_grid
        self.strategy = parameters.strategy

        self.currently_invested_funds = initial_invested_funds(parameters.strategy, parameters.maximum_investment)
        self.last_executed_grid = 0

        self.starting_price: Optional[float] = parameters.starting_price
        self.sell_grid: Optional[List[GridLevel]] = None
        self.buy_grid: Optional[List[GridLevel]] = None

        if self.starting_price is not None:
            self.init_grids()

    @staticmethod
    def generate_id(platform_name: str, user_email: str, coin_id: str) -> str:
        return f"GRID_{platform_name}_{user_email}_{coin_id}"

    @classmethod
    def identity_from_parameters(cls, platform_name: str, user_email: str, parameters: Mapping[str, Any]) -> str:
        """Identity for raw request parameters, reading only the discriminating fields."""
        return cls.generate_id(platform_name, user_email, require_text(parameters, "coin_id"))

    def get_id(self) -> str:
        return self.generate_id(self.platform_name, self.user_email, self.coin_id)

    @property
    def chunk(self) -> float:
        """Investment moved by a single grid level."""
        return self.maximum_investment / self.number_of_grids

    def init_grids(self) -> None:
        """(Re)build both grids around ``starting_price``, all levels un-hit."""
        unit = self.starting_price * (self.percentage_per_grid / 100)

        self.sell_grid = [GridLevel(self.starting_price + unit * k) for k in range(1, self.number_of_grids + 1)]
        self.buy_grid = [GridLevel(self.starting_price - unit * k) for k in range(1, self.number_of_grids + 1)]

        logger.info(
            f"Grid bot {self.get_id()}: buy levels {[round(l.value, 8) for l in self.buy_grid]}, "
            f"sell levels {[round(l.value, 8) for l in self.sell_grid]}"
        )

    async def tick(self) -> None:
        if not self.is_running:
            return

        try:
            last = (await self.gateway.fetch_ticker(self.coin_id)).last
        except ExchangeGatewayError as e:
            logger.warning(f"Grid bot {self.get_id()}: Failed to get the latest ticker information: {e}")
            return

        if self.sell_grid is None:
            # No starting price was provided, use the current market price
            self.starting_price = last
            self.init_grids()
            self._publish_update()
            return

        current_grid = compute_grid_level(last, self.starting_price, self.percentage_per_grid)

        if current_grid != self.last_executed_grid:
            await self.execute_grid_order(current_grid, last)

    async def execute_grid_order(self, level: int, price: float) -> bool:
        """Trade the grid level the market moved to.

        Args:
            level: Signed grid level computed from the current price
            price: Current market price (reference for a grid regeneration)

        Returns:
            True if an order was placed
        """
        if level == 0:
            self.last_executed_grid = 0
            return False

        order_side = OrderSide.SELL if level > 0 else OrderSide.BUY
        sign = 1 if level > 0 else -1

        if all(entry.hit for entry in self._grid_for(sign)):
            logger.info(
                f"Grid bot {self.get_id()}: grid reached its limit, regenerating around {price}"
            )
            self.starting_price = price
            self.init_grids()
            self.last_executed_grid = 0

        relevant_grid = self._grid_for(sign)
        opposing_grid = self._grid_for(-sign)

        index = abs(level)
        if index > self.number_of_grids:
            # Out of range: use the furthest level that is still open
            index = max(i for i, entry in enumerate(relevant_grid) if not entry.hit) + 1

        resolved_level = sign * index
        target = relevant_grid[index - 1]

        if target.hit:
            # The level was hit recently, wait for its mirror to unblock it
            return False

        # Open levels passed since the last order on this side (sudden moves)
        skipped: List[int] = []
        if self.last_executed_grid * sign > 0:
            skipped = [
                i for i in range(abs(self.last_executed_grid), index - 1)
                if not relevant_grid[i].hit
            ]

        amount = self.chunk * (1 + len(skipped))

        if order_side == OrderSide.BUY:
            headroom = self.maximum_investment - self.currently_invested_funds
            if amount > headroom + EPSILON:
                chunks = int(math.floor(headroom / self.chunk + EPSILON))
                if chunks == 0:
                    logger.info(
                        f"Grid bot {self.get_id()}: maximum investment reached, "
                        f"pausing buys until funds are sold"
                    )
                    return False
                amount = chunks * self.chunk
                skipped = skipped[:chunks - 1]
        elif self.currently_invested_funds + EPSILON < amount:
            logger.info(
                f"Grid bot {self.get_id()}: invested funds {self.currently_invested_funds} "
                f"below sell size {amount}, pausing sells until funds are bought"
            )
            return False

        try:
            logger.info(f"Grid bot {self.get_id()}: {order_side.value} {amount} at level {resolved_level}")
            order = await self.gateway.create_order(
                self.coin_id, None, amount, order_side.value, OrderType.MARKET.value
            )
        except ExchangeGatewayError as e:
            logger.error(
                f"Grid bot {self.get_id()}: creating {order_side.value} order for user {self.user_email}, "
                f"platform {self.platform_name} and coin {self.coin_id} failed: {e}, skipping for now"
            )
            self._log_activity(f"{order_side.value} order at level {resolved_level} failed: {e}", level="ERROR")
            return False

        if order_side == OrderSide.BUY:
            self.currently_invested_funds = min(self.maximum_investment, self.currently_invested_funds + amount)
        else:
            self.currently_invested_funds = max(0.0, self.currently_invested_funds - amount)

        self.last_executed_grid = resolved_level

        target.hit = True
        opposing_grid[index - 1].hit = False
        for i in skipped:
            relevant_grid[i].hit = True
            opposing_grid[i].hit = False

        self._record_transaction(
            order_side.value,
            self.coin_id,
            amount,
            price=order.average,
            order_id=order.id,
            level=resolved_level,
            skippedLevels=len(skipped),
        )
        self._log_activity(
            f"{order_side.value} {amount} at level {resolved_level}, "
            f"invested funds now {self.currently_invested_funds}"
        )
        self._publish_update()
        return True

    def _grid_for(self, sign: int) -> List[GridLevel]:
        return self.sell_grid if sign > 0 else self.buy_grid

    def snapshot(self) -> Dict[str, Any]:
        return {
            "coinId": self.coin_id,
            "strategy": self.strategy.value,
            "startingPrice": self.starting_price,
            "maximumInvestment": self.maximum_investment,
            "currentlyInvestedFunds": self.currently_invested_funds,
            "lastExecutedGrid": self.last_executed_grid,
            "sellGrid": [{"value": l.value, "hit": l.hit} for l in self.sell_grid or []],
            "buyGrid": [{"value": l.value, "hit": l.hit} for l in self.buy_grid or []],
        }
