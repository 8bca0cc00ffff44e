"""Triangular arbitrage bot."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..config import BotConfigurationError
from ..exchange import ExchangeGatewayError, OrderSide, OrderType
from ..opportunity import Opportunity, TradingPair, check_opportunity
from .base import BotType, TradingBot, require_positive, require_text

logger = logging.getLogger(__name__)


def parse_trading_pairs(raw: Any) -> Tuple[TradingPair, ...]:
    """Build the cycle legs from ``[{"id": ..., "traversed": ...}, ...]``.

    Raises:
        BotConfigurationError: If fewer than two legs are given or a leg is malformed
    """
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        raise BotConfigurationError("Parameter 'trading_pairs' must list at least two trading pairs")

    pairs = []
    for entry in raw:
        if isinstance(entry, TradingPair):
            pairs.append(entry)
            continue
        if not isinstance(entry, Mapping):
            raise BotConfigurationError(f"Trading pair {entry!r} must be an object with an 'id'")
        traversed = entry.get("traversed", False)
        if not isinstance(traversed, bool):
            raise BotConfigurationError(f"Trading pair 'traversed' must be a boolean, got {traversed!r}")
        pairs.append(TradingPair(id=require_text(entry, "id"), traversed=traversed))
    return tuple(pairs)


@dataclass(frozen=True)
class ArbitrageParameters:
    trading_pairs: Tuple[TradingPair, ...]
    compare_pair: str
    amount: float
    check_interval: float = 30
    minimum_margin: float = 0.01

    @classmethod
    def from_dict(cls, parameters: Mapping[str, Any], default_interval: float = 30) -> "ArbitrageParameters":
        """Validate request parameters.

        Raises:
            BotConfigurationError: On missing or malformed values
        """
        return cls(
            trading_pairs=parse_trading_pairs(parameters.get("trading_pairs")),
            compare_pair=require_text(parameters, "compare_pair"),
            amount=require_positive(parameters, "amount"),
            check_interval=require_positive(parameters, "check_interval", default_interval),
            minimum_margin=require_positive(parameters, "minimum_margin", 0.01),
        )


class ArbitrageBot(TradingBot):
    """Watches a cycle of pairs against a compare pair and trades the spread.

    Holds no state between checks, every cycle is priced from fresh tickers.
    """

    bot_type = BotType.ARBITRAGE

    def __init__(self, user_email, user_id, platform_name, gateway, parameters: ArbitrageParameters,
                 activity_log=None, bot_logger=None):
        super().__init__(
            user_email, user_id, platform_name, gateway,
            interval_seconds=parameters.check_interval,
            activity_log=activity_log,
            bot_logger=bot_logger,
        )
        self.trading_pairs = parameters.trading_pairs
        self.compare_pair = parameters.compare_pair
        self.amount = parameters.amount
        self.minimum_margin = parameters.minimum_margin
        self.last_opportunity: Optional[Opportunity] = None

    @staticmethod
    def generate_id(platform_name: str, user_email: str, trading_pairs: Sequence[TradingPair],
                    compare_pair: str) -> str:
        pair_ids = ",".join(pair.id for pair in trading_pairs)
        return f"ARBITRAGE_{platform_name}_{user_email}_TRADING_PAIRS_<{pair_ids}>_COMPARE_PAIR_{compare_pair}"

    @classmethod
    def identity_from_parameters(cls, platform_name: str, user_email: str, parameters: Mapping[str, Any]) -> str:
        return cls.generate_id(
            platform_name, user_email,
            parse_trading_pairs(parameters.get("trading_pairs")),
            require_text(parameters, "compare_pair"),
        )

    def get_id(self) -> str:
        return self.generate_id(self.platform_name, self.user_email, self.trading_pairs, self.compare_pair)

    async def tick(self) -> None:
        if not self.is_running:
            return

        try:
            opportunity = await check_opportunity(self.gateway, self.trading_pairs, self.compare_pair)
        except ExchangeGatewayError as e:
            logger.warning(f"Arbitrage bot {self.get_id()}: fetching tickers failed: {e}, skipping this check")
            return
        except ZeroDivisionError:
            logger.warning(f"Arbitrage bot {self.get_id()}: zero price in ticker data, skipping this check")
            return

        self.last_opportunity = opportunity

        if opportunity.positive_opp - 1 > self.minimum_margin:
            logger.info(f"Arbitrage bot {self.get_id()}: positive opportunity found: {opportunity.to_dict()}")
            legs = [
                (pair.id, OrderSide.SELL,
                 self.amount * opportunity.compare_pair.ask / opportunity.current_tickers[pair.id].bid)
                for pair in self.trading_pairs
            ]
            legs.append((self.compare_pair, OrderSide.BUY, self.amount))
            await self.execute_legs(legs, opportunity.positive_opp)

        elif opportunity.negative_opp - 1 > self.minimum_margin:
            logger.info(f"Arbitrage bot {self.get_id()}: negative opportunity found: {opportunity.to_dict()}")
            legs = [
                (pair.id, OrderSide.BUY,
                 self.amount * opportunity.compare_pair.bid / opportunity.current_tickers[pair.id].ask)
                for pair in self.trading_pairs
            ]
            legs.append((self.compare_pair, OrderSide.SELL, self.amount))
            await self.execute_legs(legs, opportunity.negative_opp)

    async def execute_legs(self, legs: List[Tuple[str, OrderSide, float]], ratio: float) -> int:
        """Place market orders one after the other.

        A failed leg is logged and the remaining legs are still placed.

        Returns:
            Number of legs placed
        """
        placed = 0
        for pair_id, side, amount in legs:
            try:
                logger.info(f"Arbitrage bot {self.get_id()}: {side.value} {amount} of {pair_id}")
                order = await self.gateway.create_order(pair_id, None, amount, side.value, OrderType.MARKET.value)
            except ExchangeGatewayError as e:
                logger.error(f"Arbitrage bot {self.get_id()}: {side.value} leg on {pair_id} failed: {e}")
                self._log_activity(f"{side.value} leg on {pair_id} failed: {e}", level="ERROR")
                continue

            placed += 1
            self._record_transaction(
                side.value, pair_id, amount, price=order.average, order_id=order.id, opportunity=ratio
            )

        self._log_activity(f"Arbitrage executed {placed}/{len(legs)} legs at ratio {ratio}")
        return placed

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tradingPairs": [pair.to_dict() for pair in self.trading_pairs],
            "comparePair": self.compare_pair,
            "amount": self.amount,
            "checkInterval": self.interval_seconds,
            "lastOpportunity": self.last_opportunity.to_dict() if self.last_opportunity else None,
        }
