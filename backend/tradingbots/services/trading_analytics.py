"""Profit and loss summary over an account's own fills."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .exchange import ExchangeGateway, MyTrade, Ticker

logger = logging.getLogger(__name__)


@dataclass
class SideTotals:
    """Accumulated volume of one side (buys or sells)."""
    base_amount: float
    quote_amount: float
    avg_price: Optional[float]


@dataclass
class TradeSummary:
    """Aggregated view of a pair's fills over a time window."""
    trading_pair: str
    minutes_up: float
    current_price: float
    buys: SideTotals
    sells: SideTotals
    fees: Dict[str, float]
    profit_and_loss: Dict[str, float]
    relative_pl: float


def _avg(quote: float, base: float) -> Optional[float]:
    return quote / base if base else None


def aggregate_my_trades(
    market_id: str,
    trades: List[MyTrade],
    ticker: Ticker,
    minutes_up: float,
) -> TradeSummary:
    """Aggregate fills of ``market_id`` (e.g. ``"DOGE/USDT"``).

    Absolute P&L is reported per currency (base bought minus sold minus base
    fees; quote received minus spent minus quote fees). The relative P&L
    values the base position at the current ``ticker.last`` in quote.
    """
    base, quote = market_id.split("/")

    buys = {base: 0.0, quote: 0.0}
    sells = {base: 0.0, quote: 0.0}
    fees = {base: 0.0, quote: 0.0}

    for trade in trades:
        bucket = buys if trade.side == "buy" else sells
        bucket[quote] += trade.cost
        bucket[base] += trade.amount

        if trade.fee_currency == quote:
            fees[quote] += trade.fee
        else:
            fees[base] += trade.fee

    absolute_pl = {
        base: buys[base] - sells[base] - fees[base],
        quote: sells[quote] - buys[quote] - fees[quote],
    }
    relative_pl = absolute_pl[quote] + absolute_pl[base] * ticker.last

    return TradeSummary(
        trading_pair=market_id,
        minutes_up=minutes_up,
        current_price=ticker.last,
        buys=SideTotals(buys[base], buys[quote], _avg(buys[quote], buys[base])),
        sells=SideTotals(sells[base], sells[quote], _avg(sells[quote], sells[base])),
        fees=fees,
        profit_and_loss=absolute_pl,
        relative_pl=relative_pl,
    )


async def summarize_my_trades(
    gateway: ExchangeGateway,
    pair: str,
    market_id: str,
    hours: float = 2,
) -> TradeSummary:
    """Fetch the account's fills for the last ``hours`` and aggregate them."""
    trades = await gateway.fetch_my_trades(pair, since_hours=hours)
    ticker = await gateway.fetch_ticker(pair)
    logger.debug(f"Aggregating {len(trades)} trade(s) for {market_id} over {hours}h")
    return aggregate_my_trades(market_id, trades, ticker, minutes_up=hours * 60)
