"""Triangular arbitrage opportunity calculation.

A cycle of trading pairs is priced against one direct "compare" pair:

    calc_buy  = first.ask  / leg(ask) / leg(ask) ...
    calc_sell = first.bid  / leg(bid) / leg(bid) ...

where a leg flagged ``traversed`` runs backwards and contributes ``1 / price``
instead of ``price``. ``positive_opp = compare.bid / calc_buy`` is the return
of buying through the cycle and selling the compare pair, ``negative_opp =
calc_sell / compare.ask`` the return of the opposite direction. A value of
1.0 means no edge.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence

from .exchange import ExchangeGateway, Ticker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradingPair:
    """One leg of an arbitrage cycle."""
    id: str
    traversed: bool = False

    def to_dict(self) -> dict:
        return {"id": self.id, "traversed": self.traversed}


@dataclass(frozen=True)
class TickerSnapshot:
    """Prices of one pair at the time an opportunity was computed."""
    last: float
    bid: float
    ask: float

    @classmethod
    def from_ticker(cls, ticker: Ticker) -> "TickerSnapshot":
        return cls(last=ticker.last, bid=ticker.bid, ask=ticker.ask)


@dataclass(frozen=True)
class Opportunity:
    """Result of an opportunity check."""
    current_tickers: Dict[str, TickerSnapshot]
    compare_pair: TickerSnapshot
    positive_opp: float
    negative_opp: float

    def to_dict(self) -> dict:
        return {
            "currentTickers": {
                pair: {"last": t.last, "bid": t.bid, "ask": t.ask}
                for pair, t in self.current_tickers.items()
            },
            "comparePair": {
                "last": self.compare_pair.last,
                "bid": self.compare_pair.bid,
                "ask": self.compare_pair.ask,
            },
            "positiveOpp": self.positive_opp,
            "negativeOpp": self.negative_opp,
        }


def _chain(first: float, legs: Sequence[tuple]) -> float:
    value = first
    for price, traversed in legs:
        value = value / ((1 / price) if traversed else price)
    return value


def calculate_opportunity(
    tickers: Mapping[str, TickerSnapshot],
    trading_pairs: Sequence[TradingPair],
    compare_pair: str,
) -> Opportunity:
    """Compute both arbitrage directions from a ticker snapshot.

    Has no side effects: identical inputs always give identical results.
    The ``traversed`` flag of the first pair is not used; the cycle starts
    from that pair's own quote.

    Args:
        tickers: Snapshot per pair id, including the compare pair
        trading_pairs: Cycle legs in order (at least one)
        compare_pair: Id of the direct pair

    Returns:
        Opportunity with the snapshot it was computed from

    Raises:
        ValueError: If the cycle is empty
        KeyError: If a ticker is missing from the snapshot
        ZeroDivisionError: If a price in the chain is zero
    """
    if not trading_pairs:
        raise ValueError("At least one trading pair is required")

    first, rest = trading_pairs[0], trading_pairs[1:]
    first_ticker = tickers[first.id]
    compare = tickers[compare_pair]

    calc_buy_pair = _chain(first_ticker.ask, [(tickers[p.id].ask, p.traversed) for p in rest])
    calc_sell_pair = _chain(first_ticker.bid, [(tickers[p.id].bid, p.traversed) for p in rest])

    current_tickers = {p.id: tickers[p.id] for p in trading_pairs}
    current_tickers[compare_pair] = compare

    return Opportunity(
        current_tickers=current_tickers,
        compare_pair=compare,
        positive_opp=compare.bid / calc_buy_pair,
        negative_opp=calc_sell_pair / compare.ask,
    )


async def check_opportunity(
    gateway: ExchangeGateway,
    trading_pairs: Sequence[TradingPair],
    compare_pair: str,
) -> Opportunity:
    """Fetch live tickers for the cycle and compare pair, then compute.

    Read-only: never places orders. Gateway errors propagate to the caller.
    """
    pair_ids: List[str] = [p.id for p in trading_pairs] + [compare_pair]
    fetched = await asyncio.gather(*(gateway.fetch_ticker(pair_id) for pair_id in pair_ids))

    snapshot = {
        pair_id: TickerSnapshot.from_ticker(ticker)
        for pair_id, ticker in zip(pair_ids, fetched)
    }
    return calculate_opportunity(snapshot, trading_pairs, compare_pair)
