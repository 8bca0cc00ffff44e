"""Tests for the arbitrage opportunity calculation."""

import pytest

from tradingbots.services.exchange import ExchangeGatewayError
from tradingbots.services.opportunity import (
    TickerSnapshot,
    TradingPair,
    calculate_opportunity,
    check_opportunity,
)


CYCLE = (TradingPair("ETH/BTC"), TradingPair("BTC/USDT", traversed=True))

TICKERS = {
    "ETH/BTC": TickerSnapshot(last=0.05, bid=0.049, ask=0.051),
    "BTC/USDT": TickerSnapshot(last=60000.0, bid=59900.0, ask=60100.0),
    "ETH/USDT": TickerSnapshot(last=3000.0, bid=2990.0, ask=3010.0),
}


class TestCalculateOpportunity:
    """Test the pure calculation."""

    def test_chains_prices_through_the_cycle(self):
        opportunity = calculate_opportunity(TICKERS, CYCLE, "ETH/USDT")

        # Traversed leg contributes 1 / price to the divisor
        calc_buy = 0.051 / (1 / 60100.0)
        calc_sell = 0.049 / (1 / 59900.0)
        assert opportunity.positive_opp == pytest.approx(2990.0 / calc_buy)
        assert opportunity.negative_opp == pytest.approx(calc_sell / 3010.0)

    def test_forward_leg_divides_by_price(self):
        tickers = {
            "A": TickerSnapshot(last=2.0, bid=1.9, ask=2.0),
            "B": TickerSnapshot(last=4.0, bid=3.8, ask=4.0),
            "C": TickerSnapshot(last=0.5, bid=0.52, ask=0.53),
        }

        opportunity = calculate_opportunity(tickers, [TradingPair("A"), TradingPair("B")], "C")

        assert opportunity.positive_opp == pytest.approx(0.52 / (2.0 / 4.0))
        assert opportunity.negative_opp == pytest.approx((1.9 / 3.8) / 0.53)

    def test_identical_snapshots_give_identical_results(self):
        first = calculate_opportunity(TICKERS, CYCLE, "ETH/USDT")
        second = calculate_opportunity(TICKERS, CYCLE, "ETH/USDT")

        assert first == second
        assert first.positive_opp == second.positive_opp
        assert first.negative_opp == second.negative_opp

    def test_snapshot_is_reported(self):
        opportunity = calculate_opportunity(TICKERS, CYCLE, "ETH/USDT")

        assert opportunity.compare_pair == TICKERS["ETH/USDT"]
        assert set(opportunity.current_tickers) == {"ETH/BTC", "BTC/USDT", "ETH/USDT"}
        assert opportunity.to_dict()["comparePair"] == {"last": 3000.0, "bid": 2990.0, "ask": 3010.0}

    def test_empty_cycle_rejected(self):
        with pytest.raises(ValueError):
            calculate_opportunity(TICKERS, [], "ETH/USDT")

    def test_missing_ticker_raises(self):
        with pytest.raises(KeyError):
            calculate_opportunity(TICKERS, [TradingPair("ETH/BTC"), TradingPair("XRP/BTC")], "ETH/USDT")


class TestCheckOpportunity:
    """Test the live query through a gateway."""

    @pytest.mark.asyncio
    async def test_fetches_all_tickers(self, gateway):
        for pair, ticker in TICKERS.items():
            gateway.set_ticker(pair, ticker.last, bid=ticker.bid, ask=ticker.ask)

        opportunity = await check_opportunity(gateway, CYCLE, "ETH/USDT")

        assert opportunity == calculate_opportunity(TICKERS, CYCLE, "ETH/USDT")
        assert gateway.orders_placed == []

    @pytest.mark.asyncio
    async def test_gateway_errors_propagate(self, gateway):
        gateway.set_ticker("ETH/BTC", 0.05)

        with pytest.raises(ExchangeGatewayError):
            await check_opportunity(gateway, CYCLE, "ETH/USDT")
