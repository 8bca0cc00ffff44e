"""Tests for the profit and loss summary."""

import pytest

from tradingbots.services.exchange import MyTrade, Ticker
from tradingbots.services.trading_analytics import aggregate_my_trades, summarize_my_trades


def trade(side, amount, price, fee=0.0, fee_currency="USDT"):
    return MyTrade(
        side=side, amount=amount, price=price, cost=amount * price,
        fee=fee, fee_currency=fee_currency, timestamp=0,
    )


class TestAggregateMyTrades:
    """Test aggregation of fills."""

    def test_round_trip_profit(self):
        trades = [
            trade("buy", 100, 0.20, fee=0.1, fee_currency="DOGE"),
            trade("sell", 50, 0.25, fee=0.02),
        ]

        summary = aggregate_my_trades("DOGE/USDT", trades, Ticker("DOGE/USDT", 0.29, 0.31, 0.30), 120)

        assert summary.buys.base_amount == 100
        assert summary.buys.quote_amount == pytest.approx(20.0)
        assert summary.buys.avg_price == pytest.approx(0.20)
        assert summary.sells.avg_price == pytest.approx(0.25)
        assert summary.fees == {"DOGE": 0.1, "USDT": 0.02}
        assert summary.profit_and_loss["DOGE"] == pytest.approx(49.9)
        assert summary.profit_and_loss["USDT"] == pytest.approx(12.5 - 20.0 - 0.02)
        assert summary.relative_pl == pytest.approx(-7.52 + 49.9 * 0.30)
        assert summary.current_price == 0.30

    def test_no_trades(self):
        summary = aggregate_my_trades("ETH/CAD", [], Ticker("ETH/CAD", 1.0, 1.0, 1.0), 60)

        assert summary.buys.avg_price is None
        assert summary.sells.avg_price is None
        assert summary.relative_pl == 0.0


class TestSummarizeMyTrades:
    """Test the gateway-backed summary."""

    @pytest.mark.asyncio
    async def test_summarize_from_gateway(self, gateway):
        gateway.set_ticker("DOGE/USDT", 0.25, bid=0.25, ask=0.25)
        await gateway.create_order("DOGE/USDT", None, 40.0, "buy", "market")
        await gateway.create_order("DOGE/USDT", None, 10.0, "sell", "market")

        summary = await summarize_my_trades(gateway, "DOGE/USDT", "DOGE/USDT", hours=1)

        assert summary.minutes_up == 60
        assert summary.profit_and_loss["DOGE"] == pytest.approx(30.0)
        assert summary.profit_and_loss["USDT"] == pytest.approx(-7.5)
        assert summary.relative_pl == pytest.approx(0.0)
