"""Unit tests for the grid bot.

Tests focus on:
- Level computation and the reference scenario
- Funds bounds for every strategy
- Debounce, mirror unblocking and catch-up sizing
- Grid regeneration and failure handling
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from tradingbots.services.activity_log import BotUpdated, TransactionLogged
from tradingbots.services.bots.grid import (
    GridBot,
    GridParameters,
    GridStrategy,
    compute_grid_level,
)
from tradingbots.services.config import BotConfigurationError
from tradingbots.services.exchange import ExchangeGatewayError, Ticker


def make_bot(gateway, activity_log=None, **overrides):
    parameters = {
        "coin_id": "doge",
        "maximum_investment": 100,
        "number_of_grids": 5,
        "percentage_per_grid": 0.4,
        "starting_price": 100,
        "strategy": "neutral",
    }
    parameters.update(overrides)
    return GridBot(
        "user@example.com", "42", "simulated", gateway,
        GridParameters.from_dict(parameters),
        activity_log=activity_log,
    )


async def tick_at(bot, gateway, price):
    gateway.set_ticker("doge", price)
    await bot.tick()


# ============================================================================
# Level computation
# ============================================================================


class TestGridLevel:
    """Test the price to level mapping."""

    @pytest.mark.parametrize("price,expected", [
        (100.0, 0),
        (100.39, 0),
        (100.4, 1),
        (100.9, 2),
        (100.8, 2),
        (99.6, -1),
        (99.1, -2),
        (97.0, -7),
    ])
    def test_compute_grid_level(self, price, expected):
        assert compute_grid_level(price, 100.0, 0.4) == expected

    def test_levels_are_symmetric_around_starting_price(self, gateway):
        bot = make_bot(gateway)

        assert [round(l.value, 6) for l in bot.sell_grid] == [100.4, 100.8, 101.2, 101.6, 102.0]
        assert [round(l.value, 6) for l in bot.buy_grid] == [99.6, 99.2, 98.8, 98.4, 98.0]
        assert not any(l.hit for l in bot.sell_grid + bot.buy_grid)


# ============================================================================
# Initial state and parameters
# ============================================================================


class TestParameters:
    """Test parameter validation and initial funds."""

    @pytest.mark.parametrize("strategy,expected", [
        ("neutral", 50.0),
        ("long", 0.0),
        ("short", 100.0),
    ])
    def test_initial_invested_funds(self, gateway, strategy, expected):
        bot = make_bot(gateway, strategy=strategy)
        assert bot.currently_invested_funds == expected

    def test_unknown_strategy_rejected(self):
        with pytest.raises(BotConfigurationError):
            GridParameters.from_dict({"coin_id": "doge", "maximum_investment": 100, "strategy": "sideways"})

    def test_missing_coin_rejected(self):
        with pytest.raises(BotConfigurationError):
            GridParameters.from_dict({"maximum_investment": 100})

    @pytest.mark.parametrize("number_of_grids", [0, -1, 2.5, True])
    def test_invalid_number_of_grids_rejected(self, number_of_grids):
        with pytest.raises(BotConfigurationError):
            GridParameters.from_dict({
                "coin_id": "doge", "maximum_investment": 100, "number_of_grids": number_of_grids,
            })

    def test_defaults(self):
        parameters = GridParameters.from_dict({"coin_id": "doge", "maximum_investment": 100})

        assert parameters.number_of_grids == 5
        assert parameters.percentage_per_grid == 0.4
        assert parameters.starting_price is None
        assert parameters.strategy == GridStrategy.NEUTRAL
        assert parameters.interval_seconds == 10

    def test_generate_id(self, gateway):
        bot = make_bot(gateway)

        assert GridBot.generate_id("binance", "a@b.c", "doge") == "GRID_binance_a@b.c_doge"
        assert bot.get_id() == "GRID_simulated_user@example.com_doge"
        assert bot.get_id() == make_bot(gateway).get_id()


# ============================================================================
# Trading
# ============================================================================


class TestGridTrading:
    """Test order placement on level crossings."""

    @pytest.mark.asyncio
    async def test_reference_scenario_sells_one_chunk(self, gateway, activity_log):
        bot = make_bot(gateway, activity_log)
        assert bot.currently_invested_funds == 50

        await tick_at(bot, gateway, 100.9)

        assert len(gateway.orders_placed) == 1
        order = gateway.orders_placed[0]
        assert order.side == "sell"
        assert order.type == "market"
        assert order.amount == pytest.approx(20)
        assert bot.currently_invested_funds == pytest.approx(30)
        assert bot.last_executed_grid == 2
        assert bot.sell_grid[1].hit is True
        assert bot.buy_grid[1].hit is False

    @pytest.mark.asyncio
    async def test_no_order_within_first_level(self, gateway):
        bot = make_bot(gateway)

        await tick_at(bot, gateway, 100.2)
        await tick_at(bot, gateway, 99.8)

        assert gateway.orders_placed == []
        assert bot.last_executed_grid == 0

    @pytest.mark.asyncio
    async def test_hit_level_is_debounced(self, gateway):
        bot = make_bot(gateway)

        await tick_at(bot, gateway, 100.9)
        await tick_at(bot, gateway, 100.0)
        assert bot.last_executed_grid == 0

        await tick_at(bot, gateway, 100.9)

        assert len(gateway.orders_placed) == 1
        assert bot.currently_invested_funds == pytest.approx(30)

    @pytest.mark.asyncio
    async def test_mirror_level_unblocks_hit_level(self, gateway):
        bot = make_bot(gateway)

        await tick_at(bot, gateway, 100.9)
        await tick_at(bot, gateway, 99.1)

        assert [o.side for o in gateway.orders_placed] == ["sell", "buy"]
        assert bot.currently_invested_funds == pytest.approx(50)
        assert bot.buy_grid[1].hit is True
        assert bot.sell_grid[1].hit is False

        # The sell level is open again
        await tick_at(bot, gateway, 100.9)
        assert [o.side for o in gateway.orders_placed] == ["sell", "buy", "sell"]

    @pytest.mark.asyncio
    async def test_catch_up_sells_skipped_levels(self, gateway):
        bot = make_bot(gateway, strategy="short")

        await tick_at(bot, gateway, 100.5)
        await tick_at(bot, gateway, 101.3)

        amounts = [o.amount for o in gateway.orders_placed]
        assert amounts == [pytest.approx(20), pytest.approx(40)]
        assert bot.currently_invested_funds == pytest.approx(40)
        assert bot.last_executed_grid == 3
        assert [l.hit for l in bot.sell_grid] == [True, True, True, False, False]

    @pytest.mark.asyncio
    async def test_entering_a_side_never_catches_up(self, gateway):
        bot = make_bot(gateway, strategy="short")

        await tick_at(bot, gateway, 101.3)

        assert gateway.orders_placed[0].amount == pytest.approx(20)
        assert [l.hit for l in bot.sell_grid] == [False, False, True, False, False]

    @pytest.mark.asyncio
    async def test_sell_rejected_without_invested_funds(self, gateway):
        bot = make_bot(gateway, strategy="long")

        await tick_at(bot, gateway, 100.9)

        assert gateway.orders_placed == []
        assert bot.currently_invested_funds == 0
        assert bot.last_executed_grid == 0

    @pytest.mark.asyncio
    async def test_buy_rejected_at_maximum_investment(self, gateway):
        bot = make_bot(gateway, strategy="short")

        await tick_at(bot, gateway, 99.1)

        assert gateway.orders_placed == []
        assert bot.currently_invested_funds == 100

    @pytest.mark.asyncio
    async def test_buy_reduced_to_remaining_headroom(self, gateway):
        bot = make_bot(gateway)

        await tick_at(bot, gateway, 99.5)
        assert bot.currently_invested_funds == pytest.approx(70)

        # Two chunks due, only one fits below the maximum
        await tick_at(bot, gateway, 98.7)

        assert gateway.orders_placed[-1].amount == pytest.approx(20)
        assert bot.currently_invested_funds == pytest.approx(90)
        assert bot.buy_grid[2].hit is True
        assert bot.buy_grid[1].hit is False

    @pytest.mark.asyncio
    async def test_invested_funds_stay_within_bounds(self, gateway):
        bot = make_bot(gateway)
        prices = [100.9, 102.5, 103.0, 99.0, 97.5, 96.0, 101.0, 104.0, 100.0, 95.0, 99.9, 102.1]

        for price in prices:
            await tick_at(bot, gateway, price)
            assert 0 <= bot.currently_invested_funds <= bot.maximum_investment

    @pytest.mark.asyncio
    async def test_transaction_and_update_events(self, gateway, activity_log):
        bot = make_bot(gateway, activity_log)

        await tick_at(bot, gateway, 100.9)

        transactions = activity_log.of_type(TransactionLogged)
        assert len(transactions) == 1
        assert transactions[0].uuid == bot.uuid
        assert transactions[0].transaction_type == "sell"
        assert transactions[0].pair == "doge"
        assert transactions[0].amount == pytest.approx(20)
        assert transactions[0].additional_info["level"] == 2
        assert transactions[0].additional_info["orderId"] == gateway.orders_placed[0].id

        updates = activity_log.of_type(BotUpdated)
        assert updates[-1].additional_info["currentlyInvestedFunds"] == pytest.approx(30)
        assert updates[-1].additional_info["lastExecutedGrid"] == 2


class TestGridRegeneration:
    """Test recentering once one side is exhausted."""

    @pytest.mark.asyncio
    async def test_exhausted_side_regenerates_around_current_price(self, gateway):
        bot = make_bot(gateway, number_of_grids=2, strategy="short")

        await tick_at(bot, gateway, 100.4)
        await tick_at(bot, gateway, 100.8)
        assert all(l.hit for l in bot.sell_grid)
        assert bot.currently_invested_funds == pytest.approx(0)

        await tick_at(bot, gateway, 101.2)

        assert bot.starting_price == 101.2
        assert bot.sell_grid[0].value == pytest.approx(101.2 * 1.004)
        assert not any(l.hit for l in bot.sell_grid + bot.buy_grid)
        # Nothing left to sell
        assert len(gateway.orders_placed) == 2

    @pytest.mark.asyncio
    async def test_out_of_range_level_clamps_to_furthest_open_level(self, gateway):
        bot = make_bot(gateway, strategy="short")

        await tick_at(bot, gateway, 103.0)

        assert bot.last_executed_grid == 5
        assert bot.sell_grid[4].hit is True
        assert gateway.orders_placed[0].amount == pytest.approx(20)


class TestGridFailures:
    """Test gateway failures leave the state untouched."""

    @pytest.mark.asyncio
    async def test_order_failure_keeps_state(self):
        gateway = AsyncMock()
        gateway.fetch_ticker.return_value = Ticker(symbol="doge", bid=100.9, ask=100.9, last=100.9)
        gateway.create_order.side_effect = ExchangeGatewayError("rejected")
        bot = make_bot(gateway)

        await bot.tick()

        gateway.create_order.assert_awaited_once_with("doge", None, 20.0, "sell", "market")
        assert bot.currently_invested_funds == 50
        assert bot.last_executed_grid == 0
        assert not any(l.hit for l in bot.sell_grid)

    @pytest.mark.asyncio
    async def test_ticker_failure_skips_tick(self):
        gateway = AsyncMock()
        gateway.fetch_ticker.side_effect = ExchangeGatewayError("timeout")
        bot = make_bot(gateway)

        await bot.tick()

        gateway.create_order.assert_not_awaited()
        assert bot.last_executed_grid == 0

    @pytest.mark.asyncio
    async def test_starting_price_taken_from_first_ticker(self, gateway):
        bot = make_bot(gateway, starting_price=None)
        assert bot.sell_grid is None

        await tick_at(bot, gateway, 0.25)

        assert bot.starting_price == 0.25
        assert len(bot.sell_grid) == 5
        assert gateway.orders_placed == []


class TestGridLifecycle:
    """Test the shared run loop through a grid bot."""

    @pytest.mark.asyncio
    async def test_stop_interrupts_sleep(self, gateway):
        gateway.set_ticker("doge", 100.0)
        bot = make_bot(gateway, interval_seconds=3600)

        task = asyncio.create_task(bot.run())
        await asyncio.sleep(0.01)
        bot.stop()

        await asyncio.wait_for(task, timeout=1.0)
        assert bot.is_running is False

    @pytest.mark.asyncio
    async def test_no_orders_after_hard_stop(self, gateway):
        bot = make_bot(gateway)
        bot.stop()

        await tick_at(bot, gateway, 100.9)

        assert gateway.orders_placed == []

    @pytest.mark.asyncio
    async def test_unexpected_tick_error_does_not_end_loop(self, gateway):
        bot = make_bot(gateway, interval_seconds=0.01)
        calls = []

        async def failing_tick():
            calls.append(1)
            if len(calls) >= 3:
                bot.stop()
            raise RuntimeError("boom")

        bot.tick = failing_tick
        await asyncio.wait_for(bot.run(), timeout=1.0)

        assert len(calls) == 3
