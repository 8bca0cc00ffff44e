"""Exchange gateways used by the bots, backed by ccxt or a local simulation."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable, Tuple
from dataclasses import dataclass, field
from enum import Enum

import ccxt.async_support as ccxt

from .config import BotConfigurationError

logger = logging.getLogger(__name__)


class ExchangeGatewayError(Exception):
    """Raised when a gateway call fails (network, rejected order, unknown coin)."""


class OrderSide(str, Enum):
    """Order side enumeration."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type enumeration."""
    MARKET = "market"
    LIMIT = "limit"


@dataclass
class Ticker:
    """Market ticker data."""
    symbol: str
    bid: float
    ask: float
    last: float
    volume: float = 0.0
    timestamp: float = 0.0  # epoch milliseconds


@dataclass
class RecentTrade:
    """Public trade from the market's recent trade feed."""
    amount: float
    price: float
    timestamp: float  # epoch milliseconds


@dataclass
class MyTrade:
    """Fill belonging to the gateway's own account."""
    side: str
    amount: float
    price: float
    cost: float
    fee: float
    fee_currency: str
    timestamp: float


@dataclass
class ExchangeOrder:
    """Exchange order result."""
    id: str
    symbol: str
    side: str
    type: str
    amount: float
    price: Optional[float]
    status: str
    timestamp: Optional[float]  # epoch milliseconds, None when the exchange does not report it
    filled: float = 0.0
    remaining: float = 0.0
    average: Optional[float] = None
    cost: float = 0.0
    fee: float = 0.0
    fee_currency: str = ""
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_fully_executed(self) -> bool:
        """Whether the order is completely filled.

        ccxt reports ``closed``; NDAX additionally exposes its native
        ``OrderState`` in the raw payload.
        """
        return self.status == "closed" or self.info.get("OrderState") == "FullyExecuted"


@dataclass
class Balance:
    """Account balance for a currency."""
    currency: str
    free: float
    used: float
    total: float


# Coin ids accepted per platform, with the market they trade on and the
# smallest order quantity the platform accepts
SUPPORTED_COINS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "binance": {
        "doge": {"market_id": "DOGE/USDT", "meta_id": "DOGE", "minimum_quantity": 10},
        "xrp": {"market_id": "XRP/USDT", "meta_id": "XRP", "minimum_quantity": 10},
        "eth": {"market_id": "ETH/USDT", "meta_id": "ETH", "minimum_quantity": 0.0001},
        "ada": {"market_id": "ADA/USDT", "meta_id": "ADA", "minimum_quantity": 0.1},
        "hard": {"market_id": "HARD/USDT", "meta_id": "HARD", "minimum_quantity": 10},
    },
    "ndax": {
        "doge": {"market_id": "DOGE/CAD", "meta_id": "DOGE", "minimum_quantity": 10},
        "xrp": {"market_id": "XRP/CAD", "meta_id": "XRP", "minimum_quantity": 10},
        "eth": {"market_id": "ETH/CAD", "meta_id": "ETH", "minimum_quantity": 0.0001},
        "ada": {"market_id": "ADA/CAD", "meta_id": "ADA", "minimum_quantity": 0.1},
        "btc": {"market_id": "BTC/CAD", "meta_id": "BTC", "minimum_quantity": 0.0001},
    },
}

SIMULATED_PLATFORM = "simulated"
SUPPORTED_PLATFORMS = tuple(SUPPORTED_COINS.keys()) + (SIMULATED_PLATFORM,)

# Platforms authenticating with the account id on the platform next to the key pair
PLATFORMS_REQUIRING_UID = ("ndax",)

# Trades fetched per call, enough to cover several minutes of a liquid market
RECENT_TRADES_LIMIT = 1000


class ExchangeGateway(ABC):
    """Per-(user, platform) trading capability the bots are built on.

    Every call either returns its result or raises ExchangeGatewayError.
    Pairs are given either as a platform coin id (``"doge"``) or directly as
    a market symbol (``"DOGE/USDT"``).
    """

    platform_name: str = ""

    async def connect(self) -> bool:
        return True

    async def disconnect(self) -> None:
        return None

    @abstractmethod
    async def fetch_ticker(self, pair: str) -> Ticker:
        ...

    @abstractmethod
    async def get_recent_trades(self, pair: str) -> List[RecentTrade]:
        ...

    @abstractmethod
    async def fetch_my_trades(
        self, pair: str, since_hours: float = 2, limit: Optional[int] = None
    ) -> List[MyTrade]:
        ...

    @abstractmethod
    async def create_order(
        self,
        pair: str,
        price: Optional[float],
        amount: float,
        side: str = OrderSide.SELL.value,
        order_type: str = OrderType.LIMIT.value,
    ) -> ExchangeOrder:
        ...

    @abstractmethod
    async def edit_order(
        self,
        pair: str,
        order_id: str,
        price: Optional[float],
        amount: float,
        side: str = OrderSide.SELL.value,
        order_type: str = OrderType.LIMIT.value,
    ) -> ExchangeOrder:
        ...

    @abstractmethod
    async def fetch_order(self, order_id: str, pair: str) -> ExchangeOrder:
        ...

    @abstractmethod
    async def cancel_order(self, order_id: str, pair: str) -> None:
        ...

    @abstractmethod
    async def cancel_all_orders(self, pair: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def get_minimum_quantity(self, pair: str) -> float:
        ...

    @abstractmethod
    async def get_balance(self) -> Dict[str, Balance]:
        ...


class CcxtExchangeGateway(ExchangeGateway):
    """Gateway talking to a real exchange through ccxt."""

    def __init__(
        self,
        platform_name: str,
        api_key: str = "",
        secret: str = "",
        uid: Optional[str] = None,
        sandbox: bool = False,
        retry_count: int = 1,
        retry_delay: float = 1.0,
    ):
        """Initialize the gateway.

        Args:
            platform_name: ccxt exchange id (e.g. 'binance', 'ndax')
            api_key: User API key
            secret: User API secret
            uid: User id on the platform, required by some exchanges
            sandbox: Use the exchange's sandbox environment
            retry_count: Attempts per call for rate-limit/network errors
            retry_delay: Base delay between attempts in seconds
        """
        self.platform_name = platform_name
        self.exchange: Optional[ccxt.Exchange] = None
        self._api_key = api_key
        self._secret = secret
        self._uid = uid
        self._sandbox = sandbox
        self._retry_count = max(1, retry_count)
        self._retry_delay = retry_delay
        self._connected = False

    async def connect(self) -> bool:
        """Connect to the exchange.

        Returns:
            True if connection successful, False otherwise.
        """
        try:
            exchange_class = getattr(ccxt, self.platform_name, None)
            if not exchange_class:
                logger.error(f"Exchange {self.platform_name} not supported by ccxt")
                return False

            params = {
                "apiKey": self._api_key,
                "secret": self._secret,
                "enableRateLimit": True,
                "options": {
                    "defaultType": "spot",
                },
            }
            if self._uid:
                params["uid"] = self._uid

            self.exchange = exchange_class(params)
            if self._sandbox:
                self.exchange.set_sandbox_mode(True)

            # Test connection by loading markets
            await self._execute_with_retry(self.exchange.load_markets)
            self._connected = True
            logger.info(f"Connected to {self.platform_name} exchange")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to {self.platform_name}: {e}")
            self._connected = False
            return False

    async def disconnect(self) -> None:
        """Disconnect from the exchange."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None
            self._connected = False
            logger.info(f"Disconnected from {self.platform_name}")

    def is_connected(self) -> bool:
        """Check if connected to exchange."""
        return self._connected and self.exchange is not None

    async def _execute_with_retry(self, func, *args, **kwargs):
        """Execute an exchange call, translating ccxt errors.

        Rate-limit and network errors are retried up to ``retry_count``
        attempts; everything else fails on the first attempt.

        Raises:
            ExchangeGatewayError: If the call ultimately fails
        """
        last_exception = None

        for attempt in range(self._retry_count):
            try:
                return await func(*args, **kwargs)
            except ccxt.RateLimitExceeded as e:
                logger.warning(f"Rate limit exceeded on {self.platform_name} (attempt {attempt + 1})")
                last_exception = e
            except ccxt.NetworkError as e:
                logger.warning(f"Network error on {self.platform_name} (attempt {attempt + 1}): {e}")
                last_exception = e
            except ccxt.BaseError as e:
                raise ExchangeGatewayError(f"{self.platform_name}: {e}") from e

            if attempt + 1 < self._retry_count:
                await asyncio.sleep(self._retry_delay * (attempt + 1))

        raise ExchangeGatewayError(f"{self.platform_name}: {last_exception}") from last_exception

    def _require_connection(self) -> None:
        if not self.is_connected():
            raise ExchangeGatewayError(f"Not connected to {self.platform_name}")

    def _coin(self, pair: str) -> Optional[Dict[str, Any]]:
        return SUPPORTED_COINS.get(self.platform_name, {}).get(pair)

    def resolve_market(self, pair: str) -> str:
        """Map a coin id or market symbol to the platform's market symbol."""
        coin = self._coin(pair)
        if coin:
            return coin["market_id"]
        if "/" in pair:
            return pair

        supported = ",".join(SUPPORTED_COINS.get(self.platform_name, {}).keys())
        raise ExchangeGatewayError(
            f"Coin {pair} is not supported on {self.platform_name}, the supported values are: {supported}"
        )

    async def fetch_ticker(self, pair: str) -> Ticker:
        self._require_connection()
        ticker = await self._execute_with_retry(self.exchange.fetch_ticker, self.resolve_market(pair))
        return Ticker(
            symbol=ticker.get("symbol", pair),
            bid=ticker.get("bid", 0) or 0,
            ask=ticker.get("ask", 0) or 0,
            last=ticker.get("last", 0) or 0,
            volume=ticker.get("baseVolume", 0) or 0,
            timestamp=ticker.get("timestamp") or time.time() * 1000,
        )

    async def get_recent_trades(
        self, pair: str, since_minutes: Optional[float] = None, limit: int = RECENT_TRADES_LIMIT
    ) -> List[RecentTrade]:
        """Most recent public trades, oldest first.

        Without ``since_minutes`` the exchange returns its latest ``limit``
        trades. Passing a window makes ccxt page forward from its start, so
        on liquid markets the newest trades may be cut off by ``limit``.
        """
        self._require_connection()
        since = None
        if since_minutes is not None:
            since = int((time.time() - since_minutes * 60) * 1000)
        trades = await self._execute_with_retry(
            self.exchange.fetch_trades, self.resolve_market(pair), since, limit
        )
        return [
            RecentTrade(
                amount=t.get("amount", 0) or 0,
                price=t.get("price", 0) or 0,
                timestamp=t.get("timestamp", 0) or 0,
            )
            for t in trades
        ]

    async def fetch_my_trades(
        self, pair: str, since_hours: float = 2, limit: Optional[int] = None
    ) -> List[MyTrade]:
        self._require_connection()
        since = int((time.time() - since_hours * 3600) * 1000)
        trades = await self._execute_with_retry(
            self.exchange.fetch_my_trades, self.resolve_market(pair), since, limit
        )
        result = []
        for t in trades:
            fee = t.get("fee") or {}
            result.append(MyTrade(
                side=t.get("side", ""),
                amount=t.get("amount", 0) or 0,
                price=t.get("price", 0) or 0,
                cost=t.get("cost", 0) or 0,
                fee=fee.get("cost", 0) or 0,
                fee_currency=fee.get("currency", "") or "",
                timestamp=t.get("timestamp", 0) or 0,
            ))
        return result

    async def create_order(
        self,
        pair: str,
        price: Optional[float],
        amount: float,
        side: str = OrderSide.SELL.value,
        order_type: str = OrderType.LIMIT.value,
    ) -> ExchangeOrder:
        self._require_connection()
        order = await self._execute_with_retry(
            self.exchange.create_order,
            self.resolve_market(pair),
            order_type,
            side,
            amount,
            price,
        )
        logger.info(f"Created {order_type} {side} order {order.get('id')} for {amount} {pair} @ {price}")
        return self._parse_order(order)

    async def edit_order(
        self,
        pair: str,
        order_id: str,
        price: Optional[float],
        amount: float,
        side: str = OrderSide.SELL.value,
        order_type: str = OrderType.LIMIT.value,
    ) -> ExchangeOrder:
        self._require_connection()
        order = await self._execute_with_retry(
            self.exchange.edit_order,
            order_id,
            self.resolve_market(pair),
            order_type,
            side,
            amount,
            price,
        )
        return self._parse_order(order)

    async def fetch_order(self, order_id: str, pair: str) -> ExchangeOrder:
        self._require_connection()
        order = await self._execute_with_retry(
            self.exchange.fetch_order, order_id, self.resolve_market(pair)
        )
        return self._parse_order(order)

    async def cancel_order(self, order_id: str, pair: str) -> None:
        self._require_connection()
        await self._execute_with_retry(self.exchange.cancel_order, order_id, self.resolve_market(pair))
        logger.info(f"Cancelled order {order_id} for {pair} on {self.platform_name}")

    async def cancel_all_orders(self, pair: Optional[str] = None) -> None:
        self._require_connection()
        symbol = self.resolve_market(pair) if pair else None
        await self._execute_with_retry(self.exchange.cancel_all_orders, symbol)
        logger.info(f"Cancelled all orders on {self.platform_name}" + (f" for {symbol}" if symbol else ""))

    async def get_minimum_quantity(self, pair: str) -> float:
        self._require_connection()
        market = (self.exchange.markets or {}).get(self.resolve_market(pair)) or {}
        minimum = ((market.get("limits") or {}).get("amount") or {}).get("min")
        if minimum:
            return float(minimum)

        coin = self._coin(pair)
        return float(coin["minimum_quantity"]) if coin else 0.0

    async def get_balance(self) -> Dict[str, Balance]:
        """Get all non-zero balances."""
        self._require_connection()
        balance = await self._execute_with_retry(self.exchange.fetch_balance)
        result = {}
        for currency, total in (balance.get("total") or {}).items():
            if total and total > 0:
                result[currency] = Balance(
                    currency=currency,
                    free=balance.get(currency, {}).get("free", 0) or 0,
                    used=balance.get(currency, {}).get("used", 0) or 0,
                    total=total,
                )
        return result

    def _parse_order(self, order: Dict[str, Any]) -> ExchangeOrder:
        """Parse ccxt order response to ExchangeOrder."""
        fee = order.get("fee", {}) or {}
        return ExchangeOrder(
            id=str(order.get("id", "")),
            symbol=order.get("symbol", ""),
            side=order.get("side", ""),
            type=order.get("type", ""),
            amount=order.get("amount", 0) or 0,
            price=order.get("price"),
            status=order.get("status") or "unknown",
            timestamp=order.get("timestamp"),
            filled=order.get("filled", 0) or 0,
            remaining=order.get("remaining", 0) or 0,
            average=order.get("average"),
            cost=order.get("cost", 0) or 0,
            fee=fee.get("cost", 0) or 0,
            fee_currency=fee.get("currency", "") or "",
            info=order.get("info") or {},
        )


class SimulatedExchangeGateway(ExchangeGateway):
    """In-memory gateway for dry runs and tests.

    Tickers and recent trades are scripted through ``set_ticker`` and
    ``set_recent_trades``. Market orders fill immediately at the touch,
    limit orders stay open until ``fill_order`` is called.
    """

    platform_name = SIMULATED_PLATFORM

    def __init__(
        self,
        initial_balances: Optional[Dict[str, float]] = None,
        minimum_quantity: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize simulated exchange.

        Args:
            initial_balances: Starting holdings; None disables balance checks
            minimum_quantity: Minimum order quantity reported for every pair
            clock: Returns the current time in seconds
        """
        self._tickers: Dict[str, Ticker] = {}
        self._recent_trades: Dict[str, List[RecentTrade]] = {}
        self._my_trades: Dict[str, List[MyTrade]] = {}
        self._orders: Dict[str, ExchangeOrder] = {}
        self._balances = dict(initial_balances) if initial_balances is not None else None
        self._minimum_quantity = minimum_quantity
        self._clock = clock
        self._order_counter = 0
        self._connected = False
        self.orders_placed: List[ExchangeOrder] = []

    async def connect(self) -> bool:
        """Simulated connection always succeeds."""
        self._connected = True
        logger.info("Connected to simulated exchange")
        return True

    async def disconnect(self) -> None:
        """Simulated disconnect."""
        self._connected = False
        logger.info("Disconnected from simulated exchange")

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def set_ticker(self, pair: str, last: float, bid: Optional[float] = None, ask: Optional[float] = None) -> None:
        """Set the ticker returned for a pair (bid/ask default to last)."""
        self._tickers[pair] = Ticker(
            symbol=pair,
            bid=last if bid is None else bid,
            ask=last if ask is None else ask,
            last=last,
            timestamp=self._now_ms(),
        )

    def set_recent_trades(self, pair: str, trades: List[RecentTrade]) -> None:
        self._recent_trades[pair] = list(trades)

    def fill_order(self, order_id: str) -> ExchangeOrder:
        """Mark an open order as fully executed."""
        order = self._orders.get(order_id)
        if order is None:
            raise ExchangeGatewayError(f"Order {order_id} not found")
        self._settle(order, order.price or self._touch(order.symbol, order.side))
        return order

    async def fetch_ticker(self, pair: str) -> Ticker:
        ticker = self._tickers.get(pair)
        if ticker is None:
            raise ExchangeGatewayError(f"No simulated ticker for {pair}")
        return ticker

    async def get_recent_trades(self, pair: str) -> List[RecentTrade]:
        return list(self._recent_trades.get(pair, []))

    async def fetch_my_trades(
        self, pair: str, since_hours: float = 2, limit: Optional[int] = None
    ) -> List[MyTrade]:
        since = self._now_ms() - since_hours * 3600 * 1000
        trades = [t for t in self._my_trades.get(pair, []) if t.timestamp >= since]
        return trades[-limit:] if limit else trades

    async def create_order(
        self,
        pair: str,
        price: Optional[float],
        amount: float,
        side: str = OrderSide.SELL.value,
        order_type: str = OrderType.LIMIT.value,
    ) -> ExchangeOrder:
        if amount <= 0:
            raise ExchangeGatewayError(f"Invalid order amount {amount}")
        if order_type == OrderType.LIMIT.value and (price is None or price <= 0):
            raise ExchangeGatewayError(f"Invalid limit price {price}")

        self._order_counter += 1
        order = ExchangeOrder(
            id=f"sim_{self._order_counter}",
            symbol=pair,
            side=side,
            type=order_type,
            amount=amount,
            price=price,
            status="open",
            timestamp=self._now_ms(),
            filled=0.0,
            remaining=amount,
        )

        if order_type == OrderType.MARKET.value:
            self._settle(order, self._touch(pair, side))

        self._orders[order.id] = order
        self.orders_placed.append(order)
        return order

    async def edit_order(
        self,
        pair: str,
        order_id: str,
        price: Optional[float],
        amount: float,
        side: str = OrderSide.SELL.value,
        order_type: str = OrderType.LIMIT.value,
    ) -> ExchangeOrder:
        order = self._orders.get(order_id)
        if order is None or order.status != "open":
            raise ExchangeGatewayError(f"Order {order_id} cannot be edited")

        order.price = price
        order.amount = order.filled + amount
        order.remaining = amount
        order.timestamp = self._now_ms()
        return order

    async def fetch_order(self, order_id: str, pair: str) -> ExchangeOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise ExchangeGatewayError(f"Order {order_id} not found")
        return order

    async def cancel_order(self, order_id: str, pair: str) -> None:
        order = self._orders.get(order_id)
        if order is None:
            raise ExchangeGatewayError(f"Order {order_id} not found")
        if order.status == "open":
            order.status = "canceled"

    async def cancel_all_orders(self, pair: Optional[str] = None) -> None:
        for order in self._orders.values():
            if order.status == "open" and (pair is None or order.symbol == pair):
                order.status = "canceled"

    async def get_minimum_quantity(self, pair: str) -> float:
        return self._minimum_quantity

    async def get_balance(self) -> Dict[str, Balance]:
        return {
            currency: Balance(currency=currency, free=amount, used=0.0, total=amount)
            for currency, amount in (self._balances or {}).items()
        }

    def _touch(self, pair: str, side: str) -> float:
        ticker = self._tickers.get(pair)
        if ticker is None:
            raise ExchangeGatewayError(f"No simulated ticker for {pair}")
        return ticker.ask if side == OrderSide.BUY.value else ticker.bid

    def _settle(self, order: ExchangeOrder, price: float) -> None:
        """Fill the order completely at ``price``, updating balances."""
        amount = order.remaining
        cost = amount * price

        if self._balances is not None and "/" in order.symbol:
            base, quote = order.symbol.split("/")
            if order.side == OrderSide.BUY.value:
                if self._balances.get(quote, 0) < cost:
                    raise ExchangeGatewayError("Insufficient simulated balance")
                self._balances[quote] = self._balances.get(quote, 0) - cost
                self._balances[base] = self._balances.get(base, 0) + amount
            else:
                if self._balances.get(base, 0) < amount:
                    raise ExchangeGatewayError("Insufficient simulated balance")
                self._balances[base] = self._balances.get(base, 0) - amount
                self._balances[quote] = self._balances.get(quote, 0) + cost

        order.status = "closed"
        order.filled = order.amount
        order.remaining = 0.0
        order.average = price
        order.cost = order.filled * price

        self._my_trades.setdefault(order.symbol, []).append(MyTrade(
            side=order.side,
            amount=amount,
            price=price,
            cost=cost,
            fee=0.0,
            fee_currency="",
            timestamp=self._now_ms(),
        ))


class ExchangeGatewayPool:
    """Connected gateways cached per (user, platform).

    A user's bots on the same platform share one gateway instead of
    reconnecting per bot or per tick.
    """

    def __init__(self, sandbox: bool = False):
        self._sandbox = sandbox
        self._gateways: Dict[Tuple[str, str], ExchangeGateway] = {}
        self._lock = asyncio.Lock()

    async def get_gateway(
        self,
        user_id: str,
        platform_name: str,
        api_key: Optional[str] = None,
        secret: Optional[str] = None,
        platform_user_id: Optional[str] = None,
    ) -> ExchangeGateway:
        """Return the user's gateway for a platform, connecting it on first use.

        ``platform_user_id`` is the account id on the exchange itself, not
        ours; NDAX rejects authenticated calls without it.

        Raises:
            BotConfigurationError: Unsupported platform or missing credentials
            ExchangeGatewayError: The exchange could not be reached
        """
        if platform_name not in SUPPORTED_PLATFORMS:
            raise BotConfigurationError(
                f"Platform {platform_name} is not supported, the supported values are: "
                f"{','.join(SUPPORTED_PLATFORMS)}"
            )

        key = (str(user_id), platform_name)

        async with self._lock:
            gateway = self._gateways.get(key)
            if gateway is not None:
                return gateway

            if platform_name == SIMULATED_PLATFORM:
                gateway = SimulatedExchangeGateway()
            else:
                if not api_key or not secret:
                    raise BotConfigurationError(
                        f"API key and secret are required for user {user_id} on {platform_name}"
                    )
                if platform_name in PLATFORMS_REQUIRING_UID and not platform_user_id:
                    raise BotConfigurationError(
                        f"A platform user id is required for user {user_id} on {platform_name}"
                    )
                gateway = CcxtExchangeGateway(
                    platform_name,
                    api_key=api_key,
                    secret=secret,
                    uid=str(platform_user_id) if platform_user_id else None,
                    sandbox=self._sandbox,
                )

            if not await gateway.connect():
                raise ExchangeGatewayError(f"Could not connect user {user_id} to {platform_name}")

            self._gateways[key] = gateway
            return gateway

    async def close_all(self) -> None:
        """Disconnect and forget every cached gateway."""
        async with self._lock:
            for (user_id, platform_name), gateway in list(self._gateways.items()):
                try:
                    await gateway.disconnect()
                except Exception as e:
                    logger.error(f"Failed to disconnect {platform_name} gateway for user {user_id}: {e}")
            self._gateways.clear()
