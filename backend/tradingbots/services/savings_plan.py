"""Savings plans - recurring market buys on a fixed schedule.

Plans are persisted in the ``savings_plans`` table and cached in memory. A
single task wakes up just after every half hour and places a market buy for
each plan that is due in that slot:

    - ``minute`` plans (value 30) run every half hour
    - ``hour`` plans run on the full hour when the hour is a multiple of the value
    - ``day`` plans run at noon when the day of the month is a multiple of the value
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import SavingsPlan, async_session_maker
from .activity_log import ActivityLogService, TransactionLogged
from .bots.base import require_positive, require_text
from .config import BotConfigurationError
from .exchange import (
    SIMULATED_PLATFORM,
    SUPPORTED_PLATFORMS,
    ExchangeGateway,
    ExchangeGatewayError,
    ExchangeGatewayPool,
    OrderSide,
    OrderType,
)

logger = logging.getLogger(__name__)

SLOT_MINUTES = 30
DAILY_HOUR = 12


class FrequencyUnit(str, Enum):
    """How often a plan buys."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


# Accepted frequency values per unit, inclusive
FREQUENCY_RANGES: Dict[FrequencyUnit, Tuple[int, int]] = {
    FrequencyUnit.MINUTE: (SLOT_MINUTES, SLOT_MINUTES),
    FrequencyUnit.HOUR: (1, 24),
    FrequencyUnit.DAY: (1, 31),
}


@dataclass
class PlatformCredentials:
    """A user's API access to one platform."""
    api_key: str
    secret: str
    platform_user_id: Optional[str] = None


# (user_id, platform_name) -> the user's credentials, None when there are none
CredentialsProvider = Callable[[str, str], Awaitable[Optional[PlatformCredentials]]]


@dataclass
class SavingsPlanConfig:
    """In-memory copy of a ``savings_plans`` row."""
    id: int
    user_id: str
    trading_pair: str
    amount: float
    platform_name: str
    frequency_unit: FrequencyUnit
    frequency_value: int

    @classmethod
    def from_row(cls, row: SavingsPlan) -> "SavingsPlanConfig":
        return cls(
            id=row.id,
            user_id=row.user_id,
            trading_pair=row.trading_pair,
            amount=row.amount,
            platform_name=row.platform_name,
            frequency_unit=FrequencyUnit(row.frequency_unit),
            frequency_value=row.frequency_value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tradingPair": self.trading_pair,
            "amount": self.amount,
            "platformName": self.platform_name,
            "frequencyUnit": self.frequency_unit.value,
            "frequencyValue": self.frequency_value,
        }


def validate_frequency(unit: Any, value: Any) -> Tuple[FrequencyUnit, int]:
    """Check a plan's schedule.

    Raises:
        BotConfigurationError: Unknown unit, or a value outside the unit's range
    """
    try:
        frequency_unit = FrequencyUnit(unit)
    except ValueError:
        supported = ",".join(u.value for u in FrequencyUnit)
        raise BotConfigurationError(
            f"Frequency unit {unit!r} is not supported, the supported values are: {supported}"
        ) from None

    if isinstance(value, bool) or not isinstance(value, int):
        raise BotConfigurationError(f"Frequency value must be a whole number, got {value!r}")

    low, high = FREQUENCY_RANGES[frequency_unit]
    if not low <= value <= high:
        if low == high:
            raise BotConfigurationError(f"Frequency unit '{frequency_unit.value}' only allows the value {low}")
        raise BotConfigurationError(
            f"Frequency value for unit '{frequency_unit.value}' must be between {low} and {high}, got {value}"
        )
    return frequency_unit, value


def is_due(plan: SavingsPlanConfig, now: datetime) -> bool:
    """Whether the plan buys in the half-hour slot ``now`` falls in."""
    if plan.frequency_unit == FrequencyUnit.DAY:
        return now.hour == DAILY_HOUR and now.minute < SLOT_MINUTES and now.day % plan.frequency_value == 0
    if plan.frequency_unit == FrequencyUnit.HOUR:
        return now.minute < SLOT_MINUTES and now.hour % plan.frequency_value == 0
    return (now.minute // SLOT_MINUTES * SLOT_MINUTES) % plan.frequency_value == 0


def seconds_until_next_slot(now: datetime) -> float:
    """Seconds until one second past the next full or half hour."""
    slot_start = now.replace(minute=now.minute // SLOT_MINUTES * SLOT_MINUTES, second=0, microsecond=0)
    next_slot = slot_start + timedelta(minutes=SLOT_MINUTES, seconds=1)
    return (next_slot - now).total_seconds()


class SavingsPlanService:
    """Owns the savings plans of every user and executes them on schedule."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        gateway_pool: Optional[ExchangeGatewayPool] = None,
        credentials_provider: Optional[CredentialsProvider] = None,
        activity_log: Optional[ActivityLogService] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the service.

        Args:
            session_maker: Session factory for the ``savings_plans`` table
            gateway_pool: Shared gateways the buys are placed through
            credentials_provider: Looks up a user's platform credentials
            activity_log: Receives a transaction event per executed buy
            clock: Local wall clock the schedule is evaluated against
        """
        self._session_maker = session_maker or async_session_maker
        self._gateway_pool = gateway_pool or ExchangeGatewayPool()
        self._credentials_provider = credentials_provider
        self._activity_log = activity_log
        self._clock = clock

        self._plans: Dict[int, SavingsPlanConfig] = {}
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def load(self) -> int:
        """Replace the cache with every persisted plan.

        Rows with a unit this version does not know are skipped.

        Returns:
            Number of plans loaded
        """
        async with self._session_maker() as session:
            rows = (await session.execute(select(SavingsPlan))).scalars().all()

        plans = {}
        for row in rows:
            try:
                plans[row.id] = SavingsPlanConfig.from_row(row)
            except ValueError:
                logger.error(
                    f"Savings plan {row.id} of user {row.user_id} has invalid frequency unit "
                    f"'{row.frequency_unit}', skipping it"
                )
        self._plans = plans
        logger.info(f"Loaded {len(plans)} savings plan(s)")
        return len(plans)

    def get_existing_plans(self, user_id: str) -> List[Dict[str, Any]]:
        return [plan.to_dict() for plan in self._plans.values() if plan.user_id == str(user_id)]

    async def create_plan(
        self,
        user_id: str,
        platform_name: str,
        trading_pair: str,
        amount: float,
        frequency_unit: str = FrequencyUnit.HOUR.value,
        frequency_value: int = 24,
    ) -> int:
        """Persist a new plan after checking the user can trade on the platform.

        Returns:
            The new plan's id

        Raises:
            BotConfigurationError: Invalid plan or missing credentials
            ExchangeGatewayError: The platform could not be reached
        """
        pair = require_text({"trading_pair": trading_pair}, "trading_pair")
        amount = require_positive({"amount": amount}, "amount")
        unit, value = validate_frequency(frequency_unit, frequency_value)

        await self._get_gateway(str(user_id), platform_name)

        async with self._session_maker() as session:
            row = SavingsPlan(
                user_id=str(user_id),
                trading_pair=pair,
                amount=amount,
                platform_name=platform_name,
                frequency_unit=unit.value,
                frequency_value=value,
            )
            session.add(row)
            await session.commit()
            plan = SavingsPlanConfig.from_row(row)

        self._plans[plan.id] = plan
        logger.info(
            f"Created savings plan {plan.id} for user {user_id}: {amount} {pair} on {platform_name} "
            f"every {value} {unit.value}(s)"
        )
        return plan.id

    async def update_plan(
        self,
        user_id: str,
        plan_id: int,
        amount: float,
        frequency_unit: str = FrequencyUnit.HOUR.value,
        frequency_value: int = 24,
    ) -> bool:
        """Change a plan's amount and schedule.

        Returns:
            False if the user has no plan with that id

        Raises:
            BotConfigurationError: Invalid amount or schedule
        """
        amount = require_positive({"amount": amount}, "amount")
        unit, value = validate_frequency(frequency_unit, frequency_value)

        plan = self._plans.get(int(plan_id))
        if plan is None or plan.user_id != str(user_id):
            return False

        async with self._session_maker() as session:
            await session.execute(
                update(SavingsPlan)
                .where(SavingsPlan.id == plan.id, SavingsPlan.user_id == plan.user_id)
                .values(amount=amount, frequency_unit=unit.value, frequency_value=value)
            )
            await session.commit()

        plan.amount = amount
        plan.frequency_unit = unit
        plan.frequency_value = value
        logger.info(f"Updated savings plan {plan.id} for user {user_id}")
        return True

    async def delete_plan(self, user_id: str, plan_id: int) -> bool:
        """Remove a plan.

        Returns:
            False if the user has no plan with that id
        """
        plan = self._plans.get(int(plan_id))
        if plan is None or plan.user_id != str(user_id):
            return False

        async with self._session_maker() as session:
            await session.execute(
                delete(SavingsPlan).where(SavingsPlan.id == plan.id, SavingsPlan.user_id == plan.user_id)
            )
            await session.commit()

        del self._plans[plan.id]
        logger.info(f"Deleted savings plan {plan.id} for user {user_id}")
        return True

    async def run_due_plans(self, now: Optional[datetime] = None) -> int:
        """Place the market buys of every plan due at ``now``.

        Returns:
            Number of buys placed
        """
        now = now or self._clock()
        due = [plan for plan in list(self._plans.values()) if is_due(plan, now)]
        if not due:
            return 0

        results = await asyncio.gather(*(self._execute(plan) for plan in due))
        placed = sum(1 for result in results if result)
        logger.info(f"Savings plans: placed {placed} of {len(due)} due buy(s)")
        return placed

    async def _execute(self, plan: SavingsPlanConfig) -> bool:
        try:
            gateway = await self._get_gateway(plan.user_id, plan.platform_name)
            order = await gateway.create_order(
                plan.trading_pair, None, plan.amount, OrderSide.BUY.value, OrderType.MARKET.value
            )
        except (BotConfigurationError, ExchangeGatewayError) as e:
            logger.error(
                f"Failed to make recurring order for user {plan.user_id}, coin {plan.trading_pair} "
                f"and platform {plan.platform_name}: {e}"
            )
            return False

        if self._activity_log is not None:
            self._activity_log.publish(TransactionLogged(
                uuid=f"savings-plan-{plan.id}",
                transaction_type=OrderSide.BUY.value,
                amount=order.filled or plan.amount,
                pair=plan.trading_pair,
                price=order.average or order.price,
                additional_info={"savingsPlanId": plan.id, "orderId": order.id},
            ))
        return True

    async def _get_gateway(self, user_id: str, platform_name: str) -> ExchangeGateway:
        if platform_name not in SUPPORTED_PLATFORMS:
            raise BotConfigurationError(
                f"Platform {platform_name} is not supported, the supported values are: "
                f"{','.join(SUPPORTED_PLATFORMS)}"
            )
        if platform_name == SIMULATED_PLATFORM:
            return await self._gateway_pool.get_gateway(user_id, platform_name)

        credentials = None
        if self._credentials_provider is not None:
            credentials = await self._credentials_provider(user_id, platform_name)
        if credentials is None:
            raise BotConfigurationError(f"User {user_id} has no credentials stored for platform {platform_name}")

        return await self._gateway_pool.get_gateway(
            user_id,
            platform_name,
            api_key=credentials.api_key,
            secret=credentials.secret,
            platform_user_id=credentials.platform_user_id,
        )

    def start(self) -> None:
        """Start the schedule task. Must be called from a running event loop."""
        if self.is_running:
            return
        self._stopping = False
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name="savings-plans")
        logger.info("Savings plans started")

    async def stop(self) -> None:
        """Stop the schedule task; a slot already executing finishes first."""
        if self._task is None:
            return
        self._stopping = True
        self._wake.set()
        await self._task
        self._task = None
        logger.info("Savings plans stopped")

    async def _run(self) -> None:
        while not self._stopping:
            await self._sleep(seconds_until_next_slot(self._clock()))
            if self._stopping:
                break

            logger.info("Savings plans woke up to perform recurring buys")
            try:
                await self.run_due_plans()
            except Exception as e:
                logger.exception(f"Savings plans: error while executing due plans: {e}")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wake.clear()
