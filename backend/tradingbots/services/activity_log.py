"""Activity log - asynchronous, best-effort persistence of bot events.

Bots publish lifecycle (create/update/stop) and transaction events. Publishing
never blocks and never raises: events go onto a bounded queue that a single
consumer task drains into the store. A failed write loses that one record and
is only logged.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import BotLog, BotTransactionLog, async_session_maker

logger = logging.getLogger(__name__)


class ActivityEventKind(str, Enum):
    """Activity event kinds."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    STOP = "STOP"
    TRANSACTION = "TRANSACTION"


@dataclass(frozen=True)
class BotCreated:
    uuid: str
    user_id: str
    bot_type: str
    platform_name: str
    additional_info: Dict[str, Any] = field(default_factory=dict)
    kind: ActivityEventKind = field(default=ActivityEventKind.CREATE, init=False)


@dataclass(frozen=True)
class BotUpdated:
    uuid: str
    additional_info: Dict[str, Any] = field(default_factory=dict)
    kind: ActivityEventKind = field(default=ActivityEventKind.UPDATE, init=False)


@dataclass(frozen=True)
class BotStopped:
    uuid: str
    kind: ActivityEventKind = field(default=ActivityEventKind.STOP, init=False)


@dataclass(frozen=True)
class TransactionLogged:
    uuid: str
    transaction_type: str
    amount: float
    pair: str
    price: Optional[float] = None
    additional_info: Dict[str, Any] = field(default_factory=dict)
    kind: ActivityEventKind = field(default=ActivityEventKind.TRANSACTION, init=False)


ActivityEvent = Union[BotCreated, BotUpdated, BotStopped, TransactionLogged]


class ActivityLogStore(ABC):
    """Persistence sink for activity events, keyed by the bot's uuid."""

    @abstractmethod
    async def insert_bot(self, event: BotCreated) -> None:
        ...

    @abstractmethod
    async def update_bot(self, event: BotUpdated) -> None:
        ...

    @abstractmethod
    async def stop_bot(self, event: BotStopped) -> None:
        ...

    @abstractmethod
    async def insert_transaction(self, event: TransactionLogged) -> None:
        ...


class SqlActivityLogStore(ActivityLogStore):
    """Store writing to the ``bot_log`` and ``bot_transaction_log`` tables.

    Every write opens its own session from the pooled engine, so concurrent
    writers never share a session.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker

    async def insert_bot(self, event: BotCreated) -> None:
        async with self._session_maker() as session:
            session.add(BotLog(
                uuid=event.uuid,
                user_id=str(event.user_id),
                bot_type=event.bot_type,
                platform_name=event.platform_name,
                additional_info=event.additional_info,
                active=True,
            ))
            await session.commit()

    async def update_bot(self, event: BotUpdated) -> None:
        async with self._session_maker() as session:
            await session.execute(
                update(BotLog)
                .where(BotLog.uuid == event.uuid)
                .values(additional_info=event.additional_info, updated_at=datetime.utcnow())
            )
            await session.commit()

    async def stop_bot(self, event: BotStopped) -> None:
        now = datetime.utcnow()
        async with self._session_maker() as session:
            await session.execute(
                update(BotLog)
                .where(BotLog.uuid == event.uuid)
                .values(active=False, stopped_at=now, updated_at=now)
            )
            await session.commit()

    async def insert_transaction(self, event: TransactionLogged) -> None:
        async with self._session_maker() as session:
            session.add(BotTransactionLog(
                uuid=event.uuid,
                transaction_type=event.transaction_type,
                amount=event.amount,
                price=event.price,
                pair=event.pair,
                additional_info=event.additional_info,
            ))
            await session.commit()


class ActivityLogService:
    """Single-consumer channel from running bots to the activity store."""

    def __init__(self, store: ActivityLogStore, queue_size: int = 1000):
        """Initialize the activity log.

        Args:
            store: Persistence sink
            queue_size: Maximum number of pending events (0 = unbounded)
        """
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._consumer: Optional[asyncio.Task] = None
        self.dropped_events = 0

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        """Start the consumer task. Must be called from a running event loop."""
        if self.is_running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="activity-log-consumer")
        logger.info("Activity log started")

    def publish(self, event: ActivityEvent) -> bool:
        """Queue an event for persistence without waiting.

        Returns:
            False if the event was dropped because the queue is full
        """
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped_events += 1
            logger.warning(
                f"Activity log queue full, dropping {event.kind.value} event for bot {event.uuid}"
            )
            return False

    async def stop(self, timeout: float = 5.0) -> None:
        """Persist what is already queued (up to ``timeout``), then stop."""
        if self._consumer is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Activity log shutdown timed out, {self._queue.qsize()} event(s) not persisted"
            )

        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        logger.info("Activity log was shut down")

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    async def dispatch(self, event: ActivityEvent) -> None:
        """Route one event to the store, logging (not raising) failures."""
        try:
            if event.kind == ActivityEventKind.CREATE:
                await self._store.insert_bot(event)
            elif event.kind == ActivityEventKind.UPDATE:
                await self._store.update_bot(event)
            elif event.kind == ActivityEventKind.STOP:
                await self._store.stop_bot(event)
            elif event.kind == ActivityEventKind.TRANSACTION:
                await self._store.insert_transaction(event)
            else:
                logger.error(f"Unknown activity event kind {event.kind}")
        except Exception as e:
            logger.error(f"Failed to persist {event.kind.value} event for bot {event.uuid}: {e}")
