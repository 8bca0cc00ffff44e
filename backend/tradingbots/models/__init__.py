# Database Models

from .database import Base, engine, async_session_maker, create_session_maker, init_db
from .bot_log import BotLog
from .transaction_log import BotTransactionLog
from .savings_plan import SavingsPlan

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "create_session_maker",
    "init_db",
    "BotLog",
    "BotTransactionLog",
    "SavingsPlan",
]
