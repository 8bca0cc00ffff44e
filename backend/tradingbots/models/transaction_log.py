"""Transaction log model - append-only record of bot orders."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON

from .database import Base


class BotTransactionLog(Base):
    """Order placed by a bot.

    Rows are never updated; ``uuid`` links them to the owning ``bot_log`` row.
    """
    __tablename__ = "bot_transaction_log"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(64), nullable=False, index=True)
    transaction_type = Column(String(20), nullable=False)  # "buy" / "sell"
    amount = Column(Float, nullable=False)
    price = Column(Float, nullable=True)  # fill or limit price, null when unknown
    pair = Column(String(50), nullable=False)
    additional_info = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return (
            f"<BotTransactionLog(uuid='{self.uuid}', type='{self.transaction_type}', "
            f"amount={self.amount}, pair='{self.pair}')>"
        )
