"""Savings plan model - recurring market buys configured per user."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime

from .database import Base


class SavingsPlan(Base):
    """A recurring buy of ``amount`` of ``trading_pair`` on one platform.

    ``frequency_unit`` is one of ``minute``, ``hour`` or ``day``; together
    with ``frequency_value`` it selects the half-hour slots the buy runs in.
    """
    __tablename__ = "savings_plans"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    trading_pair = Column(String(50), nullable=False)
    amount = Column(Float, nullable=False)
    platform_name = Column(String(50), nullable=False)
    frequency_unit = Column(String(10), nullable=False, default="hour")
    frequency_value = Column(Integer, nullable=False, default=24)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return (
            f"<SavingsPlan(id={self.id}, user_id='{self.user_id}', pair='{self.trading_pair}', "
            f"every {self.frequency_value} {self.frequency_unit})>"
        )
