"""Bot log model - one row per bot instance lifecycle."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON

from .database import Base


class BotLog(Base):
    """Lifecycle record of a single bot instance.

    Keyed by the instance's correlation uuid, not by its deterministic bot
    identity: restarting a bot with the same identity creates a new row.
    """
    __tablename__ = "bot_log"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    bot_type = Column(String(50), nullable=False)
    platform_name = Column(String(50), nullable=True)
    additional_info = Column(JSON, default=dict)
    active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    stopped_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<BotLog(uuid='{self.uuid}', bot_type='{self.bot_type}', active={self.active})>"
