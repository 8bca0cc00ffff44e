"""Logging setup and per-bot activity/transaction files."""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

TRANSACTION_COLUMNS = [
    'timestamp', 'uuid', 'bot_id', 'transaction_type', 'pair',
    'amount', 'price', 'order_id',
]


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Configure the root logger for the process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: Log record format
    """
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=fmt or DEFAULT_LOG_FORMAT)
    # ccxt is chatty at DEBUG
    logging.getLogger("ccxt").setLevel(logging.WARNING)


class BotLoggingService:
    """Writes one bot instance's activity and transactions to its own directory."""

    def __init__(self, uuid: str, bot_id: str, base_dir: Union[str, Path]):
        """Initialize logging service for a bot instance.

        Args:
            uuid: The instance correlation uuid (directory name)
            bot_id: The deterministic bot identity, written into every line
            base_dir: Directory holding all per-bot log directories
        """
        self.uuid = uuid
        self.bot_id = bot_id
        self.bot_log_dir = Path(base_dir) / uuid

        self._ensure_log_directory()

    def _ensure_log_directory(self) -> None:
        """Create the bot's log directory if it doesn't exist."""
        try:
            self.bot_log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to create log directory: {e}")

    def get_log_directory(self) -> Path:
        """Get the bot's log directory path."""
        return self.bot_log_dir

    def log_activity(self, message: str, level: str = "INFO") -> None:
        """Append a line to the bot's activity.log.

        Args:
            message: Log message
            level: Log level (DEBUG, INFO, WARNING, ERROR)
        """
        activity_file = self.bot_log_dir / "activity.log"

        try:
            with open(activity_file, 'a', encoding='utf-8') as f:
                timestamp = datetime.utcnow().isoformat()
                f.write(f"{timestamp} [{level}] {self.bot_id}: {message}\n")
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log activity: {e}")

    def log_transaction(
        self,
        transaction_type: str,
        pair: str,
        amount: float,
        price: Optional[float] = None,
        order_id: Optional[str] = None,
    ) -> None:
        """Append an order to the bot's transactions.csv audit file."""
        log_file = self.bot_log_dir / "transactions.csv"
        write_header = not log_file.exists()

        try:
            with open(log_file, 'a', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)

                if write_header:
                    writer.writerow(TRANSACTION_COLUMNS)

                writer.writerow([
                    datetime.utcnow().isoformat(),
                    self.uuid,
                    self.bot_id,
                    transaction_type,
                    pair,
                    f"{amount:.8f}",
                    f"{price:.8f}" if price is not None else "",
                    order_id or "",
                ])
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log transaction: {e}")
