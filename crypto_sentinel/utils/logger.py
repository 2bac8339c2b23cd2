"""
Logging configuration and utilities
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Colored console output formatter"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset = self.COLORS['RESET']

        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        formatted = f"{color}[{timestamp}] {record.levelname:8}{reset} | {record.getMessage()}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class TradeLogger:
    """
    Event log for trades, sentiment signals, breaker trips and daily summaries.

    One line per event: "<iso timestamp> | <KIND> | <json payload>".
    """

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.trade_file = self.log_dir / "trades.log"
        self.signal_file = self.log_dir / "signals.log"
        self.breaker_file = self.log_dir / "breakers.log"
        self.summary_file = self.log_dir / "daily_summary.log"

    def _append(self, path: Path, kind: str, data: dict) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        with open(path, 'a') as f:
            f.write(f"{timestamp} | {kind} | {json.dumps(data, default=str)}\n")

    def log_trade(self, trade_data: dict) -> None:
        """Log a trade execution"""
        self._append(self.trade_file, "TRADE", trade_data)

    def log_signal(self, signal_data: dict) -> None:
        """Log a sentiment verdict"""
        self._append(self.signal_file, "SIGNAL", signal_data)

    def log_breaker(self, breaker_data: dict) -> None:
        """Log a circuit breaker trip"""
        self._append(self.breaker_file, "BREAKER", breaker_data)

    def log_daily_summary(self, summary: dict) -> None:
        self._append(self.summary_file, "DAILY_SUMMARY", summary)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Setup logging configuration

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for file logging
        max_size_mb: Maximum log file size before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger instance
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
        ))
        root_logger.addHandler(file_handler)

    # aiohttp access chatter is never useful here
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a named logger"""
    return logging.getLogger(name)
