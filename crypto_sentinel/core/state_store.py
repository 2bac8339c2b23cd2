"""
Daily stats persistence
"""

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when daily stats cannot be read or written"""


@dataclass
class DailyStats:
    """Per-day risk accounting, scoped by UTC date"""
    date: str
    initial_balance: float = 0.0
    current_balance: float = 0.0
    trades_count: int = 0
    daily_pnl: float = 0.0
    is_halted: bool = False

    @classmethod
    def fresh(cls, date: str) -> "DailyStats":
        return cls(date=date)

    def to_dict(self) -> Dict:
        return {
            "date": self.date,
            "initialBalance": self.initial_balance,
            "currentBalance": self.current_balance,
            "tradesCount": self.trades_count,
            "dailyPnL": self.daily_pnl,
            "isHalted": self.is_halted,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DailyStats":
        return cls(
            date=str(data["date"]),
            initial_balance=float(data.get("initialBalance", 0.0)),
            current_balance=float(data.get("currentBalance", 0.0)),
            trades_count=int(data.get("tradesCount", 0)),
            daily_pnl=float(data.get("dailyPnL", 0.0)),
            is_halted=bool(data.get("isHalted", False)),
        )


class DailyStatsStore:
    """
    JSON file holding a single DailyStats record.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so a crash never leaves a half-written record.
    """

    def __init__(self, path: str = "data/daily_stats.json"):
        self.path = Path(path)
        self.halt_marker = self.path.with_name(self.path.name + ".halted")

    def load(self) -> Optional[DailyStats]:
        """Return the stored record, or None when no file exists yet"""
        if not self.path.exists():
            return None

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            return DailyStats.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Could not read daily stats from {self.path}: {e}") from e

    def save(self, stats: DailyStats) -> None:
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".daily_stats.", suffix=".tmp"
            )
            with os.fdopen(fd, 'w') as f:
                json.dump(stats.to_dict(), f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceError(f"Could not write daily stats to {self.path}: {e}") from e

    # Halt marker
    #
    # A plain file beside the record, written when the record itself could
    # not be saved. Its presence keeps trading halted across restarts and
    # day rollovers until a reset clears it.

    def mark_halted(self, reason: str) -> bool:
        try:
            self.halt_marker.parent.mkdir(parents=True, exist_ok=True)
            self.halt_marker.write_text(reason)
            return True
        except OSError as e:
            logger.critical(f"Could not write halt marker {self.halt_marker}: {e}")
            return False

    def read_halt_marker(self) -> Optional[str]:
        """Reason stored in the halt marker, or None when there is none"""
        if not self.halt_marker.exists():
            return None
        try:
            return self.halt_marker.read_text().strip() or "halted"
        except OSError:
            return "halt marker unreadable"

    def clear_halt_marker(self) -> None:
        try:
            self.halt_marker.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Could not remove halt marker {self.halt_marker}: {e}") from e
