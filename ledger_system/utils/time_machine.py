# ledger_system/utils/time_machine.py
"""
Clock for the ledger.

Every "now" that decides ledger behaviour goes through timeMachine: cycle
start and end, whether a cycle is due for settlement, bill numbers, paid
and settled timestamps, checkout context age and the webhook replay
window. Values are naive UTC to match the DateTime columns.

Virtual time pins the clock so settlement can be driven across cycle
boundaries without waiting for them.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TimeMachine:
    """Singleton clock, real by default, virtual once setTime is called."""

    _instance = None
    _virtualTime: Optional[datetime] = None
    _isTestMode: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def now(self) -> datetime:
        if self._isTestMode and self._virtualTime:
            return self._virtualTime
        return datetime.now(timezone.utc).replace(tzinfo=None)

    @property
    def isTestMode(self) -> bool:
        return self._isTestMode

    def setTime(self, newTime: datetime, adminId: Optional[int] = None):
        """Pin the clock; aware datetimes are converted to naive UTC."""
        if newTime.tzinfo is not None:
            newTime = newTime.astimezone(timezone.utc).replace(tzinfo=None)
        self._isTestMode = True
        self._virtualTime = newTime
        logger.info(f"Ledger clock pinned to {newTime} by admin {adminId}")

    def advanceTime(self, days: int = 0, hours: int = 0, seconds: int = 0):
        """Move the pinned clock forward, e.g. past a cycle's endAt."""
        if not self._isTestMode:
            raise ValueError("Cannot advance time when not in test mode")

        self._virtualTime += timedelta(days=days, hours=hours, seconds=seconds)
        logger.info(f"Ledger clock advanced to {self._virtualTime}")

    def resetToRealTime(self):
        self._isTestMode = False
        self._virtualTime = None
        logger.info("Ledger clock back on real time")


# Global instance
timeMachine = TimeMachine()
