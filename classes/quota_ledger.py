# classes/quota_ledger.py

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set

from classes.entities import QuotaStatus, require_id
from classes.relay_errors import InvalidArgument, QuotaExceeded

logger = logging.getLogger("devblox_relay")


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class _QuotaRecord:
    __slots__ = ("lock", "day", "used", "bonus", "redeemed")

    def __init__(self, day: str) -> None:
        self.lock = threading.Lock()
        self.day = day
        self.used = 0
        self.bonus = 0
        self.redeemed: Set[str] = set()

    def roll_unlocked(self, today: str) -> None:
        if self.day != today:
            self.day = today
            self.used = 0
            self.bonus = 0
            self.redeemed.clear()


class QuotaLedger:
    """
    Per-key daily usage counters.

    - check_and_consume is one critical section per key: the cap check and the
      increment can never be split by another caller.
    - Day rollover is lazy: the first call on a new day resets the record.
    - Bonus allowance (redeemed codes) belongs to the day it was granted.
    """

    def __init__(self, daily_cap: int, today: Optional[Callable[[], str]] = None) -> None:
        if daily_cap < 0:
            raise ValueError("daily_cap must be >= 0")
        self.daily_cap = daily_cap
        self._today = today or utc_today
        self._lock = threading.Lock()
        self._records: Dict[str, _QuotaRecord] = {}

    def _record(self, key: str) -> _QuotaRecord:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = _QuotaRecord(self._today())
                self._records[key] = record
            return record

    def _status_unlocked(self, key: str, record: _QuotaRecord) -> QuotaStatus:
        return QuotaStatus(key=key, day=record.day, used=record.used, max=self.daily_cap + record.bonus)

    def check_and_consume(self, key: str, amount: int = 1) -> QuotaStatus:
        key = require_id(key, "quota key")
        if amount < 1:
            raise InvalidArgument("amount must be a positive integer")

        record = self._record(key)
        with record.lock:
            record.roll_unlocked(self._today())
            limit = self.daily_cap + record.bonus
            if record.used + amount > limit:
                logger.info("Quota exceeded for %s: used=%d amount=%d limit=%d", key, record.used, amount, limit)
                raise QuotaExceeded(key, record.used, limit)
            record.used += amount
            return self._status_unlocked(key, record)

    def refund(self, key: str, amount: int = 1, day: Optional[str] = None) -> QuotaStatus:
        """
        Give back a reservation taken by check_and_consume. A refund for a
        day that has already rolled over is ignored.
        """
        key = require_id(key, "quota key")
        record = self._record(key)
        with record.lock:
            record.roll_unlocked(self._today())
            if day is None or day == record.day:
                record.used = max(0, record.used - max(0, amount))
            return self._status_unlocked(key, record)

    def redeem(self, key: str, bonus: int, code: Optional[str] = None) -> bool:
        """
        Add bonus allowance for today. When code is given it can be redeemed
        once per key per day; returns False for a repeat.
        """
        key = require_id(key, "quota key")
        if not isinstance(bonus, int) or bonus < 0:
            raise InvalidArgument("bonus must be a non-negative integer")

        record = self._record(key)
        with record.lock:
            record.roll_unlocked(self._today())
            if code is not None:
                if code in record.redeemed:
                    return False
                record.redeemed.add(code)
            record.bonus += bonus
        logger.info("Granted %d bonus prompts to %s", bonus, key)
        return True

    def usage(self, key: str) -> QuotaStatus:
        key = require_id(key, "quota key")
        with self._lock:
            record = self._records.get(key)
        if record is None:
            return QuotaStatus(key=key, day=self._today(), used=0, max=self.daily_cap)
        with record.lock:
            record.roll_unlocked(self._today())
            return self._status_unlocked(key, record)
