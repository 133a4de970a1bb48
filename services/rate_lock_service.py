"""
Rate Lock Service for short-lived Stars -> TON price protection

Locks are held in process memory only. They are advisory price guarantees,
not funds movements: losing them on restart means the next conversion
re-quotes at the current rate, nothing more.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from config import Config
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLock:
    """Data class for rate lock information"""

    id: str
    exchange_rate: Decimal
    source_currency: str
    target_currency: str
    source_amount: Decimal
    locked_at: datetime
    expires_at: datetime
    duration_seconds: int


class RateLockManager:
    """Capped, self-expiring registry of rate locks"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None, max_entries: int = Config.RATE_LOCK_MAX_ENTRIES):
        self._locks: Dict[str, RateLock] = {}
        self._expiry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._clock = clock or get_naive_utc_now
        self.max_entries = max_entries
        self.min_duration = Config.RATE_LOCK_MIN_SECONDS
        self.max_duration = Config.RATE_LOCK_MAX_SECONDS

    def _now(self) -> datetime:
        return self._clock()

    def _is_expired(self, lock: RateLock, now: Optional[datetime] = None) -> bool:
        return (now or self._now()) >= lock.expires_at

    @staticmethod
    def _generate_lock_id() -> str:
        return f"lock_{int(get_naive_utc_now().timestamp() * 1000)}_{secrets.token_hex(5)}"

    def create_lock(
        self,
        exchange_rate: Decimal,
        source_currency: str,
        target_currency: str,
        source_amount: Decimal,
        duration_seconds: int = Config.RATE_LOCK_DEFAULT_SECONDS,
    ) -> RateLock:
        """Create a new rate lock valid for duration_seconds"""
        if duration_seconds < self.min_duration or duration_seconds > self.max_duration:
            raise ValidationError(
                f"Lock duration must be between {self.min_duration} and {self.max_duration} seconds"
            )

        self._make_room()

        now = self._now()
        lock = RateLock(
            id=self._generate_lock_id(),
            exchange_rate=exchange_rate,
            source_currency=source_currency,
            target_currency=target_currency,
            source_amount=source_amount,
            locked_at=now,
            expires_at=now + timedelta(seconds=duration_seconds),
            duration_seconds=duration_seconds,
        )
        self._locks[lock.id] = lock
        self._schedule_expiry(lock.id, duration_seconds)

        logger.info(
            f"🔒 Created rate lock {lock.id}: {source_amount} {source_currency} @ {exchange_rate} "
            f"{target_currency} for {duration_seconds}s"
        )
        return lock

    def get_lock(self, lock_id: str) -> Optional[RateLock]:
        """Get rate lock by ID, returns None if expired or not found"""
        lock = self._locks.get(lock_id)
        if lock is None:
            return None

        if self._is_expired(lock):
            self._remove(lock_id)
            return None

        return lock

    def is_valid(self, lock_id: str) -> bool:
        return self.get_lock(lock_id) is not None

    def get_remaining_time(self, lock_id: str) -> int:
        """Get remaining time in seconds for rate lock"""
        lock = self.get_lock(lock_id)
        if lock is None:
            return 0
        remaining = lock.expires_at - self._now()
        return max(0, int(remaining.total_seconds()))

    def extend_lock(self, lock_id: str, additional_seconds: int) -> Optional[RateLock]:
        """Extend a live lock; the resulting window may not exceed the maximum duration"""
        lock = self.get_lock(lock_id)
        if lock is None:
            return None

        new_duration = self.get_remaining_time(lock_id) + additional_seconds
        if new_duration > self.max_duration:
            raise ValidationError(f"Cannot extend lock beyond {self.max_duration} seconds")

        extended = replace(
            lock,
            expires_at=self._now() + timedelta(seconds=new_duration),
            duration_seconds=new_duration,
        )
        self._locks[lock_id] = extended
        self._schedule_expiry(lock_id, new_duration)

        logger.info(f"Extended rate lock {lock_id} to {new_duration}s")
        return extended

    def release_lock(self, lock_id: str) -> bool:
        return self._remove(lock_id)

    def get_active_locks(self) -> List[RateLock]:
        now = self._now()
        return [lock for lock in self._locks.values() if not self._is_expired(lock, now)]

    def clear_expired_locks(self) -> int:
        now = self._now()
        expired = [lock_id for lock_id, lock in self._locks.items() if self._is_expired(lock, now)]
        for lock_id in expired:
            self._remove(lock_id)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired rate locks")
        return len(expired)

    def __len__(self) -> int:
        return len(self._locks)

    def _make_room(self) -> None:
        if len(self._locks) < self.max_entries:
            return
        self.clear_expired_locks()
        while len(self._locks) >= self.max_entries:
            soonest = min(self._locks.values(), key=lambda lock: lock.expires_at)
            logger.warning(f"Rate lock registry full ({self.max_entries}), evicting {soonest.id}")
            self._remove(soonest.id)

    def _schedule_expiry(self, lock_id: str, delay_seconds: int) -> None:
        handle = self._expiry_handles.pop(lock_id, None)
        if handle is not None:
            handle.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: lazy eviction in get_lock covers it
            return
        self._expiry_handles[lock_id] = loop.call_later(delay_seconds, self._evict_if_expired, lock_id)

    def _evict_if_expired(self, lock_id: str) -> None:
        self._expiry_handles.pop(lock_id, None)
        lock = self._locks.get(lock_id)
        if lock is not None and self._is_expired(lock):
            del self._locks[lock_id]
            logger.debug(f"Rate lock {lock_id} expired")

    def _remove(self, lock_id: str) -> bool:
        handle = self._expiry_handles.pop(lock_id, None)
        if handle is not None:
            handle.cancel()
        return self._locks.pop(lock_id, None) is not None


# Global instance
rate_lock_manager = RateLockManager()
