"""
Usage Tracker — consumption counters and rolling daily limits.

The tracker is advisory: it reports ``limit_exceeded`` but never refuses a
call. Callers that want enforcement use ``UsageResult.raise_for_limit()``.
"""
import logging
from typing import Optional
from datetime import datetime, time, timedelta, timezone

from pydantic import BaseModel

from .exceptions import NotFoundError, RateLimitExceeded, StateConflictError, ValidationError
from .lifecycle import Clock, utcnow
from .models import UsageStats
from .repository import CredentialRepository

logger = logging.getLogger("credential_vault")


class UsageResult(BaseModel):
    record_id: str
    limit_exceeded: bool
    daily_used: int
    daily_limit: Optional[int] = None
    daily_reset_at: Optional[datetime] = None

    def raise_for_limit(self) -> None:
        """Raise RateLimitExceeded if the daily limit has been passed."""
        if self.limit_exceeded:
            raise RateLimitExceeded(self.record_id, self.daily_used, self.daily_limit)


def next_reset_boundary(now: datetime) -> datetime:
    """Next UTC midnight strictly after ``now``."""
    day = now.astimezone(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def apply_usage(usage: UsageStats, units: int, now: datetime) -> UsageStats:
    """Return ``usage`` with ``units`` consumed at ``now``."""
    if usage.daily_reset_at is None or now >= usage.daily_reset_at:
        daily_used = units
        daily_reset_at = next_reset_boundary(now)
    else:
        daily_used = usage.daily_used + units
        daily_reset_at = usage.daily_reset_at
    return usage.model_copy(update={
        "usage_count": usage.usage_count + 1,
        "total_units_consumed": usage.total_units_consumed + units,
        "daily_used": daily_used,
        "daily_reset_at": daily_reset_at,
        "last_used_at": now,
    })


def is_over_limit(usage: UsageStats) -> bool:
    return usage.daily_limit is not None and usage.daily_used > usage.daily_limit


class UsageTracker:
    """Records credential consumption with conditional writes."""

    def __init__(
        self,
        repository: CredentialRepository,
        clock: Clock = utcnow,
        max_retries: int = 5,
    ):
        self._repo = repository
        self._clock = clock
        self._max_retries = max_retries

    async def track_usage(
        self,
        record_id: str,
        units_consumed: int,
        source_address: Optional[str] = None,
    ) -> UsageResult:
        """Count one use of a credential consuming ``units_consumed`` units.

        Raises:
            ValidationError: If units_consumed is negative.
            NotFoundError: If the record does not exist.
        """
        if isinstance(units_consumed, bool) or not isinstance(units_consumed, int):
            raise ValidationError("units_consumed must be an integer")
        if units_consumed < 0:
            raise ValidationError("units_consumed cannot be negative")
        for _ in range(self._max_retries * 4):
            record = await self._repo.get(record_id)
            if record is None:
                raise NotFoundError(f"Credential {record_id} not found")
            now = self._clock()
            usage = apply_usage(record.usage, units_consumed, now)
            update = {"usage": usage, "updated_at": now}
            if source_address:
                update["audit"] = record.audit.model_copy(
                    update={"last_used_from_address": source_address}
                )
            stored = await self._repo.compare_and_set(
                record.model_copy(update=update), record.version,
            )
            if stored is None:
                continue
            exceeded = is_over_limit(stored.usage)
            if exceeded:
                logger.warning(
                    "Credential %s over daily limit: %d/%d",
                    record_id, stored.usage.daily_used, stored.usage.daily_limit,
                )
            return UsageResult(
                record_id=record_id,
                limit_exceeded=exceeded,
                daily_used=stored.usage.daily_used,
                daily_limit=stored.usage.daily_limit,
                daily_reset_at=stored.usage.daily_reset_at,
            )
        raise StateConflictError(
            f"Credential {record_id} is being modified concurrently"
        )
