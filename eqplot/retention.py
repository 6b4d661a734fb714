import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from . import config

logger = logging.getLogger(__name__)


def utc_now() -> datetime.datetime:
    """Current time as naive UTC, the representation stored in history."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def compute_cutoff(age_in_days: int, now: Optional[datetime.datetime] = None) -> datetime.datetime:
    """Returns the timestamp before which records count as expired.

    Ages reaching past the earliest representable date clamp to
    datetime.min, so nothing is old enough to expire.
    """
    if age_in_days < 0:
        raise ValueError(f"Age must not be negative, got {age_in_days}")
    if now is None:
        now = utc_now()
    try:
        return now - datetime.timedelta(days=age_in_days)
    except OverflowError:
        return datetime.datetime.min


@dataclass(frozen=True)
class RetentionReport:
    deleted: int
    store_available: bool
    cutoff: datetime.datetime


class RetentionPolicy:
    """Deletes history records older than a fixed age."""

    def __init__(self, store, max_age_days: int = config.RETENTION_DAYS):
        if max_age_days < 0:
            raise ValueError(f"Age must not be negative, got {max_age_days}")
        self.store = store
        self.max_age_days = max_age_days

    def enforce(self) -> RetentionReport:
        # Probing first separates "store down" from "nothing was old enough"
        if not self.store.is_connected():
            logger.warning("Retention skipped: history store is not connected")
            cutoff = compute_cutoff(self.max_age_days, self.store.clock())
            return RetentionReport(deleted=0, store_available=False, cutoff=cutoff)

        cutoff = compute_cutoff(self.max_age_days, self.store.current_time())
        deleted = self.store.delete_older_than(self.max_age_days)
        logger.info(f"Retention removed {deleted} history entries older than {self.max_age_days} days")
        return RetentionReport(deleted=deleted, store_available=True, cutoff=cutoff)
