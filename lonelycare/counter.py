"""
Wall-clock hourly activity counter
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Deque, List, Optional

from lonelycare.logging_config import get_logger
from lonelycare.models import HourBucket, HourlyHistoryEntry
from lonelycare.repository import ActivityRepository, LonelyCareError
from lonelycare.utils import get_timezone, hour_start, now_local

logger = get_logger(__name__)


class HourlyActivityCounter:
    """
    Counts confirmed activity per wall-clock hour.

    Counting pauses once the hourly cap is reached and resumes when the hour
    changes. Completed hours are archived for the retention window.
    """

    def __init__(self, cap: int = 10, retention_days: int = 7,
                 repository: Optional[ActivityRepository] = None,
                 timezone: Optional[str] = None,
                 now: Optional[datetime] = None):
        self.cap = cap
        self.retention = timedelta(days=retention_days)
        self.repository = repository
        self.tz = get_timezone(timezone)

        self.bucket: HourBucket = self._new_bucket(now or now_local(self.tz))
        self._history: Deque[HourlyHistoryEntry] = deque()

    def _new_bucket(self, now: datetime) -> HourBucket:
        # A cap of zero disables counting from the start
        return HourBucket(hour_key=hour_start(now, self.tz), count=0,
                          paused_until_next_hour=self.cap <= 0)

    def load(self, now: Optional[datetime] = None) -> None:
        """Resume from the repository, rolling over if the saved hour is stale."""
        if self.repository is None:
            return
        saved = self.repository.load_hour_bucket()
        self._history = deque(self.repository.load_history())
        if saved is not None:
            self.bucket = saved
            logger.info(f"Resumed hour bucket {saved.hour_key.isoformat()} with count {saved.count}")
        self.tick(now)

    def record_activity(self, now: Optional[datetime] = None) -> bool:
        """
        Count one confirmed activity.

        Returns True if the count was incremented, False if the bucket is paused.
        """
        self.tick(now)

        if self.bucket.paused_until_next_hour:
            return False

        self.bucket.count += 1
        if self.bucket.count >= self.cap:
            self.bucket.paused_until_next_hour = True
            logger.info(f"Hourly cap {self.cap} reached, counting paused until next hour")

        self._save_bucket()
        return True

    def tick(self, now: Optional[datetime] = None) -> bool:
        """
        Roll the bucket over if the wall-clock hour changed.

        Only the current hour gets a fresh bucket, however many hours were
        skipped. Returns True if a new bucket was created.
        """
        now = now or now_local(self.tz)
        current_hour = hour_start(now, self.tz)

        if current_hour == self.bucket.hour_key:
            return False

        if current_hour < self.bucket.hour_key:
            logger.warning(f"Clock moved backward ({current_hour.isoformat()} < "
                           f"{self.bucket.hour_key.isoformat()}), keeping current bucket")
            return False

        previous = self.bucket
        self.bucket = self._new_bucket(now)
        self._archive(previous, now)
        self._save_bucket()

        logger.info(f"New hour {self.bucket.hour_key.isoformat()} "
                    f"(previous count: {previous.count})")
        return True

    def _archive(self, bucket: HourBucket, now: datetime) -> None:
        entry = HourlyHistoryEntry(hour_key=bucket.hour_key, count=bucket.count, archived_at=now)
        self._history.append(entry)

        cutoff = now - self.retention
        while self._history and self._history[0].hour_key <= cutoff:
            self._history.popleft()

        if self.repository is None:
            return
        try:
            self.repository.append_history(entry)
            self.repository.prune_history(cutoff)
        except LonelyCareError as e:
            logger.error(f"Could not archive hour {entry.hour_key.isoformat()}: {e}")

    def _save_bucket(self) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save_hour_bucket(self.bucket)
        except LonelyCareError as e:
            logger.error(f"Could not persist hour bucket {self.bucket.hour_key.isoformat()}: {e}")

    @property
    def count(self) -> int:
        return self.bucket.count

    @property
    def is_paused(self) -> bool:
        return self.bucket.paused_until_next_hour

    def history(self) -> List[HourlyHistoryEntry]:
        """Archived hours, oldest first"""
        return list(self._history)

    def total_for_last_hours(self, hours: int) -> int:
        """Activity over the current hour plus the last `hours` archived hours."""
        cutoff = self.bucket.hour_key - timedelta(hours=hours)
        archived = sum(e.count for e in self._history if e.hour_key >= cutoff)
        return archived + self.bucket.count
