"""
Persistence interface for hour buckets and subject statuses
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from lonelycare.models import HourBucket, HourlyHistoryEntry, SubjectStatus


class LonelyCareError(Exception):
    """Base exception for the monitoring core."""
    pass


class RepositoryError(LonelyCareError):
    """Raised when the persistence layer fails."""
    pass


class ActivityRepository(ABC):
    """Load/save by hour key and subject id. Saves are upserts."""

    @abstractmethod
    def load_hour_bucket(self) -> Optional[HourBucket]:
        """Return the last saved current bucket, if any."""

    @abstractmethod
    def save_hour_bucket(self, bucket: HourBucket) -> None:
        ...

    @abstractmethod
    def append_history(self, entry: HourlyHistoryEntry) -> None:
        ...

    @abstractmethod
    def load_history(self) -> List[HourlyHistoryEntry]:
        """Archived buckets, oldest first."""

    @abstractmethod
    def prune_history(self, before: datetime) -> int:
        """Drop entries whose hour_key is at or before `before`. Returns how many."""

    @abstractmethod
    def load_subjects(self) -> List[SubjectStatus]:
        ...

    @abstractmethod
    def save_subject(self, status: SubjectStatus) -> None:
        ...

    @abstractmethod
    def delete_subject(self, subject_id: str) -> None:
        ...


class InMemoryRepository(ActivityRepository):
    """Process-local repository, used in tests and when no database is configured."""

    def __init__(self):
        self.bucket: Optional[HourBucket] = None
        self.history: List[HourlyHistoryEntry] = []
        self.subjects: Dict[str, SubjectStatus] = {}

    def load_hour_bucket(self) -> Optional[HourBucket]:
        return self.bucket.model_copy() if self.bucket else None

    def save_hour_bucket(self, bucket: HourBucket) -> None:
        self.bucket = bucket.model_copy()

    def append_history(self, entry: HourlyHistoryEntry) -> None:
        self.history = [e for e in self.history if e.hour_key != entry.hour_key]
        self.history.append(entry.model_copy())
        self.history.sort(key=lambda e: e.hour_key)

    def load_history(self) -> List[HourlyHistoryEntry]:
        return [e.model_copy() for e in self.history]

    def prune_history(self, before: datetime) -> int:
        kept = [e for e in self.history if e.hour_key > before]
        removed = len(self.history) - len(kept)
        self.history = kept
        return removed

    def load_subjects(self) -> List[SubjectStatus]:
        return [s.model_copy(deep=True) for s in self.subjects.values()]

    def save_subject(self, status: SubjectStatus) -> None:
        self.subjects[status.subject_id] = status.model_copy(deep=True)

    def delete_subject(self, subject_id: str) -> None:
        self.subjects.pop(subject_id, None)
