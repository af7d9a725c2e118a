"""
Data models for the lonely-care monitoring core
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field


class ActivitySource(str, Enum):
    """Where an activity event came from"""
    ACCELEROMETER = "accelerometer"
    GYROSCOPE = "gyroscope"
    TOUCH = "touch"
    SCROLL = "scroll"
    KEYBOARD = "keyboard"
    CLICK = "click"

    @property
    def is_discrete(self) -> bool:
        return self in DISCRETE_SOURCES


DISCRETE_SOURCES = frozenset({
    ActivitySource.TOUCH,
    ActivitySource.SCROLL,
    ActivitySource.KEYBOARD,
    ActivitySource.CLICK,
})


class ClassificationResult(str, Enum):
    """Why the classifier accepted or rejected an event"""
    ACCEPTED = "accepted"
    DEBOUNCED = "debounced"
    BELOW_THRESHOLD = "below_threshold"
    VIBRATION = "vibration"
    CONSECUTIVE_HIGH = "consecutive_high"
    ACCELEROMETER_ONLY = "accelerometer_only"


class AlertLevel(str, Enum):
    """Escalation levels, ordered by severity"""
    NORMAL = "normal"
    CAUTION = "caution"
    WARNING = "warning"
    DANGER = "danger"
    EMERGENCY = "emergency"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {level: index for index, level in enumerate(AlertLevel)}


class NotificationChannelKind(str, Enum):
    """Delivery capability of a notification channel"""
    LOCAL_NOTIFICATION = "local_notification"
    PUSH = "push"
    AUDIBLE = "audible"
    HAPTIC = "haptic"


class ActivityEvent(BaseModel):
    """Raw sensor or interaction event"""
    source: ActivitySource
    magnitude: Optional[float] = None  # None for discrete sources
    timestamp: datetime

    @classmethod
    def from_axes(cls, source: ActivitySource, x: float, y: float, z: float,
                  timestamp: datetime) -> "ActivityEvent":
        """Build a motion event from axis components using |x| + |y| + |z|."""
        return cls(source=source, magnitude=abs(x) + abs(y) + abs(z), timestamp=timestamp)


class SensorSample(BaseModel):
    """One entry of a per-source rolling window"""
    timestamp: datetime
    magnitude: Optional[float] = None


class HourBucket(BaseModel):
    """Activity count for one wall-clock hour"""
    hour_key: datetime  # hour start, minute/second zeroed
    count: int = 0
    paused_until_next_hour: bool = False


class HourlyHistoryEntry(BaseModel):
    """Archived hour bucket"""
    hour_key: datetime
    count: int
    archived_at: datetime


class SubjectStatus(BaseModel):
    """Escalation state of a monitored user or friend"""
    subject_id: str
    last_activity_at: datetime
    alert_level: AlertLevel = AlertLevel.NORMAL
    last_notified_at: Dict[AlertLevel, datetime] = Field(default_factory=dict)


class NotificationAttempt(BaseModel):
    """One fan-out of a notification across channels"""
    subject_id: str
    alert_level: AlertLevel
    message: str
    channels_attempted: Set[str] = Field(default_factory=set)
    channels_succeeded: Set[str] = Field(default_factory=set)
    attempt_number: int = 1
    created_at: datetime

    @property
    def succeeded(self) -> bool:
        return len(self.channels_succeeded) > 0


class EventIngestResult(BaseModel):
    """Result of feeding one event through the pipeline"""
    source: ActivitySource
    result: ClassificationResult
    counted: bool
    hourly_count: int


class ActivityReport(BaseModel):
    """Activity reported for a subject (heartbeat, friend report, check-in)"""
    timestamp: Optional[datetime] = None


class MonitorStatus(BaseModel):
    """Snapshot of the monitor for status endpoints"""
    running: bool
    current_bucket: HourBucket
    subjects: List[SubjectStatus]
    pending_retries: int
