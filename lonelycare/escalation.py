"""
Escalation state machine

Maps elapsed inactivity to an alert level and decides when a level is due
for (re-)notification.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from lonelycare.config import ALERT_THRESHOLDS, REPEAT_INTERVALS
from lonelycare.logging_config import get_logger
from lonelycare.models import AlertLevel, SubjectStatus

logger = get_logger(__name__)

# Evaluated most severe first
_DESCENDING = [AlertLevel.EMERGENCY, AlertLevel.DANGER, AlertLevel.WARNING, AlertLevel.CAUTION]


class EscalationStateMachine:
    """
    Derives alert levels from SubjectStatus records.

    Levels only go down through observe_activity: fresh activity resets the
    subject to normal and clears its notification history.
    """

    def __init__(self, thresholds: Optional[Dict[AlertLevel, timedelta]] = None,
                 repeat_intervals: Optional[Dict[AlertLevel, timedelta]] = None):
        self.thresholds = dict(thresholds or ALERT_THRESHOLDS)
        self.repeat_intervals = dict(repeat_intervals or REPEAT_INTERVALS)

    def evaluate(self, status: SubjectStatus, now: datetime) -> AlertLevel:
        """Alert level for the time elapsed since the subject's last activity."""
        elapsed = max(now - status.last_activity_at, timedelta(0))
        for level in _DESCENDING:
            threshold = self.thresholds.get(level)
            if threshold is not None and elapsed >= threshold:
                return level
        return AlertLevel.NORMAL

    def refresh(self, status: SubjectStatus, now: datetime) -> AlertLevel:
        """
        Recompute and store the subject's level.

        A lower computed level (clock moved backward) leaves the stored level
        untouched.
        """
        level = self.evaluate(status, now)
        if level.severity > status.alert_level.severity:
            logger.info(f"Subject {status.subject_id}: {status.alert_level.value} -> {level.value}")
            status.alert_level = level
        elif level.severity < status.alert_level.severity:
            logger.warning(f"Subject {status.subject_id}: computed {level.value} below stored "
                           f"{status.alert_level.value} without new activity, keeping stored level")
        return status.alert_level

    def is_notification_due(self, status: SubjectStatus, level: AlertLevel, now: datetime) -> bool:
        if level == AlertLevel.NORMAL:
            return False

        last = status.last_notified_at.get(level)
        if last is None:
            return True

        interval = self.repeat_intervals.get(level, timedelta(0))
        if interval <= timedelta(0):
            return False

        return now - last >= interval

    def observe_activity(self, status: SubjectStatus, at: datetime) -> bool:
        """
        Apply fresh activity, last writer wins by timestamp.

        Returns True if the observation was newer and was applied.
        """
        if at <= status.last_activity_at:
            return False

        status.last_activity_at = at
        if status.alert_level != AlertLevel.NORMAL:
            logger.info(f"Subject {status.subject_id}: activity observed, "
                        f"{status.alert_level.value} -> normal")
        status.alert_level = AlertLevel.NORMAL
        status.last_notified_at.clear()
        return True

    def mark_notified(self, status: SubjectStatus, level: AlertLevel, at: datetime) -> None:
        status.last_notified_at[level] = at
