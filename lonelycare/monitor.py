"""
Activity monitor

Owns the classifier, hourly counter, subject statuses and dispatcher, and
runs the hourly and monitoring ticks on the asyncio event loop.
"""

import asyncio
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from lonelycare.channels import LoggingChannel, NotificationChannel
from lonelycare.classifier import MotionClassifier
from lonelycare.config import MonitorSettings, settings as default_settings
from lonelycare.counter import HourlyActivityCounter
from lonelycare.dispatcher import NotificationDispatcher
from lonelycare.escalation import EscalationStateMachine
from lonelycare.logging_config import get_logger
from lonelycare.models import (
    ActivityEvent, AlertLevel, ClassificationResult, EventIngestResult,
    MonitorStatus, NotificationAttempt, SubjectStatus,
)
from lonelycare.repository import ActivityRepository, InMemoryRepository, LonelyCareError
from lonelycare.retry import RetryPolicy
from lonelycare.sensor_source import SensorSource, Unsubscribe
from lonelycare.utils import get_timezone, in_hour_window, now_local, to_local

logger = get_logger(__name__)

ALERT_MESSAGES = {
    AlertLevel.CAUTION: "{subject} has not been active for {elapsed}. Consider checking in.",
    AlertLevel.WARNING: "{subject} has not been active for {elapsed}. Please check on them.",
    AlertLevel.DANGER: "{subject} has not been active for {elapsed}. Contact them now.",
    AlertLevel.EMERGENCY: "{subject} has not been active for {elapsed}. Emergency response may be needed.",
}


def format_elapsed(seconds: float) -> str:
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes} minutes"
    hours, minutes = divmod(minutes, 60)
    if hours < 48:
        return f"{hours}h {minutes:02d}m"
    return f"{hours // 24} days {hours % 24}h"


class ActivityMonitor:
    """
    Monitoring context with explicit start/stop.

    Sensor callbacks may arrive from reader threads, so every mutation of
    classifier windows, the hour bucket and subject statuses happens under
    one lock. Dispatch runs outside the lock.
    """

    def __init__(self, settings: Optional[MonitorSettings] = None,
                 repository: Optional[ActivityRepository] = None,
                 channels: Optional[Iterable[NotificationChannel]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings or default_settings
        self.repository = repository or InMemoryRepository()
        self.tz = get_timezone(self.settings.timezone)
        self.clock = clock or (lambda: now_local(self.tz))

        self.classifier = MotionClassifier(self.settings.classifier)
        self.counter = HourlyActivityCounter(cap=self.settings.hourly_cap,
                                             retention_days=self.settings.history_retention_days,
                                             repository=self.repository,
                                             timezone=self.settings.timezone,
                                             now=self.clock())
        self.escalation = EscalationStateMachine(self.settings.alert_thresholds,
                                                 self.settings.repeat_intervals)
        self.dispatcher = NotificationDispatcher(
            channels if channels is not None else [LoggingChannel()],
            retry_policy=RetryPolicy(self.settings.retry_max_attempts, self.settings.retry_delay),
            channel_timeout=self.settings.channel_timeout,
            on_success=self._on_delivered,
            on_failure=self._on_failed,
            is_monitored=self.is_monitored,
            clock=self.clock,
        )

        self.subjects: Dict[str, SubjectStatus] = {}
        self.permanent_failures: Deque[NotificationAttempt] = deque(maxlen=100)

        self._lock = threading.Lock()
        self._sources: List[SensorSource] = []
        self._subscriptions: List[Unsubscribe] = []
        self._tasks: List[asyncio.Task] = []
        self.running = False

    # ==================== LIFECYCLE ====================

    def load(self) -> None:
        """Restore the hour bucket and subject statuses from the repository."""
        now = self.clock()
        with self._lock:
            self.counter.load(now)
            for status in self.repository.load_subjects():
                self.subjects[status.subject_id] = status
            if self.settings.self_subject_id not in self.subjects:
                self._create_subject(self.settings.self_subject_id, now)
        logger.info(f"Loaded {len(self.subjects)} monitored subjects")

    def add_source(self, source: SensorSource) -> None:
        self._sources.append(source)
        if self.running:
            self._attach(source)

    def _attach(self, source: SensorSource) -> None:
        self._subscriptions.append(source.subscribe(self.handle_event))
        try:
            source.start()
        except LonelyCareError as e:
            logger.warning(f"Sensor source {type(source).__name__} unavailable: {e}")

    async def start(self) -> None:
        if self.running:
            return
        self.load()
        for source in self._sources:
            self._attach(source)

        self._tasks = [
            asyncio.create_task(self._periodic(self.settings.hour_tick_interval.total_seconds(),
                                               self._hour_tick_once, "hour tick")),
            asyncio.create_task(self._periodic(self.settings.monitor_interval.total_seconds(),
                                               self.run_monitoring_tick, "monitoring tick")),
        ]
        self.running = True
        logger.info("Activity monitor started")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        for source in self._sources:
            source.stop()

        await self.dispatcher.close()
        logger.info("Activity monitor stopped")

    async def _periodic(self, interval: float, fn, name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception as e:
                logger.error(f"{name} failed: {e}")

    async def _hour_tick_once(self) -> None:
        self.tick_hour()

    # ==================== ACTIVITY ====================

    def handle_event(self, event: ActivityEvent) -> EventIngestResult:
        """Classify one raw event, count it and refresh the device owner's heartbeat."""
        if event.timestamp.tzinfo is None:
            event = event.model_copy(update={"timestamp": to_local(event.timestamp, self.tz)})
        with self._lock:
            result = self.classifier.classify(event)
            counted = False
            if result == ClassificationResult.ACCEPTED:
                self._observe(self.settings.self_subject_id, event.timestamp)
                counted = self.counter.record_activity(event.timestamp)
            return EventIngestResult(source=event.source, result=result, counted=counted,
                                     hourly_count=self.counter.count)

    def report_activity(self, subject_id: str, at: Optional[datetime] = None) -> bool:
        """
        Record confirmed activity for a subject (heartbeat, friend report or check-in).

        Returns True if it was newer than what we had.
        """
        at = to_local(at, self.tz) if at else self.clock()
        with self._lock:
            return self._observe(subject_id, at)

    def _observe(self, subject_id: str, at: datetime) -> bool:
        status = self.subjects.get(subject_id)
        if status is None:
            self._create_subject(subject_id, at)
            return True
        previous = status.alert_level
        applied = self.escalation.observe_activity(status, at)
        if applied:
            self._save_subject(status)
            if previous != AlertLevel.NORMAL:
                # Drop retries left over from the previous escalation
                self.dispatcher.cancel(subject_id)
        return applied

    def tick_hour(self, now: Optional[datetime] = None) -> bool:
        with self._lock:
            return self.counter.tick(now or self.clock())

    # ==================== SUBJECTS ====================

    def _create_subject(self, subject_id: str, at: datetime) -> SubjectStatus:
        status = SubjectStatus(subject_id=subject_id, last_activity_at=at)
        self.subjects[subject_id] = status
        self._save_subject(status)
        logger.info(f"Monitoring subject {subject_id}")
        return status

    def add_subject(self, subject_id: str, last_activity_at: Optional[datetime] = None) -> SubjectStatus:
        with self._lock:
            status = self.subjects.get(subject_id)
            if status is None:
                at = to_local(last_activity_at, self.tz) if last_activity_at else self.clock()
                status = self._create_subject(subject_id, at)
            return status.model_copy(deep=True)

    def remove_subject(self, subject_id: str) -> bool:
        """Stop monitoring a subject and drop its pending retries."""
        with self._lock:
            status = self.subjects.pop(subject_id, None)
            if status is None:
                return False
            self.repository.delete_subject(subject_id)
        cancelled = self.dispatcher.cancel(subject_id)
        logger.info(f"Stopped monitoring {subject_id} ({cancelled} pending retries cancelled)")
        return True

    def is_monitored(self, subject_id: str) -> bool:
        return subject_id in self.subjects

    def get_subject(self, subject_id: str) -> Optional[SubjectStatus]:
        with self._lock:
            status = self.subjects.get(subject_id)
            return status.model_copy(deep=True) if status else None

    def list_subjects(self) -> List[SubjectStatus]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self.subjects.values()]

    def _save_subject(self, status: SubjectStatus) -> None:
        try:
            self.repository.save_subject(status)
        except LonelyCareError as e:
            logger.error(f"Could not persist subject {status.subject_id}: {e}")

    # ==================== ESCALATION ====================

    async def run_monitoring_tick(self, now: Optional[datetime] = None) -> List[NotificationAttempt]:
        """
        Re-evaluate every subject and dispatch due notifications.

        A failure while evaluating one subject is logged and skipped.
        """
        now = now or self.clock()
        due: List[Tuple[str, AlertLevel, str]] = []

        with self._lock:
            for status in self.subjects.values():
                try:
                    previous = status.alert_level
                    level = self.escalation.refresh(status, now)
                    if level != previous:
                        self._save_subject(status)
                    if self._held_for_sleep(level, now):
                        logger.debug(f"Holding {level.value} alert for {status.subject_id} until the sleep window ends")
                        continue
                    if (self.escalation.is_notification_due(status, level, now)
                            and not self.dispatcher.is_in_flight(status.subject_id, level)):
                        due.append((status.subject_id, level, self.format_message(status, level, now)))
                except Exception as e:
                    logger.error(f"Evaluation failed for subject {status.subject_id}: {e}")

        if not due:
            return []

        results = await asyncio.gather(
            *(self.dispatcher.dispatch(subject_id, level, message) for subject_id, level, message in due),
            return_exceptions=True,
        )

        attempts = []
        for (subject_id, level, _), result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Dispatch failed for {subject_id}/{level.value}: {result}")
            elif result is not None:
                attempts.append(result)
        return attempts

    def is_sleep_time(self, now: Optional[datetime] = None) -> bool:
        return in_hour_window(now or self.clock(), self.settings.sleep_start_hour,
                              self.settings.sleep_end_hour, self.tz)

    def _held_for_sleep(self, level: AlertLevel, now: datetime) -> bool:
        """Caution and warning wait for the sleep window to end. Danger and emergency never wait."""
        return level in (AlertLevel.CAUTION, AlertLevel.WARNING) and self.is_sleep_time(now)

    def format_message(self, status: SubjectStatus, level: AlertLevel, now: datetime) -> str:
        elapsed = max((now - status.last_activity_at).total_seconds(), 0.0)
        template = ALERT_MESSAGES.get(level, "{subject}: {elapsed} without activity")
        return template.format(subject=status.subject_id, elapsed=format_elapsed(elapsed))

    def _on_delivered(self, attempt: NotificationAttempt) -> None:
        with self._lock:
            status = self.subjects.get(attempt.subject_id)
            # Activity arrived while the notification was in flight
            if status is None or status.alert_level == AlertLevel.NORMAL:
                return
            self.escalation.mark_notified(status, attempt.alert_level, attempt.created_at)
            self._save_subject(status)

    def _on_failed(self, attempt: NotificationAttempt) -> None:
        self.permanent_failures.append(attempt)

    # ==================== STATUS ====================

    def status(self) -> MonitorStatus:
        with self._lock:
            return MonitorStatus(
                running=self.running,
                current_bucket=self.counter.bucket.model_copy(),
                subjects=[s.model_copy(deep=True) for s in self.subjects.values()],
                pending_retries=self.dispatcher.pending_retries,
            )
