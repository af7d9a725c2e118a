"""
Motion classification logic

Decides whether a raw sensor or interaction event is genuine human activity
or device vibration / noise.
"""

import math
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional

from lonelycare.config import ClassifierSettings
from lonelycare.logging_config import get_logger
from lonelycare.models import ActivityEvent, ActivitySource, ClassificationResult, SensorSample

logger = get_logger(__name__)


class SensorActivityWindow:
    """
    Rolling window of recent samples for one source.
    Entries older than the span are pruned on every insert.
    """

    def __init__(self, span: timedelta):
        self.span = span
        self.samples: Deque[SensorSample] = deque()

    def add(self, sample: SensorSample) -> None:
        self.samples.append(sample)
        self.prune(sample.timestamp)

    def prune(self, now: datetime) -> None:
        while self.samples and now - self.samples[0].timestamp >= self.span:
            self.samples.popleft()

    def recent(self, count: int):
        return list(self.samples)[-count:]

    def __len__(self) -> int:
        return len(self.samples)


class MotionClassifier:
    """
    Classifies activity events.

    Discrete interaction sources are always genuine. Accelerometer samples go
    through a threshold, phone-vibration pattern detection, consecutive-high
    suppression and an accelerometer-only excess check. Activity from another
    source inside the activity window overrides those rejections. Anything
    not explicitly rejected is accepted.
    """

    def __init__(self, settings: Optional[ClassifierSettings] = None):
        self.settings = settings or ClassifierSettings()

        # Raw motion samples for vibration pattern detection
        self.vibration_buffers: Dict[ActivitySource, SensorActivityWindow] = {}
        # Sources that registered activity recently, for corroboration
        self.activity_windows: Dict[ActivitySource, SensorActivityWindow] = {}

        self.last_accepted: Dict[ActivitySource, datetime] = {}
        self.consecutive_high: int = 0

    def _vibration_buffer(self, source: ActivitySource) -> SensorActivityWindow:
        if source not in self.vibration_buffers:
            self.vibration_buffers[source] = SensorActivityWindow(self.settings.vibration_buffer)
        return self.vibration_buffers[source]

    def _activity_window(self, source: ActivitySource) -> SensorActivityWindow:
        if source not in self.activity_windows:
            self.activity_windows[source] = SensorActivityWindow(self.settings.activity_window)
        return self.activity_windows[source]

    def process(self, event: ActivityEvent) -> bool:
        """Debounce and classify an event. True means genuine activity."""
        return self.classify(event) == ClassificationResult.ACCEPTED

    def classify(self, event: ActivityEvent) -> ClassificationResult:
        """
        Classify an event and return the reason.

        Motion samples enter the vibration buffer before the debounce check so
        the pattern detector sees the raw stream.
        """
        source = event.source

        if not source.is_discrete and event.magnitude is not None:
            self._vibration_buffer(source).add(
                SensorSample(timestamp=event.timestamp, magnitude=event.magnitude)
            )
            self._track_consecutive_high(source, event.magnitude)

        if self.is_debounced(event):
            return ClassificationResult.DEBOUNCED

        if source.is_discrete:
            self._activity_window(source).add(SensorSample(timestamp=event.timestamp))
            result = ClassificationResult.ACCEPTED
        elif source == ActivitySource.ACCELEROMETER:
            result = self._classify_accelerometer(event)
        else:
            result = self._classify_gyroscope(event)

        if result == ClassificationResult.ACCEPTED:
            self.last_accepted[source] = event.timestamp
        elif result != ClassificationResult.BELOW_THRESHOLD:
            logger.debug(f"Rejected {source.value} event at {event.timestamp}: {result.value}")
        return result

    def is_debounced(self, event: ActivityEvent) -> bool:
        """True if the source accepted an event less than its debounce interval ago."""
        interval = self.settings.debounce_intervals.get(event.source, timedelta(0))
        last = self.last_accepted.get(event.source)
        if last is None or interval <= timedelta(0):
            return False
        elapsed = event.timestamp - last
        # Clock moved backward, never debounce
        if elapsed < timedelta(0):
            return False
        return elapsed < interval

    def _track_consecutive_high(self, source: ActivitySource, magnitude: float) -> None:
        if source != ActivitySource.ACCELEROMETER:
            return
        if magnitude > self.settings.motion_threshold:
            self.consecutive_high += 1
        elif magnitude <= self.settings.low_threshold:
            self.consecutive_high = 0

    def _classify_accelerometer(self, event: ActivityEvent) -> ClassificationResult:
        s = self.settings
        if event.magnitude is None or event.magnitude <= s.motion_threshold:
            return ClassificationResult.BELOW_THRESHOLD

        window = self._activity_window(event.source)
        window.add(SensorSample(timestamp=event.timestamp, magnitude=event.magnitude))
        corroborated = self.is_corroborated(event.source, event.timestamp)

        if corroborated:
            return ClassificationResult.ACCEPTED

        if self.detect_phone_vibration(event.source):
            logger.debug("Phone vibration pattern detected, excluded from activity")
            return ClassificationResult.VIBRATION

        if self.consecutive_high > s.max_consecutive_high:
            return ClassificationResult.CONSECUTIVE_HIGH

        if len(window) > s.accelerometer_only_limit:
            return ClassificationResult.ACCELEROMETER_ONLY

        return ClassificationResult.ACCEPTED

    def _classify_gyroscope(self, event: ActivityEvent) -> ClassificationResult:
        if event.magnitude is None or event.magnitude <= self.settings.gyroscope_threshold:
            return ClassificationResult.BELOW_THRESHOLD
        self._activity_window(event.source).add(
            SensorSample(timestamp=event.timestamp, magnitude=event.magnitude)
        )
        return ClassificationResult.ACCEPTED

    def is_corroborated(self, source: ActivitySource, now: datetime) -> bool:
        """True if any other source registered activity within the activity window."""
        for other, window in self.activity_windows.items():
            if other == source:
                continue
            window.prune(now)
            if len(window) > 0:
                return True
        return False

    def detect_phone_vibration(self, source: ActivitySource) -> bool:
        """
        Detect the regular, high-intensity pattern of a phone vibrating.

        Looks at the most recent samples: a high share of values above the
        high threshold, near-constant spacing and short spacing together mean
        vibration.
        """
        s = self.settings
        buffer = self._vibration_buffer(source)
        if len(buffer) < s.vibration_min_samples:
            return False

        recent = buffer.recent(s.vibration_sample_count)
        high_count = sum(1 for sample in recent if (sample.magnitude or 0.0) > s.high_threshold)
        high_ratio = high_count / len(recent)

        intervals = [
            (recent[i].timestamp - recent[i - 1].timestamp).total_seconds() * 1000.0
            for i in range(1, len(recent))
        ]
        mean_interval = sum(intervals) / len(intervals)
        variance = sum((interval - mean_interval) ** 2 for interval in intervals) / len(intervals)
        std_interval = math.sqrt(variance)

        is_regular = std_interval < s.vibration_max_interval_std_ms
        is_high_intensity = high_ratio > s.vibration_high_ratio
        is_short_interval = mean_interval < s.vibration_max_mean_interval_ms

        if is_regular and is_high_intensity and is_short_interval:
            logger.debug(f"Vibration: high ratio={high_ratio:.0%}, "
                         f"mean interval={mean_interval:.1f}ms, std={std_interval:.1f}ms")
            return True
        return False

    def reset(self):
        """Clear all rolling state"""
        self.vibration_buffers.clear()
        self.activity_windows.clear()
        self.last_accepted.clear()
        self.consecutive_high = 0
