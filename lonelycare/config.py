"""
Configuration settings for the lonely-care monitoring core
"""

import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from lonelycare.models import ActivitySource, AlertLevel

load_dotenv()

# Serial sensor configuration (optional external accelerometer)
SERIAL_PORT = ""
BAUD_RATE = 9600

# Hourly activity counter
HOURLY_CAP = 10  # Counting pauses for the rest of the hour at this value
HISTORY_RETENTION_DAYS = 7

# Motion classification thresholds
MOTION_THRESHOLD = 2.5        # |x|+|y|+|z| above this may be motion
LOW_THRESHOLD = 1.0           # At or below this resets the consecutive-high counter
HIGH_THRESHOLD = 3.0          # Vibration "high value" threshold
GYROSCOPE_THRESHOLD = 10.0    # degrees of orientation change
MAX_CONSECUTIVE_HIGH = 3
VIBRATION_SAMPLE_COUNT = 10
VIBRATION_MIN_SAMPLES = 5
VIBRATION_HIGH_RATIO = 0.8
VIBRATION_MAX_INTERVAL_STD_MS = 100.0
VIBRATION_MAX_MEAN_INTERVAL_MS = 400.0
VIBRATION_BUFFER_SECONDS = 3.0
ACTIVITY_WINDOW_SECONDS = 5.0
ACCELEROMETER_ONLY_LIMIT = 10

# Debounce per source, in seconds
DEBOUNCE_SECONDS = {
    ActivitySource.TOUCH: 1.0,
    ActivitySource.CLICK: 1.0,
    ActivitySource.SCROLL: 2.0,
    ActivitySource.KEYBOARD: 0.0,
    ActivitySource.ACCELEROMETER: 0.3,
    ActivitySource.GYROSCOPE: 1.0,
}

# Escalation thresholds, elapsed inactivity
ALERT_THRESHOLDS = {
    AlertLevel.CAUTION: timedelta(minutes=30),
    AlertLevel.WARNING: timedelta(hours=1),
    AlertLevel.DANGER: timedelta(hours=2),
    AlertLevel.EMERGENCY: timedelta(hours=72),
}

# Re-notification interval per level, zero means notify once per escalation
REPEAT_INTERVALS = {
    AlertLevel.CAUTION: timedelta(0),
    AlertLevel.WARNING: timedelta(0),
    AlertLevel.DANGER: timedelta(hours=6),
    AlertLevel.EMERGENCY: timedelta(hours=3),
}

# Notification delivery
RETRY_MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 30.0
CHANNEL_TIMEOUT_SECONDS = 10.0

# Scheduling
MONITOR_INTERVAL_SECONDS = 60.0
HOUR_TICK_INTERVAL_SECONDS = 30.0

# Sleep window, local hours. Caution and warning alerts are held back inside it.
# Equal start and end disables the window.
SLEEP_START_HOUR = 22
SLEEP_END_HOUR = 8

TIMEZONE = "Asia/Seoul"
SELF_SUBJECT_ID = "self"

# Database
DATABASE_URL = "sqlite:///lonelycare.db"

# API settings
API_HOST = "0.0.0.0"
API_PORT = 8000

LOG_LEVEL = "INFO"


class ClassifierSettings(BaseModel):
    """Thresholds for the motion classifier"""
    motion_threshold: float = MOTION_THRESHOLD
    low_threshold: float = LOW_THRESHOLD
    high_threshold: float = HIGH_THRESHOLD
    gyroscope_threshold: float = GYROSCOPE_THRESHOLD
    max_consecutive_high: int = MAX_CONSECUTIVE_HIGH
    vibration_sample_count: int = VIBRATION_SAMPLE_COUNT
    vibration_min_samples: int = VIBRATION_MIN_SAMPLES
    vibration_high_ratio: float = VIBRATION_HIGH_RATIO
    vibration_max_interval_std_ms: float = VIBRATION_MAX_INTERVAL_STD_MS
    vibration_max_mean_interval_ms: float = VIBRATION_MAX_MEAN_INTERVAL_MS
    vibration_buffer: timedelta = timedelta(seconds=VIBRATION_BUFFER_SECONDS)
    activity_window: timedelta = timedelta(seconds=ACTIVITY_WINDOW_SECONDS)
    accelerometer_only_limit: int = ACCELEROMETER_ONLY_LIMIT
    debounce_intervals: Dict[ActivitySource, timedelta] = Field(
        default_factory=lambda: {source: timedelta(seconds=seconds)
                                 for source, seconds in DEBOUNCE_SECONDS.items()}
    )


class MonitorSettings(BaseModel):
    """All recognised options of the monitoring core"""
    hourly_cap: int = Field(default=HOURLY_CAP, ge=0)
    history_retention_days: int = Field(default=HISTORY_RETENTION_DAYS, ge=0)
    alert_thresholds: Dict[AlertLevel, timedelta] = Field(default_factory=lambda: dict(ALERT_THRESHOLDS))
    repeat_intervals: Dict[AlertLevel, timedelta] = Field(default_factory=lambda: dict(REPEAT_INTERVALS))
    retry_max_attempts: int = Field(default=RETRY_MAX_ATTEMPTS, ge=0)
    retry_delay: timedelta = timedelta(seconds=RETRY_DELAY_SECONDS)
    channel_timeout: timedelta = timedelta(seconds=CHANNEL_TIMEOUT_SECONDS)
    monitor_interval: timedelta = timedelta(seconds=MONITOR_INTERVAL_SECONDS)
    hour_tick_interval: timedelta = timedelta(seconds=HOUR_TICK_INTERVAL_SECONDS)
    sleep_start_hour: int = Field(default=SLEEP_START_HOUR, ge=0, le=23)
    sleep_end_hour: int = Field(default=SLEEP_END_HOUR, ge=0, le=23)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    timezone: str = TIMEZONE
    self_subject_id: str = SELF_SUBJECT_ID
    database_url: str = DATABASE_URL
    serial_port: str = SERIAL_PORT
    baud_rate: int = BAUD_RATE
    api_host: str = API_HOST
    api_port: int = API_PORT
    log_level: str = LOG_LEVEL


def _env_seconds(name: str, default: float) -> timedelta:
    return timedelta(seconds=float(os.getenv(name, str(default))))


def _env_level_durations(prefix: str, defaults: Dict[AlertLevel, timedelta]) -> Dict[AlertLevel, timedelta]:
    """Read per-level durations such as ALERT_THRESHOLD_DANGER_SECONDS."""
    durations = {}
    for level, default in defaults.items():
        name = f"{prefix}_{level.value.upper()}_SECONDS"
        durations[level] = _env_seconds(name, default.total_seconds())
    return durations


def load_settings(overrides: Optional[dict] = None) -> MonitorSettings:
    """Load settings from environment variables with module defaults."""
    debounce = {
        source: _env_seconds(f"DEBOUNCE_{source.value.upper()}_SECONDS", seconds)
        for source, seconds in DEBOUNCE_SECONDS.items()
    }
    classifier = ClassifierSettings(
        motion_threshold=float(os.getenv("MOTION_THRESHOLD", str(MOTION_THRESHOLD))),
        high_threshold=float(os.getenv("VIBRATION_HIGH_THRESHOLD", str(HIGH_THRESHOLD))),
        vibration_high_ratio=float(os.getenv("VIBRATION_HIGH_RATIO", str(VIBRATION_HIGH_RATIO))),
        vibration_max_interval_std_ms=float(os.getenv("VIBRATION_MAX_INTERVAL_STD_MS",
                                                      str(VIBRATION_MAX_INTERVAL_STD_MS))),
        vibration_max_mean_interval_ms=float(os.getenv("VIBRATION_MAX_MEAN_INTERVAL_MS",
                                                       str(VIBRATION_MAX_MEAN_INTERVAL_MS))),
        debounce_intervals=debounce,
    )

    values = dict(
        hourly_cap=int(os.getenv("HOURLY_CAP", str(HOURLY_CAP))),
        history_retention_days=int(os.getenv("HISTORY_RETENTION_DAYS", str(HISTORY_RETENTION_DAYS))),
        alert_thresholds=_env_level_durations("ALERT_THRESHOLD", ALERT_THRESHOLDS),
        repeat_intervals=_env_level_durations("REPEAT_INTERVAL", REPEAT_INTERVALS),
        retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", str(RETRY_MAX_ATTEMPTS))),
        retry_delay=_env_seconds("RETRY_DELAY_SECONDS", RETRY_DELAY_SECONDS),
        channel_timeout=_env_seconds("CHANNEL_TIMEOUT_SECONDS", CHANNEL_TIMEOUT_SECONDS),
        monitor_interval=_env_seconds("MONITOR_INTERVAL_SECONDS", MONITOR_INTERVAL_SECONDS),
        hour_tick_interval=_env_seconds("HOUR_TICK_INTERVAL_SECONDS", HOUR_TICK_INTERVAL_SECONDS),
        sleep_start_hour=int(os.getenv("SLEEP_START_HOUR", str(SLEEP_START_HOUR))),
        sleep_end_hour=int(os.getenv("SLEEP_END_HOUR", str(SLEEP_END_HOUR))),
        classifier=classifier,
        timezone=os.getenv("TIMEZONE", TIMEZONE),
        self_subject_id=os.getenv("SELF_SUBJECT_ID", SELF_SUBJECT_ID),
        database_url=os.getenv("DATABASE_URL", DATABASE_URL),
        serial_port=os.getenv("SERIAL_PORT", SERIAL_PORT),
        baud_rate=int(os.getenv("BAUD_RATE", str(BAUD_RATE))),
        api_host=os.getenv("API_HOST", API_HOST),
        api_port=int(os.getenv("API_PORT", str(API_PORT))),
        log_level=os.getenv("LOG_LEVEL", LOG_LEVEL),
    )
    if overrides:
        values.update(overrides)
    return MonitorSettings(**values)


# Global settings instance
settings = load_settings()
