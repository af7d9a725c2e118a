"""
Multi-channel notification dispatcher

Fans a notification out to every channel concurrently, succeeds when at least
one channel delivers, and retries total failures in the background.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from lonelycare.channels import NotificationChannel
from lonelycare.logging_config import get_logger
from lonelycare.models import AlertLevel, NotificationAttempt
from lonelycare.retry import CancellationToken, RetryPolicy
from lonelycare.utils import now_local

logger = get_logger(__name__)

AttemptHook = Callable[[NotificationAttempt], None]


class NotificationDispatcher:
    """
    Delivers notifications with at-least-one-of-many semantics.

    Hooks:
        on_success(attempt): called once a logical notification is delivered
        on_failure(attempt): called when retries are exhausted
        is_monitored(subject_id): checked before each retry
    """

    def __init__(self, channels: Iterable[NotificationChannel],
                 retry_policy: Optional[RetryPolicy] = None,
                 channel_timeout: timedelta = timedelta(seconds=10),
                 on_success: Optional[AttemptHook] = None,
                 on_failure: Optional[AttemptHook] = None,
                 is_monitored: Optional[Callable[[str], bool]] = None,
                 clock: Callable[[], datetime] = now_local):
        self.channels: List[NotificationChannel] = list(channels)
        self.retry_policy = retry_policy or RetryPolicy()
        self.channel_timeout = channel_timeout
        self.on_success = on_success
        self.on_failure = on_failure
        self.is_monitored = is_monitored
        self.clock = clock

        self._in_flight: Set[Tuple[str, AlertLevel]] = set()
        self._retry_tasks: Dict[Tuple[str, AlertLevel], asyncio.Task] = {}
        self._tokens: Dict[Tuple[str, AlertLevel], CancellationToken] = {}

        # Counters for status reporting
        self.channel_failures: Dict[str, int] = {}
        self.delivered_count = 0
        self.failed_count = 0

    def is_in_flight(self, subject_id: str, level: AlertLevel) -> bool:
        return (subject_id, level) in self._in_flight

    @property
    def pending_retries(self) -> int:
        return len(self._retry_tasks)

    async def dispatch(self, subject_id: str, level: AlertLevel,
                       message: str) -> Optional[NotificationAttempt]:
        """
        Attempt delivery now and schedule retries on total failure.

        Returns the first attempt, or None if the same (subject, level) is
        already in flight.
        """
        key = (subject_id, level)
        if key in self._in_flight:
            logger.info(f"Notification for {subject_id}/{level.value} already in flight, skipping")
            return None

        self._in_flight.add(key)
        try:
            attempt = await self._attempt(subject_id, level, message, attempt_number=1)
        except Exception:
            self._in_flight.discard(key)
            raise

        if attempt.succeeded:
            self._in_flight.discard(key)
            self._delivered(attempt)
            return attempt

        if self.retry_policy.max_retries <= 0:
            self._in_flight.discard(key)
            self._exhausted(attempt)
            return attempt

        logger.warning(f"All channels failed for {subject_id}/{level.value}, queued for retry")
        token = CancellationToken()
        self._tokens[key] = token
        self._retry_tasks[key] = asyncio.create_task(self._retry(attempt, token))
        return attempt

    async def _retry(self, first: NotificationAttempt, token: CancellationToken) -> None:
        key = (first.subject_id, first.alert_level)
        last = first

        async def operation(retry_number: int) -> NotificationAttempt:
            nonlocal last
            logger.info(f"Retrying notification for {first.subject_id}/{first.alert_level.value} "
                        f"({retry_number}/{self.retry_policy.max_retries})")
            last = await self._attempt(first.subject_id, first.alert_level, first.message,
                                       attempt_number=retry_number + 1)
            return last

        def still_monitored() -> bool:
            return self.is_monitored is None or self.is_monitored(first.subject_id)

        try:
            result = await self.retry_policy.run(operation, lambda a: a.succeeded,
                                                 token=token, should_continue=still_monitored)
            if result is not None and result.succeeded:
                self._delivered(result)
            elif token.cancelled or not still_monitored():
                logger.info(f"Dropped retries for {first.subject_id}/{first.alert_level.value}")
            else:
                self._exhausted(last)
        except asyncio.CancelledError:
            logger.info(f"Retry task cancelled for {first.subject_id}/{first.alert_level.value}")
            raise
        except Exception as e:
            logger.error(f"Retry loop failed for {first.subject_id}/{first.alert_level.value}: {e}")
        finally:
            self._in_flight.discard(key)
            self._retry_tasks.pop(key, None)
            self._tokens.pop(key, None)

    async def _attempt(self, subject_id: str, level: AlertLevel, message: str,
                       attempt_number: int) -> NotificationAttempt:
        attempt = NotificationAttempt(
            subject_id=subject_id,
            alert_level=level,
            message=message,
            attempt_number=attempt_number,
            created_at=self.clock(),
        )
        attempt.channels_attempted = {channel.name for channel in self.channels}

        results = await asyncio.gather(
            *(self._send(channel, subject_id, level, message) for channel in self.channels)
        )
        attempt.channels_succeeded = {
            channel.name for channel, ok in zip(self.channels, results) if ok
        }

        logger.debug(f"Attempt {attempt_number} for {subject_id}/{level.value}: "
                     f"{len(attempt.channels_succeeded)}/{len(self.channels)} channels")
        return attempt

    async def _send(self, channel: NotificationChannel, subject_id: str,
                    level: AlertLevel, message: str) -> bool:
        """Send on one channel. Errors and timeouts count as failure and stay here."""
        try:
            ok = await asyncio.wait_for(channel.send(subject_id, level, message),
                                        timeout=self.channel_timeout.total_seconds())
        except asyncio.TimeoutError:
            logger.warning(f"Channel {channel.name} timed out after "
                           f"{self.channel_timeout.total_seconds():.1f}s")
            ok = False
        except Exception as e:
            logger.warning(f"Channel {channel.name} failed: {e}")
            ok = False

        if not ok:
            self.channel_failures[channel.name] = self.channel_failures.get(channel.name, 0) + 1
        return bool(ok)

    def _delivered(self, attempt: NotificationAttempt) -> None:
        self.delivered_count += 1
        logger.info(f"Notification delivered for {attempt.subject_id}/{attempt.alert_level.value}: "
                    f"{len(attempt.channels_succeeded)}/{len(attempt.channels_attempted)} channels "
                    f"(attempt {attempt.attempt_number})")
        if self.on_success is not None:
            try:
                self.on_success(attempt)
            except Exception as e:
                logger.error(f"on_success hook failed for {attempt.subject_id}: {e}")

    def _exhausted(self, attempt: NotificationAttempt) -> None:
        self.failed_count += 1
        logger.error(f"Notification permanently failed for {attempt.subject_id}/"
                     f"{attempt.alert_level.value} after {attempt.attempt_number} attempts")
        if self.on_failure is not None:
            try:
                self.on_failure(attempt)
            except Exception as e:
                logger.error(f"on_failure hook failed for {attempt.subject_id}: {e}")

    def cancel(self, subject_id: str) -> int:
        """Cancel pending retries for a subject. Returns how many were cancelled."""
        cancelled = 0
        for key, token in list(self._tokens.items()):
            if key[0] == subject_id:
                token.cancel()
                cancelled += 1
        return cancelled

    async def drain(self) -> None:
        """Wait for every pending retry task to finish."""
        while self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel all pending retries and wait for them to stop."""
        for token in list(self._tokens.values()):
            token.cancel()
        await self.drain()
