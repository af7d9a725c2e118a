"""Tests for NotificationDispatcher fan-out, retry and deduplication."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from lonelycare.channels import CallbackChannel, LoggingChannel, NotificationChannel
from lonelycare.dispatcher import NotificationDispatcher
from lonelycare.models import AlertLevel, NotificationChannelKind
from lonelycare.retry import RetryPolicy


class ScriptedChannel(NotificationChannel):
    """Returns scripted results in order; exceptions in the script are raised."""

    def __init__(self, name, results, delay=0.0):
        super().__init__(name, NotificationChannelKind.PUSH)
        self.results = list(results)
        self.delay = delay
        self.calls = 0

    async def send(self, subject_id, level, message):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results[min(self.calls, len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


class Recorder:
    def __init__(self):
        self.succeeded = []
        self.failed = []

    def on_success(self, attempt):
        self.succeeded.append(attempt)

    def on_failure(self, attempt):
        self.failed.append(attempt)


def make_dispatcher(channels, recorder, max_retries=3, delay=timedelta(0),
                    timeout=timedelta(seconds=1), is_monitored=None):
    return NotificationDispatcher(channels,
                                  retry_policy=RetryPolicy(max_retries, delay),
                                  channel_timeout=timeout,
                                  on_success=recorder.on_success,
                                  on_failure=recorder.on_failure,
                                  is_monitored=is_monitored)


def test_at_least_one_channel_success():
    recorder = Recorder()
    channels = [
        ScriptedChannel("push", [RuntimeError("push gateway down")]),
        ScriptedChannel("audible", [OSError("no audio device")]),
        ScriptedChannel("local", [True]),
    ]
    dispatcher = make_dispatcher(channels, recorder)

    attempt = asyncio.run(dispatcher.dispatch("friend-1", AlertLevel.DANGER, "check on friend-1"))

    assert attempt.succeeded
    assert attempt.channels_attempted == {"push", "audible", "local"}
    assert attempt.channels_succeeded == {"local"}
    assert len(recorder.succeeded) == 1
    assert dispatcher.channel_failures == {"push": 1, "audible": 1}
    assert not dispatcher.is_in_flight("friend-1", AlertLevel.DANGER)


def test_false_result_counts_as_failure():
    recorder = Recorder()
    dispatcher = make_dispatcher([ScriptedChannel("push", [False])], recorder, max_retries=0)

    attempt = asyncio.run(dispatcher.dispatch("friend-1", AlertLevel.CAUTION, "msg"))

    assert not attempt.succeeded
    assert recorder.succeeded == []
    assert len(recorder.failed) == 1


def test_retry_exhaustion_drops_attempt():
    recorder = Recorder()
    channels = [ScriptedChannel("push", [False]), ScriptedChannel("haptic", [RuntimeError("x")])]
    dispatcher = make_dispatcher(channels, recorder, max_retries=3)

    async def scenario():
        first = await dispatcher.dispatch("friend-1", AlertLevel.EMERGENCY, "msg")
        assert dispatcher.is_in_flight("friend-1", AlertLevel.EMERGENCY)
        await dispatcher.drain()
        return first

    first = asyncio.run(scenario())

    assert not first.succeeded
    assert channels[0].calls == 4
    assert channels[1].calls == 4
    assert recorder.succeeded == []
    assert len(recorder.failed) == 1
    assert recorder.failed[0].attempt_number == 4
    assert dispatcher.pending_retries == 0
    assert not dispatcher.is_in_flight("friend-1", AlertLevel.EMERGENCY)


def test_retry_succeeds_on_later_attempt():
    recorder = Recorder()
    flaky = ScriptedChannel("push", [False, False, True])
    dispatcher = make_dispatcher([flaky], recorder)

    async def scenario():
        await dispatcher.dispatch("friend-1", AlertLevel.DANGER, "msg")
        await dispatcher.drain()

    asyncio.run(scenario())

    assert flaky.calls == 3
    assert len(recorder.succeeded) == 1
    assert recorder.succeeded[0].attempt_number == 3
    assert recorder.failed == []


def test_duplicate_dispatch_is_skipped_while_in_flight():
    recorder = Recorder()
    slow = ScriptedChannel("push", [True], delay=0.05)
    dispatcher = make_dispatcher([slow], recorder)

    async def scenario():
        return await asyncio.gather(
            dispatcher.dispatch("friend-1", AlertLevel.WARNING, "msg"),
            dispatcher.dispatch("friend-1", AlertLevel.WARNING, "msg"),
            dispatcher.dispatch("friend-1", AlertLevel.DANGER, "msg"),
        )

    first, duplicate, other_level = asyncio.run(scenario())

    assert first.succeeded
    assert duplicate is None
    assert other_level.succeeded
    assert slow.calls == 2


def test_slow_channel_times_out_without_blocking_others():
    recorder = Recorder()
    slow = ScriptedChannel("push", [True], delay=1.0)
    fast = ScriptedChannel("local", [True])
    dispatcher = make_dispatcher([slow, fast], recorder, timeout=timedelta(milliseconds=50))

    attempt = asyncio.run(dispatcher.dispatch("friend-1", AlertLevel.DANGER, "msg"))

    assert attempt.channels_succeeded == {"local"}
    assert dispatcher.channel_failures == {"push": 1}


def test_cancel_drops_pending_retries():
    recorder = Recorder()
    failing = ScriptedChannel("push", [False])
    dispatcher = make_dispatcher([failing], recorder, delay=timedelta(seconds=30))

    async def scenario():
        await dispatcher.dispatch("friend-1", AlertLevel.DANGER, "msg")
        assert dispatcher.pending_retries == 1
        assert dispatcher.cancel("friend-1") == 1
        await asyncio.wait_for(dispatcher.drain(), timeout=1)

    asyncio.run(scenario())

    assert failing.calls == 1
    assert recorder.failed == []
    assert dispatcher.pending_retries == 0


def test_unmonitored_subject_stops_retrying():
    recorder = Recorder()
    failing = ScriptedChannel("push", [False])
    monitored = {"friend-1": True}
    dispatcher = make_dispatcher([failing], recorder,
                                 is_monitored=lambda subject_id: monitored.get(subject_id, False))

    async def scenario():
        await dispatcher.dispatch("friend-1", AlertLevel.DANGER, "msg")
        monitored["friend-1"] = False
        await dispatcher.drain()

    asyncio.run(scenario())

    assert failing.calls == 1
    assert recorder.failed == []


def test_callback_and_logging_channels():
    received = []

    async def async_callback(subject_id, level, message):
        received.append((subject_id, level, message))
        return True

    recorder = Recorder()
    channels = [
        CallbackChannel("sync", NotificationChannelKind.HAPTIC, lambda *args: False),
        CallbackChannel("async", NotificationChannelKind.PUSH, async_callback),
        LoggingChannel(),
    ]
    dispatcher = make_dispatcher(channels, recorder)

    attempt = asyncio.run(dispatcher.dispatch("friend-1", AlertLevel.EMERGENCY, "help"))

    assert attempt.channels_succeeded == {"async", "log"}
    assert received == [("friend-1", AlertLevel.EMERGENCY, "help")]


def test_cancel_from_worker_thread_wakes_retry():
    recorder = Recorder()
    failing = ScriptedChannel("push", [False])
    dispatcher = make_dispatcher([failing], recorder, delay=timedelta(seconds=30))

    async def scenario():
        await dispatcher.dispatch("friend-1", AlertLevel.DANGER, "msg")
        loop = asyncio.get_running_loop()
        cancelled = await loop.run_in_executor(None, dispatcher.cancel, "friend-1")
        assert cancelled == 1
        await asyncio.wait_for(dispatcher.drain(), timeout=1)

    asyncio.run(scenario())

    assert failing.calls == 1
    assert recorder.failed == []
    assert dispatcher.pending_retries == 0
