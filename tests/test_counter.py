"""Tests for HourlyActivityCounter caps, hour boundaries and history."""

from __future__ import annotations

from datetime import timedelta

from lonelycare.counter import HourlyActivityCounter
from lonelycare.repository import InMemoryRepository

from conftest import FlakyRepository, at


def make_counter(cap=10, now=None, repository=None):
    return HourlyActivityCounter(cap=cap, retention_days=7, repository=repository,
                                 timezone="Asia/Seoul", now=now or at(9, 15))


def test_bucket_is_hour_aligned():
    counter = make_counter(now=at(9, 15, 42))
    assert counter.bucket.hour_key == at(9, 0)
    assert counter.count == 0
    assert not counter.is_paused


def test_record_activity_increments():
    counter = make_counter()
    assert counter.record_activity(at(9, 16))
    assert counter.record_activity(at(9, 17))
    assert counter.count == 2


def test_cap_pauses_counting_for_rest_of_hour():
    counter = make_counter(cap=3)
    results = [counter.record_activity(at(9, 20 + i)) for i in range(5)]

    assert results == [True, True, True, False, False]
    assert counter.count == 3
    assert counter.is_paused


def test_zero_cap_disables_counting():
    counter = make_counter(cap=0)
    assert counter.is_paused
    assert not counter.record_activity(at(9, 20))
    assert counter.count == 0


def test_tick_in_same_hour_is_noop():
    counter = make_counter()
    counter.record_activity(at(9, 20))
    assert not counter.tick(at(9, 59, 59))
    assert counter.count == 1


def test_tick_after_skipped_hours_creates_current_bucket_only():
    counter = make_counter()
    counter.record_activity(at(9, 20))

    assert counter.tick(at(12, 5))

    assert counter.bucket.hour_key == at(12, 0)
    assert counter.count == 0
    history = counter.history()
    assert len(history) == 1
    assert history[0].hour_key == at(9, 0)
    assert history[0].count == 1


def test_cap_reached_at_boundary_does_not_block_next_hour():
    counter = make_counter(cap=2)
    counter.record_activity(at(9, 58))
    counter.record_activity(at(9, 59, 59))
    assert counter.is_paused

    assert counter.record_activity(at(10, 0))
    assert counter.count == 1
    assert not counter.is_paused


def test_backward_clock_does_not_reset_or_unpause():
    counter = make_counter(cap=1)
    counter.record_activity(at(9, 20))
    assert counter.is_paused

    assert not counter.tick(at(8, 30))
    assert counter.bucket.hour_key == at(9, 0)
    assert counter.is_paused
    assert counter.history() == []


def test_history_is_bounded_to_retention_window():
    start = at(0, 10, day=1)
    counter = make_counter(now=start)
    for hour in range(1, 24 * 9):
        now = start + timedelta(hours=hour)
        counter.record_activity(now)

    now = start + timedelta(hours=24 * 9 - 1)
    history = counter.history()
    assert len(history) <= 24 * 7
    assert all(entry.hour_key > now - timedelta(days=7) for entry in history)


def test_history_is_persisted_and_pruned():
    repository = InMemoryRepository()
    start = at(0, 10, day=1)
    counter = make_counter(now=start, repository=repository)
    for hour in range(1, 24 * 8 + 2):
        counter.tick(start + timedelta(hours=hour))

    assert len(repository.load_history()) == len(counter.history())
    assert repository.load_hour_bucket().hour_key == counter.bucket.hour_key


def test_load_resumes_saved_bucket():
    repository = InMemoryRepository()
    first = make_counter(repository=repository)
    for minute in range(20, 24):
        first.record_activity(at(9, minute))

    resumed = make_counter(now=at(9, 30), repository=repository)
    resumed.load(at(9, 30))
    assert resumed.count == 4

    rolled = make_counter(now=at(11, 5), repository=repository)
    rolled.load(at(11, 5))
    assert rolled.count == 0
    assert rolled.history()[-1].count == 4


def test_total_for_last_hours():
    counter = make_counter()
    counter.record_activity(at(9, 20))
    counter.record_activity(at(10, 20))
    counter.record_activity(at(10, 21))
    counter.record_activity(at(11, 20))

    assert counter.total_for_last_hours(1) == 3
    assert counter.total_for_last_hours(5) == 4


def test_failed_save_keeps_in_memory_count():
    repository = FlakyRepository()
    counter = make_counter(repository=repository)
    repository.down = True

    assert counter.record_activity(at(9, 20))
    assert counter.count == 1


def test_failed_archive_still_rolls_hour_once():
    repository = FlakyRepository()
    counter = make_counter(cap=1, repository=repository)
    counter.record_activity(at(9, 20))
    assert counter.is_paused
    repository.down = True

    assert counter.tick(at(10, 1))
    assert not counter.tick(at(10, 2))
    assert not counter.tick(at(10, 3))

    assert counter.bucket.hour_key == at(10)
    assert not counter.is_paused
    assert [(e.hour_key, e.count) for e in counter.history()] == [(at(9), 1)]
    assert counter.record_activity(at(10, 4))
