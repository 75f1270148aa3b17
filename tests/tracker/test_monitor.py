import asyncio
import random

from src.tracker.errors import RequestApiError
from src.tracker.monitor import MonitorMode, PollingConfig
from fakes import POLLING, detail, summary


def test_start_monitor_on_completed_request_is_noop(tracker, api):
    async def scenario():
        tracker.registry.upsert(summary("a", "completed"))
        assert tracker.monitor.start_monitor("a") is False
        await tracker.scheduler.drain()

    asyncio.run(scenario())
    assert not tracker.monitor.is_monitoring("a")
    assert api.status_calls["a"] == 0


def test_start_monitor_on_unknown_request_is_noop(tracker, api):
    async def scenario():
        assert tracker.monitor.start_monitor("missing") is False

    asyncio.run(scenario())
    assert tracker.monitor.tracked_ids() == []


def test_start_monitor_is_idempotent(tracker, scheduler, api):
    async def scenario():
        tracker.registry.upsert(summary("a", "PROCESSING"))
        assert tracker.monitor.start_monitor("a") is True
        assert tracker.monitor.start_monitor("a") is False
        await scheduler.drain()

    asyncio.run(scenario())
    assert api.status_calls["a"] == 1
    assert len(scheduler.pending_timers) == 1


def test_background_interval_grows_monotonically_within_bounds(tracker, scheduler):
    intervals, delays = [], []

    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        for _ in range(40):
            entry = tracker.monitor.entry("a")
            intervals.append(entry.current_interval)
            delays.append(entry.next_delay)
            await scheduler.advance()

    asyncio.run(scenario())
    assert intervals == sorted(intervals)
    assert all(1000 <= i <= 60000 for i in intervals)
    assert all(1000 <= d <= 60000 for d in delays)
    assert intervals[0] == 1200
    assert intervals[-1] == 60000


def test_jitter_never_leaves_bounds():
    config = PollingConfig(min_ms=1000, max_ms=1100, jitter_ratio=0.1)
    rng = random.Random(0)
    for interval in (1000, 1050, 1100):
        for _ in range(500):
            assert 1000 <= config.jittered(interval, rng) <= 1100


def test_next_interval_is_clamped():
    config = PollingConfig(**POLLING)
    assert config.next_interval(1000) == 1200
    assert config.next_interval(59000) == 60000
    assert config.next_interval(60000) == 60000
    assert PollingConfig(multiplier=0.5).next_interval(2000) == 2000


def test_promote_to_displayed_resets_interval_to_min(tracker, scheduler, api):
    api.details["a"] = detail("a")

    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        for _ in range(10):
            await scheduler.advance()
        assert tracker.monitor.entry("a").current_interval > 1000

        await tracker.cache.select("a")
        await scheduler.drain()
        entry = tracker.monitor.entry("a")
        assert entry.mode is MonitorMode.DISPLAYED
        assert entry.current_interval == 1000
        assert entry.next_delay == 1000

        for _ in range(5):
            await scheduler.advance()
            assert tracker.monitor.entry("a").next_delay == 1000

    asyncio.run(scenario())


def test_demote_restarts_background_with_backoff_reset(tracker, scheduler, api):
    api.details["a"] = detail("a")
    api.details["b"] = detail("b", "completed")

    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.registry.upsert(summary("b", "completed"))
        await tracker.cache.select("a")
        await scheduler.drain()
        assert tracker.monitor.mode_of("a") is MonitorMode.DISPLAYED

        await tracker.cache.select("b")
        await scheduler.drain()
        entry = tracker.monitor.entry("a")
        assert entry.mode is MonitorMode.BACKGROUND
        # the first background poll after demotion waits exactly the base interval
        assert entry.next_delay == 1000
        assert not tracker.monitor.is_monitoring("b")

    asyncio.run(scenario())


def test_background_monitor_refuses_displayed_request(tracker, scheduler, api):
    api.details["a"] = detail("a")

    async def scenario():
        tracker.registry.upsert(summary("a"))
        await tracker.cache.select("a")
        await scheduler.drain()
        assert tracker.monitor.start_monitor("a") is False

    asyncio.run(scenario())
    assert tracker.monitor.mode_of("a") is MonitorMode.DISPLAYED


def test_error_ceiling_stops_polling_until_reset(tracker, scheduler, api):
    api.status_script["a"] = [RequestApiError("upstream down", status_code=503)]

    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        for _ in range(10):
            await scheduler.advance()
        assert not tracker.monitor.is_monitoring("a")
        assert api.status_calls["a"] == 5
        assert scheduler.pending_timers == []

        # explicit refresh brings it back
        api.status_script["a"] = ["processing"]
        tracker.registry.upsert(summary("a"))
        tracker.facade.restart_polling()
        await scheduler.drain()

    asyncio.run(scenario())
    assert tracker.monitor.is_monitoring("a")
    assert api.status_calls["a"] == 6
    # a failed poll never touches the registry entry
    assert tracker.registry.get("a").status == "processing"


def test_non_retryable_error_stops_on_first_failure(tracker, scheduler, api):
    api.status_script["a"] = [RequestApiError("Request a not found.", status_code=404, retryable=False)]

    async def scenario():
        tracker.registry.upsert(summary("a", "processing"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        for _ in range(3):
            await scheduler.advance()

    asyncio.run(scenario())
    assert not tracker.monitor.is_monitoring("a")
    assert api.status_calls["a"] == 1
    assert scheduler.pending_timers == []
    assert tracker.registry.get("a").status == "processing"

def test_success_resets_error_counter(tracker, scheduler, api):
    boom = RequestApiError("timeout")
    api.status_script["a"] = [boom, boom, "pending", boom, "pending"]

    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        counts = [tracker.monitor.entry("a").consecutive_errors]
        for _ in range(4):
            await scheduler.advance()
            counts.append(tracker.monitor.entry("a").consecutive_errors)
        return counts

    assert asyncio.run(scenario()) == [1, 2, 0, 1, 0]


def test_terminal_status_stops_and_notifies(tracker, scheduler, api):
    api.status_script["a"] = ["processing", "completed"]
    finished = []
    tracker.monitor.subscribe(finished.append)

    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        await scheduler.advance()
        await scheduler.advance()

    asyncio.run(scenario())
    assert not tracker.monitor.is_monitoring("a")
    assert tracker.registry.get("a").status == "completed"
    assert [s.request_id for s in finished] == ["a"]
    assert api.status_calls["a"] == 2
    # background completion never opens a stream
    assert api.transports["a"] == []


def test_vanished_registry_entry_stops_monitor(tracker, scheduler, api):
    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        tracker.registry.replace_all([])
        await scheduler.advance()

    asyncio.run(scenario())
    assert not tracker.monitor.is_monitoring("a")
    assert api.status_calls["a"] == 1


def test_stop_monitor_cancels_timer_and_is_idempotent(tracker, scheduler, api):
    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        timer = scheduler.pending_timers[0]
        assert tracker.monitor.stop_monitor("a") is True
        assert timer.cancelled
        assert tracker.monitor.stop_monitor("a") is False
        assert tracker.monitor.stop_monitor("never-tracked") is False
        await scheduler.advance()

    asyncio.run(scenario())
    assert api.status_calls["a"] == 1


def test_stop_during_inflight_poll_discards_result(tracker, scheduler, api):
    async def scenario():
        release = asyncio.Event()
        original = api.get_request_status

        async def slow_status(request_id):
            await release.wait()
            return await original(request_id)

        api.get_request_status = slow_status
        api.status_script["a"] = ["completed"]
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await asyncio.sleep(0)
        tracker.monitor.stop_monitor("a")
        release.set()
        await scheduler.drain()

    asyncio.run(scenario())
    assert tracker.registry.get("a").status == "pending"
    assert scheduler.pending_timers == []


def test_reset_monitor_forces_base_interval(tracker, scheduler):
    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        await scheduler.drain()
        for _ in range(8):
            await scheduler.advance()
        old_timer = scheduler.pending_timers[0]
        assert old_timer.delay > 1.0

        assert tracker.monitor.reset_monitor("a") is True
        assert old_timer.cancelled
        new_timer = scheduler.pending_timers[0]
        assert new_timer.delay == 1.0
        assert tracker.monitor.entry("a").current_interval == 1000

        await scheduler.advance()
        # growth restarts from the base interval
        assert tracker.monitor.entry("a").current_interval == 1200

    asyncio.run(scenario())
    assert tracker.monitor.reset_monitor("never-tracked") is False


def test_reset_while_poll_queued_keeps_single_chain(tracker, scheduler, api):
    async def scenario():
        tracker.registry.upsert(summary("a"))
        tracker.monitor.start_monitor("a")
        tracker.monitor.reset_monitor("a")
        await scheduler.drain()

    asyncio.run(scenario())
    assert api.status_calls["a"] == 1
    assert len(scheduler.pending_timers) == 1
    assert scheduler.pending_timers[0].delay == 1.0


def test_displayed_completion_hands_off_to_stream(tracker, scheduler, api):
    api.details["a"] = detail("a", "processing")
    api.status_script["a"] = ["processing", "completed"]

    async def scenario():
        tracker.registry.upsert(summary("a", "processing"))
        await tracker.cache.select("a")
        await scheduler.drain()
        assert tracker.monitor.mode_of("a") is MonitorMode.DISPLAYED
        assert api.transports["a"] == []
        await scheduler.advance()

    asyncio.run(scenario())
    assert not tracker.monitor.is_monitoring("a")
    assert tracker.aggregator.is_streaming("a")
    assert len(api.transports["a"]) == 1
