import pytest

from matchstick.scheduler import ManualClock, SystemClock, TickScheduler


def test_manual_clock_moves_forward_only():
    clock = ManualClock(start_ms=1000)
    clock.advance(500)
    assert clock.now_ms() == 1500
    with pytest.raises(ValueError):
        clock.advance(-1)


def test_every_runs_once_per_interval(scheduler):
    calls = []
    scheduler.every(1000, lambda: calls.append(scheduler.now_ms()), name="tick")
    start = scheduler.now_ms()
    ran = scheduler.advance(3500)
    assert ran == 3
    assert calls == [start + 1000, start + 2000, start + 3000]


def test_call_later_runs_once(scheduler):
    calls = []
    scheduler.call_later(250, lambda: calls.append("fired"), name="once")
    scheduler.advance(200)
    assert calls == []
    scheduler.advance(100)
    scheduler.advance(1000)
    assert calls == ["fired"]


def test_jobs_run_in_due_order(scheduler):
    order = []
    scheduler.every(300, lambda: order.append("slow"), name="slow")
    scheduler.every(100, lambda: order.append("fast"), name="fast")
    scheduler.advance(300)
    # Ties at 300 ms run in scheduling order
    assert order == ["fast", "fast", "slow", "fast"]


def test_cancel_group_stops_jobs(scheduler):
    calls = []
    scheduler.every(100, lambda: calls.append("a"), name="a", group="market")
    scheduler.every(100, lambda: calls.append("b"), name="b", group="market")
    scheduler.every(100, lambda: calls.append("c"), name="c")
    assert scheduler.cancel_group("market") == 2
    scheduler.advance(100)
    assert calls == ["c"]
    assert [job.name for job in scheduler.pending_jobs()] == ["c"]


def test_failing_job_is_reported_and_loop_continues(scheduler, error_handler):
    calls = []

    def broken():
        raise RuntimeError("tick failed")

    scheduler.every(100, broken, name="broken")
    scheduler.every(100, lambda: calls.append(1), name="healthy")
    scheduler.advance(300)
    assert len(calls) == 3
    assert any("tick failed" in e.message for e in error_handler.get_error_history())


def test_run_pending_skips_missed_periodic_runs(clock, scheduler):
    calls = []
    scheduler.every(1000, lambda: calls.append(1), name="tick")
    clock.advance(10_000)
    assert scheduler.run_pending() == 1
    assert scheduler.next_due() == clock.now_ms() + 1000


def test_shutdown_drops_armed_one_shots(scheduler):
    calls = []
    scheduler.call_later(100, lambda: calls.append(1), name="timer")
    scheduler.shutdown()
    scheduler.advance(1000)
    assert calls == []
    assert scheduler.next_due() is None


def test_every_rejects_non_positive_interval(scheduler):
    with pytest.raises(ValueError):
        scheduler.every(0, lambda: None, name="bad")


def test_advance_requires_manual_clock():
    with pytest.raises(TypeError):
        TickScheduler(SystemClock()).advance(10)


def test_run_forever_stops_on_request(scheduler):
    calls = []

    def tick():
        calls.append(1)
        if len(calls) == 3:
            scheduler.stop()

    scheduler.every(100, tick, name="tick")
    # Fake sleep moves the manual clock instead of blocking
    scheduler.run_forever(sleep=lambda seconds: scheduler.clock.advance(int(seconds * 1000)))
    assert len(calls) == 3
    assert not scheduler.running
