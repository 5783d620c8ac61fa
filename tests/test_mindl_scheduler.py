import asyncio
from datetime import date, datetime, time

import pytest
from mindl.mindl_analyzers import DailyTimeTrigger, DateTimeTrigger, DateTrigger, RefreshAnalysis
from mindl.mindl_scheduler import DEFAULT_CHECK_INTERVAL, RefreshScheduler


def at(hour, minute=0, day=15):
    return datetime(2026, 1, day, hour, minute)


def make_scheduler(**kwargs):
    fired = []
    scheduler = RefreshScheduler(lambda key, note_id: fired.append((key, note_id)), **kwargs)
    return scheduler, fired


# --- Registration Tests ---

def test_register_and_unregister():
    scheduler, _ = make_scheduler()
    assert scheduler.register("0:0", "n1", [DailyTimeTrigger(time(9, 0))], now=at(8))
    assert scheduler.register("1:0", "n1", [DailyTimeTrigger(time(10, 0))], now=at(8))
    assert scheduler.register("0:0", "n2", [DailyTimeTrigger(time(11, 0))], now=at(8))
    assert scheduler.registration_count == 2
    scheduler.unregister("1:0")
    assert scheduler.registered_keys() == ["0:0"]
    scheduler.clear_all()
    assert scheduler.registration_count == 0


def test_unregister_note_drops_all_its_directives():
    scheduler, _ = make_scheduler()
    scheduler.register("0:0", "n1", [DailyTimeTrigger(time(9, 0))], now=at(8))
    scheduler.register("3:2", "n1", [DailyTimeTrigger(time(9, 0))], now=at(8))
    scheduler.register("0:0b", "n2", [DailyTimeTrigger(time(9, 0))], now=at(8))
    scheduler.unregister_note("n1")
    assert scheduler.registered_keys() == ["0:0b"]


def test_analysis_results_are_accepted():
    scheduler, _ = make_scheduler()
    ok = RefreshAnalysis.success_with([DailyTimeTrigger(time(9, 0))])
    assert scheduler.register("k", "n", ok, now=at(8))
    assert not scheduler.register("bad", "n", RefreshAnalysis.failure("nope"), now=at(8))
    assert scheduler.registered_keys() == ["k"]


def test_empty_triggers_remove_an_existing_registration():
    scheduler, _ = make_scheduler()
    scheduler.register("k", "n", [DailyTimeTrigger(time(9, 0))], now=at(8))
    assert not scheduler.register("k", "n", [], now=at(8))
    assert scheduler.registration_count == 0


def test_check_interval_from_environment(monkeypatch):
    monkeypatch.setenv("MINDL_REFRESH_INTERVAL", "5")
    assert RefreshScheduler(lambda k, n: None).check_interval == 5.0
    monkeypatch.setenv("MINDL_REFRESH_INTERVAL", "soon")
    assert RefreshScheduler(lambda k, n: None).check_interval == DEFAULT_CHECK_INTERVAL
    assert RefreshScheduler(lambda k, n: None, check_interval=1.5).check_interval == 1.5


# --- Check Tests ---

def test_daily_trigger_fires_once_per_crossing():
    scheduler, fired = make_scheduler()
    scheduler.register("k", "n1", [DailyTimeTrigger(time(9, 0))], now=at(8))
    assert scheduler.check_triggers(at(8, 30)) == []
    assert scheduler.check_triggers(at(9, 1)) == ["k"]
    assert scheduler.check_triggers(at(9, 2)) == []
    assert fired == [("k", "n1")]
    assert scheduler.check_triggers(at(9, 0, day=16)) == ["k"]
    assert scheduler.registration_count == 1


def test_several_triggers_in_one_window_fire_once():
    scheduler, fired = make_scheduler()
    triggers = [DailyTimeTrigger(time(9, 0)), DailyTimeTrigger(time(17, 0))]
    scheduler.register("k", "n1", triggers, now=at(8))
    assert scheduler.check_triggers(at(18)) == ["k"]
    assert fired == [("k", "n1")]


def test_one_shot_trigger_is_removed_after_firing():
    scheduler, fired = make_scheduler()
    scheduler.register("k", "n1", [DateTrigger(date(2026, 3, 1))], now=datetime(2026, 2, 28, 12, 0))
    assert scheduler.check_triggers(datetime(2026, 2, 28, 23, 0)) == []
    assert scheduler.check_triggers(datetime(2026, 3, 1, 0, 5)) == ["k"]
    assert scheduler.registration_count == 0
    assert fired == [("k", "n1")]


def test_past_one_shot_trigger_expires_without_firing():
    scheduler, fired = make_scheduler()
    scheduler.register("k", "n1", [DateTimeTrigger(datetime(2026, 1, 1, 8, 0))], now=at(8))
    assert scheduler.check_triggers(at(9)) == []
    assert scheduler.registration_count == 0
    assert fired == []


def test_next_trigger_time():
    scheduler, _ = make_scheduler()
    assert scheduler.next_trigger_time() is None
    scheduler.register("a", "n", [DailyTimeTrigger(time(17, 0))], now=at(8))
    scheduler.register("b", "n", [DailyTimeTrigger(time(9, 30))], now=at(8))
    assert scheduler.next_trigger_time() == at(9, 30)


def test_clock_is_used_when_now_is_omitted():
    scheduler, fired = make_scheduler(clock=lambda: at(12))
    scheduler.register("k", "n1", [DailyTimeTrigger(time(11, 0))], now=at(8))
    assert scheduler.check_triggers() == ["k"]


# --- Lifecycle Tests ---

@pytest.mark.asyncio
async def test_background_task_checks_and_stops():
    scheduler, fired = make_scheduler(check_interval=0.01, clock=lambda: at(9, 30))
    scheduler.register("k", "n1", [DailyTimeTrigger(time(9, 0))], now=at(8))
    scheduler.start()
    assert scheduler.is_running
    await asyncio.sleep(0.1)
    await scheduler.stop()
    assert not scheduler.is_running
    assert fired == [("k", "n1")]


@pytest.mark.asyncio
async def test_stop_without_start_is_harmless():
    scheduler, _ = make_scheduler()
    await scheduler.stop()
    assert not scheduler.is_running


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_the_loop():
    seen = []

    def explode(key, note_id):
        seen.append(key)
        raise RuntimeError("host callback failed")

    scheduler = RefreshScheduler(explode, check_interval=0.01, clock=lambda: at(9, 30))
    scheduler.register("first", "n1", [DailyTimeTrigger(time(9, 0))], now=at(8))
    scheduler.start()
    await asyncio.sleep(0.05)
    assert seen == ["first"]
    assert scheduler.is_running

    scheduler.register("second", "n1", [DailyTimeTrigger(time(9, 15))], now=at(9))
    await asyncio.sleep(0.05)
    assert seen == ["first", "second"]
    assert scheduler.is_running

    await scheduler.stop()
    assert not scheduler.is_running
