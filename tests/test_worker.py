import threading
import time

import pytest

from core import SimulationConfig, SimulationCancelled, simulate
from worker import Complete, Failed, Progress, RunState, SimulationRunner


def _make_config(**overrides) -> SimulationConfig:
    values = dict(
        iterations=2_000,
        equities_pct=60,
        bonds_pct=30,
        cash_pct=10,
        starting_balance=1_000_000.0,
        annual_withdrawal=40_000.0,
        years_in_retirement=30,
        inflation_rate=3.0,
    )
    values.update(overrides)
    return SimulationConfig(**values)


def _run_to_end(runner, cfg):
    run_id = runner.start(cfg)
    assert runner.wait(timeout=120)
    return run_id, runner.poll()


def test_run_delivers_progress_then_one_completion():
    runner = SimulationRunner()
    run_id, events = _run_to_end(runner, _make_config())

    assert isinstance(events[-1], Complete)
    assert events[-1].kind == "complete"
    progress = [e.percent_complete for e in events[:-1]]
    assert all(isinstance(e, Progress) for e in events[:-1])
    assert all(b > a for a, b in zip(progress, progress[1:]))
    assert progress[-1] <= 100
    assert all(e.run_id == run_id for e in events)
    assert sum(isinstance(e, Complete) for e in events) == 1

    assert runner.state is RunState.COMPLETED
    assert runner.progress == 100
    assert runner.results is events[-1].results
    assert runner.poll() == []


def test_failure_is_reported_once():
    def broken(cfg, progress_callback=None, cancel_event=None, sampler=None):
        progress_callback(10)
        raise RuntimeError("boom")

    runner = SimulationRunner(simulate_fn=broken)
    _, events = _run_to_end(runner, _make_config())

    assert [e.kind for e in events] == ["progress", "error"]
    assert isinstance(events[-1], Failed)
    assert events[-1].message == "boom"
    assert runner.state is RunState.FAILED
    assert runner.error == "boom"
    assert runner.results is None
    assert runner.progress == 0


def test_new_run_discards_events_from_superseded_run():
    release = threading.Event()

    def slow_then_fast(cfg, progress_callback=None, cancel_event=None, sampler=None):
        if cfg.iterations == 1:
            # ignores cancellation and reports late
            release.wait(5)
            progress_callback(50)
            return "stale"
        return simulate(cfg, progress_callback=progress_callback, cancel_event=cancel_event)

    runner = SimulationRunner(simulate_fn=slow_then_fast)
    first = runner.start(_make_config(iterations=1))
    release.set()
    second = runner.start(_make_config(iterations=500))
    assert runner.wait(timeout=120)
    events = runner.poll()

    assert first != second
    assert events
    assert all(e.run_id == second for e in events)
    assert isinstance(events[-1], Complete)
    assert events[-1].results != "stale"


def test_cancel_stops_run_without_terminal_event():
    started = threading.Event()

    def waits_for_cancel(cfg, progress_callback=None, cancel_event=None, sampler=None):
        progress_callback(1)
        started.set()
        cancel_event.wait(5)
        raise SimulationCancelled("stopped")

    runner = SimulationRunner(simulate_fn=waits_for_cancel)
    runner.start(_make_config())
    assert started.wait(5)
    runner.cancel()

    assert runner.state is RunState.IDLE
    assert runner.poll() == []
    assert runner.results is None


def test_cancel_honours_timeout_when_run_ignores_it():
    gate = threading.Event()

    def ignores_cancel(cfg, progress_callback=None, cancel_event=None, sampler=None):
        gate.wait(10)
        progress_callback(99)
        return "late"

    runner = SimulationRunner(simulate_fn=ignores_cancel)
    runner.start(_make_config())
    began = time.monotonic()
    runner.cancel(timeout=0.2)
    elapsed = time.monotonic() - began

    assert elapsed < 2
    assert runner.state is RunState.IDLE
    assert runner.wait(timeout=0)

    gate.set()
    time.sleep(0.2)
    assert runner.poll() == []
    assert runner.results is None


def test_start_does_not_block_on_stuck_run():
    gate = threading.Event()

    def stuck_then_fast(cfg, progress_callback=None, cancel_event=None, sampler=None):
        if cfg.iterations == 1:
            gate.wait(10)
            return "late"
        return simulate(cfg, progress_callback=progress_callback, cancel_event=cancel_event)

    runner = SimulationRunner(simulate_fn=stuck_then_fast)
    runner.start(_make_config(iterations=1))
    began = time.monotonic()
    second = runner.start(_make_config(iterations=100))
    assert time.monotonic() - began < 2

    assert runner.wait(timeout=120)
    gate.set()
    events = runner.poll()
    assert all(e.run_id == second for e in events)
    assert isinstance(events[-1], Complete)


def test_real_run_cancels_cooperatively():
    runner = SimulationRunner()
    runner.start(_make_config(iterations=200_000))
    runner.cancel(timeout=60)

    assert runner.state is RunState.IDLE
    assert runner.poll() == []


def test_reset_clears_results():
    runner = SimulationRunner()
    _run_to_end(runner, _make_config(iterations=100))
    assert runner.results is not None

    runner.reset()

    assert runner.state is RunState.IDLE
    assert runner.results is None
    assert runner.run_id is None
    assert runner.progress == 0


def test_runner_uses_injected_sampler():
    runner = SimulationRunner(sampler=lambda *_: -0.5)
    _, events = _run_to_end(runner, _make_config(iterations=50))

    assert events[-1].results.success_rate == 0.0


def test_messages_are_immutable():
    event = Progress("abc", 10)
    with pytest.raises(AttributeError):
        event.percent_complete = 20
