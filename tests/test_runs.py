"""
Run registry: synchronous fan-out, current-stage snapshots and retention.
"""

from __future__ import annotations

from sentinel.runs import RunRegistry


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_emit_updates_current_stage_and_fans_out():
    runs = RunRegistry()
    run = runs.create("approve 10")
    seen_a, seen_b = [], []
    runs.subscribe(run.id, seen_a.append)
    runs.subscribe(run.id, seen_b.append)

    runs.emit(run.id, {"stage": "intent_parse"})

    assert run.current_stage == {"stage": "intent_parse"}
    assert seen_a == seen_b == [{"stage": "intent_parse"}]


def test_late_subscriber_sees_no_replay():
    runs = RunRegistry()
    run = runs.create("approve 10")
    runs.emit(run.id, {"stage": "intent_parse"})

    seen = []
    runs.subscribe(run.id, seen.append)
    runs.emit(run.id, {"stage": "fork_chain"})
    assert seen == [{"stage": "fork_chain"}]


def test_unsubscribe_stops_delivery():
    runs = RunRegistry()
    run = runs.create("approve 10")
    seen = []
    runs.subscribe(run.id, seen.append)
    runs.unsubscribe(run.id, seen.append)
    runs.emit(run.id, {"stage": "judge"})
    assert seen == []


def test_failing_listener_does_not_block_others():
    runs = RunRegistry()
    run = runs.create("approve 10")
    seen = []

    def broken(event):
        raise RuntimeError("socket closed")

    runs.subscribe(run.id, broken)
    runs.subscribe(run.id, seen.append)
    runs.emit(run.id, {"stage": "judge"})
    assert seen == [{"stage": "judge"}]


def test_emit_to_unknown_run_is_ignored():
    runs = RunRegistry()
    runs.emit("nope", {"stage": "final"})
    assert runs.subscribe("nope", print) is None


def test_terminal_stage_marks_completion_only():
    runs = RunRegistry()
    run = runs.create("approve 10")
    runs.emit(run.id, {"stage": "judge"})
    assert run.is_complete is False
    runs.emit(run.id, {"stage": "final"})
    assert run.is_complete is True
    assert run.result is None


def test_completed_runs_expire_after_retention():
    clock = FakeClock()
    runs = RunRegistry(retention_seconds=60, clock=clock)
    done = runs.create("approve 10")
    in_flight = runs.create("approve 20")
    runs.emit(done.id, {"stage": "error", "error": "boom"})

    clock.now += 59
    assert runs.get(done.id) is done

    clock.now += 2
    assert runs.get(done.id) is None
    assert runs.get(in_flight.id) is in_flight
    assert len(runs) == 1
