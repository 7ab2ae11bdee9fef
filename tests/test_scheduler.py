import pytest

from sequencing.scheduler import TaskScheduler


def test_runs_due_tasks_earliest_first():
    sched = TaskScheduler()
    ran = []
    sched.schedule("b", 2.0, lambda: ran.append("b"))
    sched.schedule("a", 1.0, lambda: ran.append("a"))
    sched.schedule("c", 5.0, lambda: ran.append("c"))
    assert sched.run_due(3.0) == 2
    assert ran == ["a", "b"]
    assert sched.pending() == 1
    assert sched.due_at("c") == 5.0


def test_rescheduling_a_key_replaces_it():
    sched = TaskScheduler()
    ran = []
    sched.schedule("v", 1.0, lambda: ran.append("first"))
    sched.schedule("v", 2.0, lambda: ran.append("second"))
    assert sched.run_due(1.5) == 0
    assert sched.run_due(2.0) == 1
    assert ran == ["second"]


def test_cancel():
    sched = TaskScheduler()
    sched.schedule("v", 1.0, lambda: None)
    assert sched.cancel("v")
    assert not sched.cancel("v")
    assert sched.due_at("v") is None
    assert sched.run_due(10.0) == 0


def test_task_may_cancel_another():
    sched = TaskScheduler()
    ran = []

    def first():
        ran.append("a")
        sched.cancel("b")

    sched.schedule("a", 1.0, first)
    sched.schedule("b", 1.5, lambda: ran.append("b"))
    sched.run_due(2.0)
    assert ran == ["a"]


def test_task_errors_propagate():
    sched = TaskScheduler()

    def boom():
        raise RuntimeError("boom")

    sched.schedule("v", 0.0, boom)
    with pytest.raises(RuntimeError):
        sched.run_due(1.0)
    assert sched.pending() == 0
