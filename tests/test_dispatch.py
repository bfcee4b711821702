from __future__ import annotations

from collections import defaultdict, deque

from conftest import ScriptedExecutor, make_workflow, run_step
from flowci.dispatch import Dispatcher
from flowci.model import Event, EventKind, RunStatus
from flowci.runner import RunCoordinator
from flowci.server.queue import EventQueue

TIMEOUT = 10


class FakeRedis:
    """The three list commands EventQueue uses, over in-process deques."""

    def __init__(self):
        self.lists = defaultdict(deque)

    def rpush(self, name, value):
        self.lists[name].append(value)
        return len(self.lists[name])

    def blpop(self, keys, timeout=0):
        for key in keys:
            if self.lists[key]:
                return key, self.lists[key].popleft()
        return None

    def llen(self, name):
        return len(self.lists[name])


def workflows():
    return [
        make_workflow({"build": run_step("make")}, name="ci", on="push"),
        make_workflow({"docs": run_step("mkdocs")}, name="docs", on={"push": {"paths": ["docs/**"]}}),
        make_workflow(
            {"ship": run_step("ship")},
            name="release",
            on={"manual": {"inputs": {"level": {"type": "choice", "options": ["patch", "minor"]}}}},
        ),
    ]


def test_dispatch_starts_one_run_per_match(coordinator: RunCoordinator, executor: ScriptedExecutor) -> None:
    dispatcher = Dispatcher(workflows(), coordinator)
    event = Event(kind=EventKind.PUSH, ref="refs/heads/main", payload={"changed_files": ["docs/index.md"]})

    result = dispatcher.dispatch(event)

    assert result.errors == []
    assert len(result.run_ids) == 2
    runs = [coordinator.wait(r, timeout=TIMEOUT) for r in result.run_ids]
    assert sorted(r.workflow for r in runs) == ["ci", "docs"]
    assert all(r.status is RunStatus.SUCCESS for r in runs)
    assert sorted(executor.commands()) == ["make", "mkdocs"]


def test_dispatch_path_filter(coordinator: RunCoordinator) -> None:
    dispatcher = Dispatcher(workflows(), coordinator)
    event = Event(kind=EventKind.PUSH, ref="refs/heads/main", payload={"changed_files": ["src/app.py"]})
    result = dispatcher.dispatch(event)
    assert [coordinator.get_run(r).workflow for r in result.run_ids] == ["ci"]


def test_dispatch_collects_input_errors(coordinator: RunCoordinator) -> None:
    dispatcher = Dispatcher(workflows(), coordinator)
    result = dispatcher.dispatch(Event(kind=EventKind.MANUAL, payload={"inputs": {"level": "major"}}))
    assert result.run_ids == []
    assert len(result.errors) == 1
    assert result.errors[0].startswith("release: ")


def test_reload_replaces_workflows(coordinator: RunCoordinator) -> None:
    dispatcher = Dispatcher(workflows(), coordinator)
    dispatcher.reload([make_workflow({"x": run_step("x")}, name="only")])
    assert [wf.name for wf in dispatcher.workflows] == ["only"]


def test_from_directory(tmp_path, coordinator: RunCoordinator) -> None:
    (tmp_path / "b.json").write_text(
        '{"name": "b", "on": "push", "jobs": {"j": {"runs-on": "local", "steps": [{"run": "true"}]}}}'
    )
    (tmp_path / "a.json").write_text(
        '{"on": "manual", "jobs": {"j": {"runs-on": "local", "steps": [{"run": "true"}]}}}'
    )
    dispatcher = Dispatcher.from_directory(tmp_path, coordinator)
    assert [wf.name for wf in dispatcher.workflows] == ["a", "b"]


# ---------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------

def test_event_queue_is_fifo() -> None:
    queue = EventQueue(FakeRedis(), "events")
    queue.push(Event(kind=EventKind.PUSH, ref="refs/heads/one"))
    queue.push(Event(kind=EventKind.MANUAL, payload={"inputs": {"level": "patch"}}))
    assert len(queue) == 2

    first, second = queue.pop(timeout_s=0), queue.pop(timeout_s=0)
    assert (first.kind, first.ref) == (EventKind.PUSH, "refs/heads/one")
    assert second.payload == {"inputs": {"level": "patch"}}
    assert queue.pop(timeout_s=0) is None
    assert len(queue) == 0


def test_queued_event_dispatches(coordinator: RunCoordinator, executor: ScriptedExecutor) -> None:
    queue = EventQueue(FakeRedis(), "events")
    queue.push(Event(kind=EventKind.MANUAL, payload={"inputs": {"level": "minor"}}))

    result = Dispatcher(workflows(), coordinator).dispatch(queue.pop(timeout_s=0))
    run = coordinator.wait(result.run_ids[0], timeout=TIMEOUT)
    assert run.workflow == "release"
    assert run.context["inputs"] == {"level": "minor"}
    assert executor.commands() == ["ship"]
