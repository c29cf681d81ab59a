import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from loopkeeper.agents import AgentProcessError, AgentRequest, AgentRunner, AgentRunResult
from loopkeeper.config import LoopkeeperConfig
from loopkeeper.controller import AGENT_FAILED_STATUS, IterationController
from loopkeeper.environments import (
    EnvironmentCommandError,
    ExecutionEnvironment,
    LocalEnvironment,
)
from loopkeeper.models import PauseReason, SessionConfig, SessionStatus, Task
from loopkeeper.session import SessionStateError, transition
from loopkeeper.state import SessionStore

Step = Callable[[ExecutionEnvironment, AgentRequest], None]


class ScriptedRunner(AgentRunner):
    """Plays one scripted step per invocation against the environment's files."""

    name = "scripted"

    def __init__(self, steps: list[Step]) -> None:
        self.steps = list(steps)
        self.calls: list[AgentRequest] = []
        self.responses: list[str | None] = []
        self.remote_states: list[dict[str, Any]] = []

    async def run(
        self, environment: ExecutionEnvironment, request: AgentRequest
    ) -> AgentRunResult:
        self.calls.append(request)
        response = Path(environment.session_path("response.txt"))
        self.responses.append(response.read_text(encoding="utf-8") if response.exists() else None)
        state = Path(environment.session_path("state.json"))
        self.remote_states.append(json.loads(state.read_text(encoding="utf-8")))
        if not self.steps:
            raise AssertionError("agent invoked more often than scripted")
        self.steps.pop(0)(environment, request)
        return AgentRunResult(exit_code=0, output=["ok"])


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _no_sleep(_: float) -> None:
    return None


def _write(environment: ExecutionEnvironment, filename: str, payload: Any) -> None:
    Path(environment.session_path(filename)).write_text(json.dumps(payload), encoding="utf-8")


def report(status: str = "CONTINUE", **extra: Any) -> Step:
    def _step(environment: ExecutionEnvironment, request: AgentRequest) -> None:
        _ = request
        _write(environment, "state.json", {"status": status, "summary": status.lower(), **extra})

    return _step


def complete(task_id: int, status: str = "CONTINUE") -> Step:
    def _step(environment: ExecutionEnvironment, request: AgentRequest) -> None:
        _ = request
        tasks = json.loads(Path(environment.session_path("tasks.json")).read_text("utf-8"))
        for task in tasks:
            if task["id"] == task_id:
                task["passes"] = True
        _write(environment, "tasks.json", tasks)
        _write(environment, "state.json", {"status": status, "summary": f"task {task_id}"})

    return _step


def silent(environment: ExecutionEnvironment, request: AgentRequest) -> None:
    _ = environment, request


def crash(environment: ExecutionEnvironment, request: AgentRequest) -> None:
    _ = environment, request
    raise AgentProcessError("claude exited with code 1", agent="scripted", exit_code=1)


def _config(**loop: Any) -> LoopkeeperConfig:
    config = LoopkeeperConfig.default()
    config.loop.poll_interval_seconds = 0
    config.sync.backoff_seconds = 0
    for key, value in loop.items():
        setattr(config.loop, key, value)
    return config


def _store(tmp_path: Path, task_count: int = 3, passing: tuple[int, ...] = ()) -> SessionStore:
    store = SessionStore(tmp_path / "session")
    store.write_requirements("# Build a shop\n")
    store.set_tasks(
        [
            Task(id=task_id, description=f"task {task_id}", passes=task_id in passing)
            for task_id in range(1, task_count + 1)
        ]
    )
    store.set_json("history", [])
    store.set_session(SessionConfig(project_id="abc123abc123"))
    return store


def _controller(
    store: SessionStore,
    runner: AgentRunner,
    config: LoopkeeperConfig,
    *,
    environment: ExecutionEnvironment | None = None,
    clock: FakeClock | None = None,
    events: list[dict[str, Any]] | None = None,
) -> IterationController:
    environment = environment or LocalEnvironment(store.session_dir.parent / "env")
    return IterationController(
        store,
        environment,
        runner,
        config,
        event_hook=events.append if events is not None else None,
        clock=clock or FakeClock(),
        sleep=_no_sleep,
    )


def test_max_iterations_halts_before_next_invocation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    runner = ScriptedRunner([report(), silent, report()])

    result = asyncio.run(_controller(store, runner, _config(max_iterations=2)).run_loop())

    assert result.status is SessionStatus.PAUSED
    assert result.pause_reason is PauseReason.MAX_ITERATIONS
    assert result.exit_code == 0
    assert len(runner.calls) == 2
    assert result.iteration == 2
    assert [entry.iteration for entry in store.get_history()] == [1, 2]
    assert store.get_session().pause_reason is PauseReason.MAX_ITERATIONS


def test_done_is_trusted_only_when_every_task_passes(tmp_path: Path) -> None:
    store = _store(tmp_path, task_count=2)
    events: list[dict[str, Any]] = []
    runner = ScriptedRunner([complete(1, "DONE"), complete(2, "DONE")])

    result = asyncio.run(_controller(store, runner, _config(), events=events).run_loop())

    assert result.status is SessionStatus.COMPLETE
    assert result.exit_code == 0
    assert len(runner.calls) == 2
    assert [entry.status for entry in store.get_history()] == ["DONE", "DONE"]
    assert [entry.tasks_completed for entry in store.get_history()] == [1, 2]
    assert store.get_session().completed_at is not None
    assert events[-1]["event"] == "session_complete"


def test_each_iteration_starts_from_a_fresh_outcome(tmp_path: Path) -> None:
    store = _store(tmp_path, task_count=2)
    runner = ScriptedRunner([complete(1, "DONE"), silent])

    asyncio.run(_controller(store, runner, _config(max_iterations=2)).run_loop())

    assert runner.remote_states[1]["status"] == "CONTINUE"
    assert runner.remote_states[1]["iteration"] == 2
    assert store.get_history()[1].status == "CONTINUE"


def test_needs_input_then_respond_then_resume(tmp_path: Path) -> None:
    store = _store(tmp_path, task_count=1)
    runner = ScriptedRunner([report("NEEDS_INPUT", question="Which database?")])

    paused = asyncio.run(_controller(store, runner, _config()).run_loop())

    assert paused.status is SessionStatus.PAUSED
    assert paused.pause_reason is PauseReason.NEEDS_INPUT
    assert paused.message == "Which database?"
    assert paused.exit_code == 0

    store.write_response("Use SQLite")
    runner.steps.append(complete(1, "DONE"))
    resumed = asyncio.run(_controller(store, runner, _config()).run_loop())

    assert runner.responses == [None, "Use SQLite\n"]
    assert resumed.status is SessionStatus.COMPLETE
    assert store.read_response() is None
    assert [entry.iteration for entry in store.get_history()] == [1, 2]


def test_blocked_pauses_with_failure_exit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    runner = ScriptedRunner([report("BLOCKED", error="Missing API credentials")])

    result = asyncio.run(_controller(store, runner, _config()).run_loop())

    assert result.pause_reason is PauseReason.BLOCKED
    assert result.message == "Missing API credentials"
    assert result.exit_code == 1
    assert store.get_session().pause_detail == "Missing API credentials"


def test_agent_failure_pauses_without_retry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    runner = ScriptedRunner([crash, report()])

    result = asyncio.run(_controller(store, runner, _config()).run_loop())

    assert result.pause_reason is PauseReason.CLAUDE_FAILED
    assert result.exit_code == 1
    assert len(runner.calls) == 1
    history = store.get_history()
    assert len(history) == 1
    assert history[0].status == AGENT_FAILED_STATUS
    assert store.get_session().iteration == 1


def test_plateau_pauses_as_stuck(tmp_path: Path) -> None:
    store = _store(tmp_path, task_count=4)
    runner = ScriptedRunner([complete(1), complete(2), report(), report(), report()])

    result = asyncio.run(_controller(store, runner, _config(stuck_threshold=3)).run_loop())

    assert result.pause_reason is PauseReason.STUCK
    assert len(runner.calls) == 4
    assert [entry.tasks_completed for entry in store.get_history()] == [1, 2, 2, 2]


def test_stuck_window_restarts_after_resume(tmp_path: Path) -> None:
    store = _store(tmp_path, task_count=2)
    runner = ScriptedRunner([report(), report()])
    config = _config(stuck_threshold=2)

    first = asyncio.run(_controller(store, runner, config).run_loop())
    assert first.pause_reason is PauseReason.STUCK

    session = store.get_session()
    session.stuck_window_start = len(store.get_history())
    store.set_session(session)
    runner.steps.extend([report(), report()])
    second = asyncio.run(_controller(store, runner, config).run_loop())

    assert second.pause_reason is PauseReason.STUCK
    assert len(runner.calls) == 4


class UnreachableEnvironment(LocalEnvironment):
    def __init__(self, root: Path) -> None:
        super().__init__(root, identifier="unreachable")
        self.write_attempts = 0

    async def write_file(self, path: str, content: str) -> None:
        _ = path, content
        self.write_attempts += 1
        raise EnvironmentCommandError("connection refused", environment=self.identifier)


def test_push_failure_never_advances_the_counter(tmp_path: Path) -> None:
    store = _store(tmp_path)
    runner = ScriptedRunner([report()])
    events: list[dict[str, Any]] = []
    environment = UnreachableEnvironment(tmp_path / "env")

    result = asyncio.run(
        _controller(store, runner, _config(), environment=environment, events=events).run_loop()
    )

    assert result.pause_reason is PauseReason.SYNC_FAILED
    assert result.exit_code == 0
    assert runner.calls == []
    assert store.get_session().iteration == 0
    assert store.get_history() == []
    assert [event["event"] for event in events].count("iteration_aborted") == 3


def test_agent_cannot_revert_a_passing_task(tmp_path: Path) -> None:
    store = _store(tmp_path, task_count=2, passing=(1,))

    def _reset_everything(environment: ExecutionEnvironment, request: AgentRequest) -> None:
        _ = request
        _write(
            environment,
            "tasks.json",
            [
                {"id": 1, "description": "rewritten", "passes": False},
                {"id": 2, "description": "task 2", "passes": False},
                {"id": 99, "description": "invented", "passes": True},
            ],
        )
        _write(environment, "state.json", {"status": "CONTINUE", "summary": "oops"})

    runner = ScriptedRunner([_reset_everything])
    asyncio.run(_controller(store, runner, _config(max_iterations=1)).run_loop())

    tasks = store.get_tasks()
    assert [(task.id, task.passes) for task in tasks] == [(1, True), (2, False)]
    assert tasks[0].description == "task 1"
    assert store.get_history()[0].tasks_completed == 1


def test_malformed_outcome_is_treated_as_no_information(tmp_path: Path) -> None:
    store = _store(tmp_path)

    def _garbage(environment: ExecutionEnvironment, request: AgentRequest) -> None:
        _ = request
        _write(environment, "state.json", {"status": "NEEDS_INPUT", "summary": "no question"})

    runner = ScriptedRunner([_garbage])
    result = asyncio.run(_controller(store, runner, _config(max_iterations=1)).run_loop())

    assert result.pause_reason is PauseReason.MAX_ITERATIONS
    assert store.get_history()[0].status == "CONTINUE"
    assert store.get_raw_outcome()["iteration"] == 1


def test_wall_clock_limit_pauses_session(tmp_path: Path) -> None:
    store = _store(tmp_path)
    clock = FakeClock()

    def _slow(environment: ExecutionEnvironment, request: AgentRequest) -> None:
        report()(environment, request)
        clock.now += 5 * 3600

    runner = ScriptedRunner([_slow, report()])
    result = asyncio.run(
        _controller(store, runner, _config(max_duration_hours=4.0), clock=clock).run_loop()
    )

    assert result.pause_reason is PauseReason.MAX_DURATION
    assert len(runner.calls) == 1


def test_external_cancel_is_not_overwritten(tmp_path: Path) -> None:
    store = _store(tmp_path)

    def _cancelled_meanwhile(environment: ExecutionEnvironment, request: AgentRequest) -> None:
        report()(environment, request)
        session = store.get_session()
        transition(session, SessionStatus.CANCELLED)
        store.set_session(session)

    runner = ScriptedRunner([_cancelled_meanwhile])
    result = asyncio.run(_controller(store, runner, _config()).run_loop())

    assert result.status is SessionStatus.CANCELLED
    assert store.get_session().status is SessionStatus.CANCELLED


class CancellingEnvironment(LocalEnvironment):
    """Cancels the session from "another shell" on the first matching transfer."""

    def __init__(self, root: Path, store: SessionStore, *, on: str) -> None:
        super().__init__(root, identifier="cancelling")
        self.store = store
        self.on = on
        self.cancelled = False

    def _cancel_once(self, kind: str) -> None:
        if kind != self.on or self.cancelled:
            return
        self.cancelled = True
        session = self.store.get_session()
        transition(session, SessionStatus.CANCELLED)
        self.store.set_session(session)

    async def write_file(self, path: str, content: str) -> None:
        self._cancel_once("write")
        await super().write_file(path, content)

    async def read_file(self, path: str) -> str:
        self._cancel_once("read")
        return await super().read_file(path)


def test_stop_during_push_keeps_session_cancelled(tmp_path: Path) -> None:
    store = _store(tmp_path)
    runner = ScriptedRunner([report()])
    environment = CancellingEnvironment(tmp_path / "env", store, on="write")

    result = asyncio.run(
        _controller(store, runner, _config(max_iterations=1), environment=environment).run_loop()
    )

    assert environment.cancelled
    assert runner.calls == []
    assert result.status is SessionStatus.CANCELLED
    assert store.get_session().status is SessionStatus.CANCELLED
    assert store.get_session().iteration == 0
    assert store.get_history() == []


def test_stop_during_pull_keeps_session_cancelled(tmp_path: Path) -> None:
    store = _store(tmp_path, task_count=1)
    runner = ScriptedRunner([complete(1, "DONE")])
    environment = CancellingEnvironment(tmp_path / "env", store, on="read")

    result = asyncio.run(
        _controller(store, runner, _config(), environment=environment).run_loop()
    )

    assert len(runner.calls) == 1
    assert result.status is SessionStatus.CANCELLED
    session = store.get_session()
    assert session.status is SessionStatus.CANCELLED
    assert session.completed_at is None
    assert store.get_history() == []


def test_terminal_sessions_cannot_run(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session = store.get_session()
    transition(session, SessionStatus.CANCELLED)
    store.set_session(session)

    with pytest.raises(SessionStateError):
        asyncio.run(_controller(store, ScriptedRunner([]), _config()).run_loop())
