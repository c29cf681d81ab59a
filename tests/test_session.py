import pytest

from loopkeeper.models import (
    HistoryEntry,
    IterationOutcome,
    OutcomeStatus,
    PauseReason,
    SessionConfig,
    SessionStatus,
    Task,
)
from loopkeeper.session import Action, InvalidTransitionError, decide, transition


def _session(status: SessionStatus = SessionStatus.INITIALIZED) -> SessionConfig:
    return SessionConfig(project_id="abc123abc123", status=status)


def _history(counts: list[int]) -> list[HistoryEntry]:
    return [
        HistoryEntry(iteration=index + 1, summary="", tasks_completed=count, status="CONTINUE")
        for index, count in enumerate(counts)
    ]


def test_transition_stamps_timestamps_and_reasons() -> None:
    session = _session()
    transition(session, SessionStatus.RUNNING)
    assert session.started_at is not None

    transition(session, SessionStatus.PAUSED, reason=PauseReason.STUCK, detail="no progress")
    assert session.pause_reason is PauseReason.STUCK
    assert session.pause_detail == "no progress"
    assert session.paused_at is not None

    transition(session, SessionStatus.RUNNING)
    assert session.pause_reason is None
    assert session.pause_detail is None

    transition(session, SessionStatus.COMPLETE)
    transition(session, SessionStatus.DONE)
    assert session.completed_at is not None
    assert session.done_at is not None


def test_pause_requires_reason() -> None:
    session = _session(SessionStatus.RUNNING)
    with pytest.raises(InvalidTransitionError):
        transition(session, SessionStatus.PAUSED)


@pytest.mark.parametrize(
    ("source", "target"),
    [
        (SessionStatus.INITIALIZED, SessionStatus.COMPLETE),
        (SessionStatus.PAUSED, SessionStatus.COMPLETE),
        (SessionStatus.COMPLETE, SessionStatus.RUNNING),
        (SessionStatus.DONE, SessionStatus.RUNNING),
        (SessionStatus.CANCELLED, SessionStatus.RUNNING),
        (SessionStatus.CANCELLED, SessionStatus.DONE),
    ],
)
def test_invalid_transitions_raise(source: SessionStatus, target: SessionStatus) -> None:
    with pytest.raises(InvalidTransitionError):
        transition(_session(source), target)


def test_cancel_is_allowed_from_live_statuses() -> None:
    for status in (
        SessionStatus.INITIALIZED,
        SessionStatus.RUNNING,
        SessionStatus.PAUSED,
        SessionStatus.COMPLETE,
    ):
        session = transition(_session(status), SessionStatus.CANCELLED)
        assert session.cancelled_at is not None


def test_done_completes_only_when_every_task_passes() -> None:
    outcome = IterationOutcome(status=OutcomeStatus.DONE, summary="all done")
    tasks = [Task(id=1, description="a", passes=True), Task(id=2, description="b", passes=True)]

    assert decide(outcome, tasks, _history([2]), 3).action is Action.COMPLETE


def test_done_with_incomplete_tasks_continues() -> None:
    outcome = IterationOutcome(status=OutcomeStatus.DONE, summary="claims done")
    tasks = [Task(id=1, description="a", passes=True), Task(id=2, description="b")]

    decision = decide(outcome, tasks, _history([1]), 3)
    assert decision.action is Action.CONTINUE
    assert "1 of 2" in decision.message


def test_done_with_empty_task_list_continues() -> None:
    outcome = IterationOutcome(status=OutcomeStatus.DONE)
    assert decide(outcome, [], _history([0]), 3).action is Action.CONTINUE


def test_needs_input_and_blocked_pause_with_message() -> None:
    tasks = [Task(id=1, description="a")]
    question = IterationOutcome(status=OutcomeStatus.NEEDS_INPUT, question="Which DB?")
    blocked = IterationOutcome(status=OutcomeStatus.BLOCKED, error="missing token")

    needs_input = decide(question, tasks, _history([0]), 3)
    assert needs_input.action is Action.PAUSE
    assert needs_input.reason is PauseReason.NEEDS_INPUT
    assert needs_input.message == "Which DB?"

    block = decide(blocked, tasks, _history([0]), 3)
    assert block.reason is PauseReason.BLOCKED
    assert block.message == "missing token"


def test_continue_pauses_when_stuck() -> None:
    outcome = IterationOutcome(status=OutcomeStatus.CONTINUE)
    tasks = [Task(id=1, description="a")]

    assert decide(outcome, tasks, _history([1, 2, 2]), 3).action is Action.CONTINUE
    stuck = decide(outcome, tasks, _history([1, 2, 2, 2]), 3)
    assert stuck.action is Action.PAUSE
    assert stuck.reason is PauseReason.STUCK
