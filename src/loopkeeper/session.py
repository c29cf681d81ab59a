from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from loopkeeper.models import (
    HistoryEntry,
    IterationOutcome,
    OutcomeStatus,
    PauseReason,
    SessionConfig,
    SessionStatus,
    Task,
    all_tasks_pass,
    utcnow_iso,
)
from loopkeeper.stuck import is_stuck

logger = logging.getLogger(__name__)

TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.INITIALIZED: {SessionStatus.RUNNING, SessionStatus.CANCELLED},
    SessionStatus.RUNNING: {
        SessionStatus.RUNNING,
        SessionStatus.PAUSED,
        SessionStatus.COMPLETE,
        SessionStatus.CANCELLED,
    },
    SessionStatus.PAUSED: {SessionStatus.RUNNING, SessionStatus.CANCELLED},
    SessionStatus.COMPLETE: {SessionStatus.DONE, SessionStatus.CANCELLED},
    SessionStatus.CANCELLED: set(),
    SessionStatus.DONE: set(),
}

RUNNABLE_STATUSES = {SessionStatus.INITIALIZED, SessionStatus.RUNNING, SessionStatus.PAUSED}

# Pause reasons that surface as a non-zero exit to the operator.
FATAL_PAUSE_REASONS = {PauseReason.BLOCKED, PauseReason.CLAUDE_FAILED}


class InvalidTransitionError(RuntimeError):
    """Raised when a session status change is not allowed."""


class SessionStateError(RuntimeError):
    """Raised when an operation is attempted in the wrong session status."""


def transition(
    session: SessionConfig,
    target: SessionStatus,
    *,
    reason: PauseReason | None = None,
    detail: str | None = None,
) -> SessionConfig:
    """Move ``session`` to ``target`` in place, stamping the matching timestamp."""
    allowed = TRANSITIONS.get(session.status, set())
    if target not in allowed:
        raise InvalidTransitionError(
            f"Cannot move session from '{session.status.value}' to '{target.value}'."
        )
    if target is SessionStatus.PAUSED and reason is None:
        raise InvalidTransitionError("A paused session needs a pause reason.")

    now = utcnow_iso()
    session.status = target
    if target is SessionStatus.PAUSED:
        session.pause_reason = reason
        session.pause_detail = detail
        session.paused_at = now
        return session

    session.pause_reason = None
    session.pause_detail = None
    if target is SessionStatus.RUNNING:
        session.started_at = session.started_at or now
    elif target is SessionStatus.COMPLETE:
        session.completed_at = now
    elif target is SessionStatus.CANCELLED:
        session.cancelled_at = now
    elif target is SessionStatus.DONE:
        session.done_at = now
    return session


class Action(StrEnum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    PAUSE = "pause"


@dataclass(slots=True)
class Decision:
    action: Action
    reason: PauseReason | None = None
    message: str = ""


def decide(
    outcome: IterationOutcome,
    tasks: list[Task],
    history: list[HistoryEntry],
    stuck_threshold: int,
) -> Decision:
    """Map an iteration outcome onto the next loop action.

    A DONE report is cross-checked against the task list before it is
    allowed to complete the session.
    """
    if outcome.status is OutcomeStatus.DONE:
        if all_tasks_pass(tasks):
            return Decision(Action.COMPLETE, message="All tasks complete.")
        incomplete = sum(1 for task in tasks if not task.passes)
        message = (
            f"Agent reported DONE but {incomplete} of {len(tasks)} tasks are incomplete; "
            "continuing."
        )
        logger.warning(message)
        return Decision(Action.CONTINUE, message=message)

    if outcome.status is OutcomeStatus.NEEDS_INPUT:
        return Decision(
            Action.PAUSE,
            reason=PauseReason.NEEDS_INPUT,
            message=outcome.question or "",
        )

    if outcome.status is OutcomeStatus.BLOCKED:
        return Decision(Action.PAUSE, reason=PauseReason.BLOCKED, message=outcome.error or "")

    if is_stuck(history, stuck_threshold):
        return Decision(
            Action.PAUSE,
            reason=PauseReason.STUCK,
            message=f"No progress in the last {stuck_threshold} iterations.",
        )
    return Decision(Action.CONTINUE, message=outcome.summary)
