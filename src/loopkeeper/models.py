from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class InvalidDocumentError(ValueError):
    """Raised when a persisted or pulled document has the wrong shape."""


class SessionStatus(StrEnum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    DONE = "done"


class PauseReason(StrEnum):
    """Why a session paused. ``SYNC_FAILED`` is a soft pause added for unreachable environments."""

    MAX_ITERATIONS = "max_iterations"
    MAX_DURATION = "max_duration"
    STUCK = "stuck"
    NEEDS_INPUT = "needs_input"
    BLOCKED = "blocked"
    CLAUDE_FAILED = "claude_failed"
    SYNC_FAILED = "sync_failed"


class OutcomeStatus(StrEnum):
    CONTINUE = "CONTINUE"
    DONE = "DONE"
    NEEDS_INPUT = "NEEDS_INPUT"
    BLOCKED = "BLOCKED"


@dataclass(slots=True)
class Task:
    id: int
    description: str
    category: str = "functional"
    steps: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    passes: bool = False

    @classmethod
    def from_dict(cls, payload: Any) -> Task:
        if not isinstance(payload, dict):
            raise InvalidDocumentError(f"Task must be an object, got {type(payload).__name__}.")
        raw_id = payload.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, int):
            raise InvalidDocumentError(f"Task id must be an integer, got {raw_id!r}.")
        description = payload.get("description")
        if not isinstance(description, str) or not description.strip():
            raise InvalidDocumentError(f"Task {raw_id} is missing a description.")
        passes = payload.get("passes", False)
        if not isinstance(passes, bool):
            raise InvalidDocumentError(f"Task {raw_id} has a non-boolean 'passes'.")
        return cls(
            id=raw_id,
            description=description,
            category=str(payload.get("category") or "functional"),
            steps=_string_list(payload.get("steps"), f"Task {raw_id} steps"),
            acceptance_criteria=_string_list(
                payload.get("acceptance_criteria"), f"Task {raw_id} acceptance_criteria"
            ),
            passes=passes,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _string_list(value: Any, label: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidDocumentError(f"{label} must be a list.")
    return [str(item) for item in value]


def parse_tasks(payload: Any) -> list[Task]:
    """Validate a task list document: an array of tasks with unique ids."""
    if not isinstance(payload, list):
        raise InvalidDocumentError("Task list must be a JSON array.")
    tasks = [Task.from_dict(item) for item in payload]
    seen: set[int] = set()
    for task in tasks:
        if task.id in seen:
            raise InvalidDocumentError(f"Duplicate task id: {task.id}")
        seen.add(task.id)
    return tasks


def count_completed(tasks: list[Task]) -> int:
    return sum(1 for task in tasks if task.passes)


def all_tasks_pass(tasks: list[Task]) -> bool:
    return bool(tasks) and all(task.passes for task in tasks)


@dataclass(slots=True)
class IterationOutcome:
    status: OutcomeStatus
    summary: str = ""
    iteration: int = 0
    question: str | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> IterationOutcome:
        if not isinstance(payload, dict):
            raise InvalidDocumentError("Iteration outcome must be an object.")
        raw_status = str(payload.get("status") or "").strip().upper()
        try:
            status = OutcomeStatus(raw_status)
        except ValueError as exc:
            raise InvalidDocumentError(f"Unknown outcome status: {raw_status!r}") from exc

        question = payload.get("question")
        error = payload.get("error")
        question = question.strip() if isinstance(question, str) and question.strip() else None
        error = error.strip() if isinstance(error, str) and error.strip() else None
        if status is OutcomeStatus.NEEDS_INPUT and question is None:
            raise InvalidDocumentError("NEEDS_INPUT outcome must carry a question.")
        if status is OutcomeStatus.BLOCKED and error is None:
            raise InvalidDocumentError("BLOCKED outcome must carry an error.")

        raw_iteration = payload.get("iteration", 0)
        try:
            iteration = int(raw_iteration)
        except (TypeError, ValueError):
            iteration = 0
        return cls(
            status=status,
            summary=str(payload.get("summary") or ""),
            iteration=iteration,
            question=question if status is OutcomeStatus.NEEDS_INPUT else None,
            error=error if status is OutcomeStatus.BLOCKED else None,
        )

    @classmethod
    def placeholder(cls, iteration: int, summary: str = "") -> IterationOutcome:
        return cls(status=OutcomeStatus.CONTINUE, summary=summary, iteration=iteration)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "summary": self.summary,
            "iteration": self.iteration,
            "question": self.question,
            "error": self.error,
        }


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    iteration: int
    summary: str
    tasks_completed: int
    status: str
    at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, payload: Any) -> HistoryEntry:
        if not isinstance(payload, dict):
            raise InvalidDocumentError("History entry must be an object.")
        try:
            return cls(
                iteration=int(payload["iteration"]),
                summary=str(payload.get("summary") or ""),
                tasks_completed=int(payload.get("tasks_completed", 0)),
                status=str(payload.get("status") or ""),
                at=str(payload.get("at") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidDocumentError(f"Malformed history entry: {payload!r}") from exc

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SessionConfig:
    project_id: str
    repo: str = ""
    branch: str = "main"
    source_dir: str = ""
    status: SessionStatus = SessionStatus.INITIALIZED
    pause_reason: PauseReason | None = None
    pause_detail: str | None = None
    iteration: int = 0
    run_start_iteration: int = 0
    stuck_window_start: int = 0
    environment_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    paused_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None
    done_at: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> SessionConfig:
        if not isinstance(payload, dict) or not payload.get("project_id"):
            raise InvalidDocumentError("Session config must be an object with a project_id.")
        try:
            status = SessionStatus(str(payload.get("status") or "initialized"))
            raw_reason = payload.get("pause_reason")
            pause_reason = PauseReason(str(raw_reason)) if raw_reason else None
        except ValueError as exc:
            raise InvalidDocumentError(f"Invalid session config: {exc}") from exc
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in payload.items() if key in known}
        values["status"] = status
        values["pause_reason"] = pause_reason
        for counter in ("iteration", "run_start_iteration", "stuck_window_start"):
            values[counter] = int(values.get(counter) or 0)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["pause_reason"] = self.pause_reason.value if self.pause_reason else None
        return payload

    def environment_view(self) -> dict[str, Any]:
        """Subset of the session config shared with the execution environment."""
        return {
            "project_id": self.project_id,
            "repo": self.repo,
            "branch": self.branch,
            "status": self.status.value,
            "iteration": self.iteration,
        }
