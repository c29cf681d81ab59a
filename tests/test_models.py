import pytest

from loopkeeper.models import (
    HistoryEntry,
    InvalidDocumentError,
    IterationOutcome,
    OutcomeStatus,
    PauseReason,
    SessionConfig,
    SessionStatus,
    Task,
    all_tasks_pass,
    count_completed,
    parse_tasks,
)


def test_parse_tasks_accepts_minimal_entries() -> None:
    tasks = parse_tasks(
        [
            {"id": 1, "description": "Add login form"},
            {
                "id": 2,
                "description": "Wire session cookie",
                "category": "integration",
                "steps": ["set cookie"],
                "acceptance_criteria": ["cookie is httponly"],
                "passes": True,
            },
        ]
    )

    assert tasks[0].category == "functional"
    assert tasks[0].passes is False
    assert tasks[1].steps == ["set cookie"]
    assert count_completed(tasks) == 1


@pytest.mark.parametrize(
    "payload",
    [
        {"tasks": []},
        [{"id": "1", "description": "string id"}],
        [{"id": True, "description": "bool id"}],
        [{"id": 1, "description": ""}],
        [{"id": 1, "description": "x", "passes": "yes"}],
        [{"id": 1, "description": "x", "steps": "one step"}],
        [{"id": 1, "description": "a"}, {"id": 1, "description": "b"}],
    ],
)
def test_parse_tasks_rejects_bad_shapes(payload: object) -> None:
    with pytest.raises(InvalidDocumentError):
        parse_tasks(payload)


def test_all_tasks_pass_requires_non_empty_list() -> None:
    assert all_tasks_pass([]) is False
    assert all_tasks_pass([Task(id=1, description="x", passes=True)]) is True
    assert all_tasks_pass(
        [Task(id=1, description="x", passes=True), Task(id=2, description="y")]
    ) is False


def test_outcome_status_is_case_insensitive() -> None:
    outcome = IterationOutcome.from_dict({"status": "done", "summary": "finished", "iteration": 4})

    assert outcome.status is OutcomeStatus.DONE
    assert outcome.iteration == 4


def test_outcome_requires_question_for_needs_input() -> None:
    with pytest.raises(InvalidDocumentError):
        IterationOutcome.from_dict({"status": "NEEDS_INPUT", "question": "  "})

    outcome = IterationOutcome.from_dict({"status": "NEEDS_INPUT", "question": "Which DB?"})
    assert outcome.question == "Which DB?"


def test_outcome_requires_error_for_blocked() -> None:
    with pytest.raises(InvalidDocumentError):
        IterationOutcome.from_dict({"status": "BLOCKED"})

    outcome = IterationOutcome.from_dict(
        {"status": "BLOCKED", "error": "no credentials", "question": "ignored"}
    )
    assert outcome.error == "no credentials"
    assert outcome.question is None


def test_outcome_rejects_unknown_status() -> None:
    with pytest.raises(InvalidDocumentError):
        IterationOutcome.from_dict({"status": "READY"})


def test_history_entry_roundtrip() -> None:
    entry = HistoryEntry(iteration=3, summary="did things", tasks_completed=2, status="CONTINUE")
    assert HistoryEntry.from_dict(entry.to_dict()) == entry


def test_session_config_roundtrip_and_view() -> None:
    session = SessionConfig(
        project_id="0123456789ab",
        repo="acme/shop",
        branch="feature/cart",
        status=SessionStatus.PAUSED,
        pause_reason=PauseReason.STUCK,
        iteration=7,
    )
    restored = SessionConfig.from_dict({**session.to_dict(), "unknown_field": 1})

    assert restored == session
    assert session.environment_view() == {
        "project_id": "0123456789ab",
        "repo": "acme/shop",
        "branch": "feature/cart",
        "status": "paused",
        "iteration": 7,
    }


def test_session_config_rejects_unknown_status() -> None:
    with pytest.raises(InvalidDocumentError):
        SessionConfig.from_dict({"project_id": "abc", "status": "sleeping"})
