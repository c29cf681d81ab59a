from __future__ import annotations

from collections.abc import Sequence

from loopkeeper.models import HistoryEntry


def is_stuck(history: Sequence[HistoryEntry], threshold: int) -> bool:
    """Report whether the last ``threshold`` iterations completed no new tasks.

    Only ``tasks_completed`` is inspected; an agent that keeps reporting
    CONTINUE with an unchanged completion count is stuck regardless of its
    summaries.
    """
    if threshold < 1:
        raise ValueError("threshold must be at least 1")
    if len(history) < threshold:
        return False
    window = history[-threshold:]
    return len({entry.tasks_completed for entry in window}) == 1
