from loopkeeper.state.store import (
    SessionBusyError,
    SessionStore,
    StateError,
    compute_project_id,
    list_sessions,
)

__all__ = [
    "SessionBusyError",
    "SessionStore",
    "StateError",
    "compute_project_id",
    "list_sessions",
]
