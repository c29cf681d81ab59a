from __future__ import annotations

import hashlib
import json
import os
import socket
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loopkeeper.models import (
    HistoryEntry,
    InvalidDocumentError,
    IterationOutcome,
    SessionConfig,
    Task,
    parse_tasks,
    utcnow_iso,
)


class StateError(RuntimeError):
    """Raised when session-state operations fail."""


class SessionBusyError(StateError):
    """Raised when another live process already drives the session."""


def compute_project_id(remote: str, directory: str, branch: str) -> str:
    """Session key derived from repository remote, working directory and branch."""
    digest = hashlib.sha256(f"{remote}:{directory}:{branch}".encode("utf-8")).hexdigest()
    return digest[:12]


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SessionStore:
    """JSON documents for one session, each replaced atomically on write.

    ``session`` and ``lease`` are stored in a versioned envelope
    (``schema_version``/``revision``/``data``). The agent-facing documents
    (``tasks``, ``state``, ``history``) are kept as plain JSON so the copies
    pushed to the execution environment are exactly what the agent reads.
    """

    DOCUMENTS = {"tasks", "state", "history", "session", "lease"}
    VERSIONED = {"session", "lease"}
    FILENAMES = {
        "tasks": "tasks.json",
        "state": "state.json",
        "history": "history.json",
        "session": "session.json",
        "lease": "lease.json",
    }
    REQUIREMENTS_FILE = "prd.md"
    RESPONSE_FILE = "response.txt"
    SCHEMA_VERSION = 1

    def __init__(self, session_dir: Path) -> None:
        self.session_dir = session_dir.resolve()
        self.lock_file = self.session_dir / ".lock"

    @classmethod
    def for_project(cls, home: Path, project_id: str) -> SessionStore:
        return cls(home / "sessions" / project_id)

    @property
    def project_id(self) -> str:
        return self.session_dir.name

    def exists(self) -> bool:
        return self.path_for("session").exists()

    def ensure_dir(self) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _validate_document(document: str) -> None:
        if document not in SessionStore.DOCUMENTS:
            raise StateError(f"Unsupported document: {document}")

    def path_for(self, document: str) -> Path:
        self._validate_document(document)
        return self.session_dir / self.FILENAMES[document]

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        self.ensure_dir()
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _atomic_write(self, path: Path, text: str) -> None:
        self.ensure_dir()
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
            temp_path = handle.name
        try:
            os.replace(temp_path, path)
        except OSError:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _read_raw_json(self, document: str) -> Any:
        path = self.path_for(document)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, document: str, default: Any | None = None) -> dict[str, Any]:
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(document), default_value)

    def get_json(self, document: str, default: Any | None = None) -> Any:
        return self.get_envelope(document, default=default).get("data")

    def set_json(self, document: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_document(document)
        with self._state_lock():
            if document not in self.VERSIONED:
                self._atomic_write(
                    self.path_for(document), json.dumps(data, ensure_ascii=False, indent=2)
                )
                return
            current = self.get_envelope(document, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for document '{document}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._atomic_write(
                self.path_for(document), json.dumps(envelope, ensure_ascii=False, indent=2)
            )

    def update_json(
        self,
        document: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(document, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(document, updated, expected_revision=int(current.get("revision", 0)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    # Typed accessors

    def get_session(self) -> SessionConfig:
        payload = self.get_json("session", default={})
        try:
            return SessionConfig.from_dict(payload)
        except InvalidDocumentError as exc:
            raise StateError(f"Session config in {self.session_dir} is unreadable: {exc}") from exc

    def set_session(self, session: SessionConfig) -> None:
        self.set_json("session", session.to_dict())

    def update_session(self, updater: Callable[[SessionConfig], None]) -> SessionConfig:
        """Apply ``updater`` to the stored session, retrying on a concurrent write.

        ``updater`` always sees the latest stored copy; anything it raises
        aborts the update without writing.
        """
        result: list[SessionConfig] = []

        def _apply(payload: Any) -> dict[str, Any]:
            try:
                session = SessionConfig.from_dict(payload)
            except InvalidDocumentError as exc:
                raise StateError(
                    f"Session config in {self.session_dir} is unreadable: {exc}"
                ) from exc
            updater(session)
            result[:] = [session]
            return session.to_dict()

        self.update_json("session", _apply, default={})
        return result[0]

    def get_tasks(self) -> list[Task]:
        payload = self.get_json("tasks", default=[])
        try:
            return parse_tasks(payload)
        except InvalidDocumentError as exc:
            raise StateError(f"Task list in {self.session_dir} is invalid: {exc}") from exc

    def set_tasks(self, tasks: list[Task]) -> None:
        self.set_json("tasks", [task.to_dict() for task in tasks])

    def get_raw_outcome(self) -> Any:
        return self.get_json("state", default=None)

    def set_outcome(self, outcome: IterationOutcome) -> None:
        self.set_json("state", outcome.to_dict())

    def get_history(self) -> list[HistoryEntry]:
        payload = self.get_json("history", default=[])
        if not isinstance(payload, list):
            raise StateError(f"History in {self.session_dir} is not a list.")
        try:
            return [HistoryEntry.from_dict(item) for item in payload]
        except InvalidDocumentError as exc:
            raise StateError(str(exc)) from exc

    def append_history(self, entry: HistoryEntry) -> list[HistoryEntry]:
        history = self.get_history()
        if history and entry.iteration != history[-1].iteration + 1:
            raise StateError(
                f"History iteration {entry.iteration} does not follow "
                f"{history[-1].iteration}."
            )
        history.append(entry)
        self.set_json("history", [item.to_dict() for item in history])
        return history

    def read_requirements(self) -> str:
        path = self.session_dir / self.REQUIREMENTS_FILE
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def write_requirements(self, content: str) -> None:
        self._atomic_write(self.session_dir / self.REQUIREMENTS_FILE, content)

    def read_response(self) -> str | None:
        path = self.session_dir / self.RESPONSE_FILE
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write_response(self, message: str) -> None:
        self._atomic_write(self.session_dir / self.RESPONSE_FILE, message.rstrip("\n") + "\n")

    def clear_response(self) -> None:
        try:
            (self.session_dir / self.RESPONSE_FILE).unlink()
        except FileNotFoundError:
            pass

    # Lease

    def acquire_lease(self, *, force: bool = False) -> dict[str, Any]:
        host = socket.gethostname()
        pid = os.getpid()

        def _updater(payload: Any) -> dict[str, Any]:
            active = payload.get("active") if isinstance(payload, dict) else None
            if isinstance(active, dict) and not force:
                holder_pid = int(active.get("pid", 0) or 0)
                same_host = active.get("host") == host
                if holder_pid != pid and (not same_host or _pid_alive(holder_pid)):
                    raise SessionBusyError(
                        f"Session {self.project_id} is already driven by pid {holder_pid} "
                        f"on {active.get('host')} since {active.get('acquired_at')}."
                    )
            return {"active": {"pid": pid, "host": host, "acquired_at": utcnow_iso()}}

        return self.update_json("lease", _updater, default={})

    def release_lease(self) -> None:
        pid = os.getpid()

        def _updater(payload: Any) -> dict[str, Any]:
            active = payload.get("active") if isinstance(payload, dict) else None
            if isinstance(active, dict) and int(active.get("pid", 0) or 0) == pid:
                return {"active": None}
            return payload if isinstance(payload, dict) else {"active": None}

        self.update_json("lease", _updater, default={})

    def active_lease(self) -> dict[str, Any] | None:
        payload = self.get_json("lease", default={})
        active = payload.get("active") if isinstance(payload, dict) else None
        return active if isinstance(active, dict) else None


def list_sessions(home: Path) -> list[SessionStore]:
    sessions_dir = home / "sessions"
    if not sessions_dir.is_dir():
        return []
    stores = [SessionStore(path) for path in sorted(sessions_dir.iterdir()) if path.is_dir()]
    return [store for store in stores if store.exists()]
