from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loopkeeper.environments.base import ExecutionEnvironment, ExecutionEnvironmentError
from loopkeeper.state.store import SessionStore

logger = logging.getLogger(__name__)

SyncEventHook = Callable[[dict[str, Any]], None]

PUSH_DOCUMENTS = ("prd", "tasks", "state", "history", "session", "response")
PULL_DOCUMENTS = ("tasks", "state")
REMOTE_FILENAMES = {
    "prd": SessionStore.REQUIREMENTS_FILE,
    "response": SessionStore.RESPONSE_FILE,
    **SessionStore.FILENAMES,
}


@dataclass(slots=True)
class SyncPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 2.0


@dataclass(slots=True)
class SyncReport:
    direction: str
    transferred: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    payloads: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class EnvironmentSync:
    """Moves session documents across the environment boundary.

    Every transfer is a whole-file replace, so repeating one is harmless.
    Each document is retried on its own; a document that still fails is
    reported rather than raised.
    """

    def __init__(
        self,
        store: SessionStore,
        environment: ExecutionEnvironment,
        policy: SyncPolicy | None = None,
        event_hook: SyncEventHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.environment = environment
        self.policy = policy or SyncPolicy()
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _with_retries(
        self,
        direction: str,
        document: str,
        call: Callable[[], Awaitable[Any]],
    ) -> tuple[bool, Any, str]:
        last_error = ""
        for attempt in range(self.policy.max_attempts):
            if attempt > 0:
                delay = self.policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "sync_retry",
                        "direction": direction,
                        "document": document,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self._sleep(delay)
            try:
                return True, await call(), ""
            except ExecutionEnvironmentError as exc:
                last_error = str(exc)
                self._emit(
                    {
                        "event": "sync_attempt_failed",
                        "direction": direction,
                        "document": document,
                        "attempt": attempt,
                        "error": last_error,
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    break
            except ValueError as exc:
                last_error = f"invalid JSON: {exc}"
                self._emit(
                    {
                        "event": "sync_attempt_failed",
                        "direction": direction,
                        "document": document,
                        "attempt": attempt,
                        "error": last_error,
                        "retriable": True,
                    }
                )
        logger.warning("%s of %s failed: %s", direction, document, last_error)
        return False, None, last_error

    def _local_content(self, document: str) -> str | None:
        if document == "prd":
            content = self.store.read_requirements()
            return content or None
        if document == "response":
            return self.store.read_response()
        if document == "session":
            view = self.store.get_session().environment_view()
            return json.dumps(view, ensure_ascii=False, indent=2)
        path = self.store.path_for(document)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def remote_path(self, document: str) -> str:
        return self.environment.session_path(REMOTE_FILENAMES[document])

    async def push_state(self, documents: tuple[str, ...] = PUSH_DOCUMENTS) -> SyncReport:
        report = SyncReport(direction="push")
        for document in documents:
            content = self._local_content(document)
            remote_path = self.remote_path(document)
            if content is None:
                if document != "response":
                    continue

                async def _call(path: str = remote_path) -> None:
                    await self.environment.remove_file(path)

            else:

                async def _call(path: str = remote_path, text: str = content) -> None:
                    await self.environment.write_file(path, text)

            ok, _, error = await self._with_retries("push", document, _call)
            if ok:
                report.transferred.append(document)
            else:
                report.failed[document] = error
        return report

    async def pull_state(self, documents: tuple[str, ...] = PULL_DOCUMENTS) -> SyncReport:
        report = SyncReport(direction="pull")
        for document in documents:

            async def _call(path: str = self.remote_path(document)) -> Any:
                return json.loads(await self.environment.read_file(path))

            ok, payload, error = await self._with_retries("pull", document, _call)
            if ok:
                report.transferred.append(document)
                report.payloads[document] = payload
            else:
                report.failed[document] = error
        return report
