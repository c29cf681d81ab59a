from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loopkeeper.agents.base import AgentRunner
from loopkeeper.agents.claude import ClaudeCodeRunner
from loopkeeper.agents.prompts import PromptBuilder
from loopkeeper.config import LoopkeeperConfig
from loopkeeper.controller import EventHook, IterationController, LoopResult
from loopkeeper.environments.base import (
    EnvironmentCommandError,
    ExecutionEnvironment,
    ExecutionEnvironmentError,
)
from loopkeeper.environments.local import LocalEnvironment
from loopkeeper.environments.sprite import SpriteEnvironment
from loopkeeper.identity import RepoIdentity
from loopkeeper.models import (
    InvalidDocumentError,
    OutcomeStatus,
    PauseReason,
    SessionConfig,
    SessionStatus,
    Task,
    all_tasks_pass,
    count_completed,
    parse_tasks,
)
from loopkeeper.session import RUNNABLE_STATUSES, SessionStateError, transition
from loopkeeper.state.store import SessionStore, StateError, list_sessions
from loopkeeper.sync import EnvironmentSync, SyncPolicy

logger = logging.getLogger(__name__)

InitMode = Literal["new", "fresh", "update"]
ConfirmReuse = Callable[[str, bool], bool]
EnvironmentFactory = Callable[[SessionConfig], ExecutionEnvironment]


class SessionExistsError(StateError):
    """Raised when ``init`` targets a project that already has a session."""


class SessionNotFoundError(StateError):
    """Raised when no session exists for the requested project."""


class PlanningError(StateError):
    """Raised when planning does not produce a usable task list."""


@dataclass(slots=True)
class FinalizeReport:
    pushed: bool = False
    pr_url: str | None = None
    pr_error: str | None = None
    environment_destroyed: bool = False


def build_pr_body(tasks: list[Task], requirements: str) -> str:
    checklist = "\n".join(f"- [x] {task.description}" for task in tasks)
    return (
        "## Summary\n\n"
        f"{checklist}\n\n"
        "## Requirements\n\n"
        "<details>\n<summary>Click to expand</summary>\n\n"
        f"{requirements.strip()}\n\n"
        "</details>\n"
    )


def build_pr_title(tasks: list[Task]) -> str:
    if not tasks:
        return "feat: Implementation complete"
    return f"feat: {tasks[0].description}"


class SessionManager:
    """Owns session creation, start, pause/resume, finalization and listing."""

    def __init__(
        self,
        config: LoopkeeperConfig,
        *,
        home: Path,
        identity: RepoIdentity,
        runner: AgentRunner | None = None,
        environment_factory: EnvironmentFactory | None = None,
        event_hook: EventHook | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.home = home
        self.identity = identity
        self.runner = runner or ClaudeCodeRunner(
            config.agent.binary, timeout_seconds=config.agent.timeout_seconds
        )
        self.environment_factory = environment_factory or self._default_environment
        self.event_hook = event_hook
        self.prompts = PromptBuilder(
            max_turns=config.agent.max_turns,
            plan_max_turns=config.agent.plan_max_turns,
        )
        self._clock = clock
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    # Stores and environments

    @property
    def project_id(self) -> str:
        return self.identity.project_id

    def store_for(self, session_id: str | None = None) -> SessionStore:
        return SessionStore.for_project(self.home, session_id or self.project_id)

    def _require_store(self, session_id: str | None = None) -> SessionStore:
        store = self.store_for(session_id)
        if not store.exists():
            raise SessionNotFoundError(
                f"No session found for {session_id or self.project_id}. "
                "Run `loopkeeper init <requirements.md>` first."
            )
        return store

    def _default_environment(self, session: SessionConfig) -> ExecutionEnvironment:
        env_cfg = self.config.environment
        if env_cfg.backend == "local":
            root = (
                Path(env_cfg.local_root).expanduser() / session.project_id
                if env_cfg.local_root
                else self.home / "environments" / session.project_id
            )
            return LocalEnvironment(root, identifier=f"local-{session.project_id}")
        return SpriteEnvironment(
            f"{env_cfg.name_prefix}-{session.project_id}",
            binary=env_cfg.binary,
            session_dir=env_cfg.session_dir,
            repo_dir=env_cfg.repo_dir,
        )

    def environment_for(self, session: SessionConfig) -> ExecutionEnvironment:
        return self.environment_factory(session)

    def _sync(self, store: SessionStore, environment: ExecutionEnvironment) -> EnvironmentSync:
        return EnvironmentSync(
            store,
            environment,
            SyncPolicy(
                max_attempts=self.config.sync.max_attempts,
                backoff_seconds=self.config.sync.backoff_seconds,
            ),
            event_hook=self.event_hook,
            sleep=self._sleep,
        )

    def _clone_url(self, session: SessionConfig) -> str:
        if self.identity.remote:
            return self.identity.clone_url
        if session.repo:
            return f"https://github.com/{session.repo}"
        return ""

    async def _ensure_environment(
        self,
        session: SessionConfig,
        *,
        refresh: bool = False,
        confirm_reuse: ConfirmReuse | None = None,
    ) -> ExecutionEnvironment:
        environment = self.environment_for(session)
        exists = await environment.exists()
        if exists and refresh:
            self._emit({"event": "environment_destroyed", "environment": environment.identifier})
            await environment.destroy()
            exists = False
        elif exists and confirm_reuse is not None:
            loop_running = await environment.is_loop_running()
            if not confirm_reuse(environment.identifier, loop_running):
                self._emit(
                    {"event": "environment_destroyed", "environment": environment.identifier}
                )
                await environment.destroy()
                exists = False

        if exists:
            self._emit({"event": "environment_reused", "environment": environment.identifier})
        else:
            self._emit({"event": "environment_creating", "environment": environment.identifier})
            await environment.create()
        await environment.prepare(self._clone_url(session), session.branch)
        return environment

    # Operations

    def init(self, requirements_path: Path, mode: InitMode = "new") -> SessionConfig:
        if not requirements_path.is_file():
            raise StateError(f"Requirements document not found: {requirements_path}")
        requirements = requirements_path.read_text(encoding="utf-8")

        store = self.store_for()
        if store.exists():
            if mode == "update":
                store.write_requirements(requirements)
                logger.info("Updated requirements for session %s", store.project_id)
                return store.get_session()
            if mode != "fresh":
                raise SessionExistsError(
                    f"A session already exists for {store.project_id}. "
                    "Use --fresh to start over or --update to replace the requirements."
                )
            shutil.rmtree(store.session_dir)

        store.ensure_dir()
        store.write_requirements(requirements)
        store.set_tasks([])
        store.set_json("history", [])
        session = SessionConfig(
            project_id=store.project_id,
            repo=self.identity.repo_name,
            branch=self.identity.branch,
            source_dir=self.identity.directory,
        )
        store.set_session(session)
        logger.info("Initialized session %s in %s", store.project_id, store.session_dir)
        return session

    async def plan(self, *, refresh: bool = False) -> list[Task]:
        store = self._require_store()
        session = store.get_session()
        if session.status not in RUNNABLE_STATUSES:
            raise SessionStateError(
                f"Cannot plan a session in status '{session.status.value}'."
            )
        previous = store.get_tasks()
        store.acquire_lease()
        try:
            environment = await self._ensure_environment(session)
            session.environment_id = environment.identifier
            store.set_session(session)

            sync = self._sync(store, environment)
            documents: tuple[str, ...] = ("prd", "tasks") if refresh else ("prd",)
            push = await sync.push_state(documents)
            if not push.ok:
                raise PlanningError(
                    "Could not push planning inputs: " + ", ".join(sorted(push.failed))
                )
            if not refresh:
                await environment.remove_file(sync.remote_path("tasks"))

            self._emit({"event": "planning_started", "refresh": refresh})
            await self.runner.run(environment, self.prompts.plan(environment, refresh=refresh))

            pull = await sync.pull_state(("tasks",))
            if "tasks" not in pull.payloads:
                raise PlanningError(
                    "The agent did not write a task list: " + pull.failed.get("tasks", "")
                )
            try:
                tasks = parse_tasks(pull.payloads["tasks"])
            except InvalidDocumentError as exc:
                raise PlanningError(f"The agent wrote an invalid task list: {exc}") from exc
        finally:
            store.release_lease()

        if refresh:
            passing = {task.id for task in previous if task.passes}
            for task in tasks:
                if task.id in passing:
                    task.passes = True
        if not tasks:
            logger.warning("Planning produced an empty task list.")
        store.set_tasks(tasks)
        self._emit({"event": "planning_finished", "tasks": len(tasks)})
        return tasks

    def tasks(self, session_id: str | None = None) -> list[Task]:
        return self._require_store(session_id).get_tasks()

    def save_tasks(self, payload: Any, session_id: str | None = None) -> list[Task]:
        store = self._require_store(session_id)
        tasks = parse_tasks(payload)
        store.set_tasks(tasks)
        return tasks

    async def _drive(
        self,
        store: SessionStore,
        session: SessionConfig,
        *,
        refresh: bool = False,
        confirm_reuse: ConfirmReuse | None = None,
    ) -> LoopResult:
        store.acquire_lease()
        try:
            environment = await self._ensure_environment(
                session, refresh=refresh, confirm_reuse=confirm_reuse
            )
            session = store.get_session()
            session.environment_id = environment.identifier
            store.set_session(session)
            controller = IterationController(
                store,
                environment,
                self.runner,
                self.config,
                prompts=self.prompts,
                sync=self._sync(store, environment),
                event_hook=self.event_hook,
                clock=self._clock,
                sleep=self._sleep,
            )
            return await controller.run_loop()
        finally:
            store.release_lease()

    async def start(
        self,
        *,
        branch: str | None = None,
        refresh: bool = False,
        confirm_reuse: ConfirmReuse | None = None,
    ) -> LoopResult:
        store = self._require_store()
        session = store.get_session()
        if session.status not in RUNNABLE_STATUSES:
            raise SessionStateError(
                f"Session {session.project_id} is {session.status.value}; "
                "run `loopkeeper init --fresh` to start a new one."
            )
        if not store.get_tasks():
            raise SessionStateError("No tasks to run. Run `loopkeeper plan` first.")
        if branch:
            session.branch = branch
        session.stuck_window_start = len(store.get_history())
        store.set_session(session)
        return await self._drive(store, session, refresh=refresh, confirm_reuse=confirm_reuse)

    async def resume(self) -> LoopResult:
        store = self._require_store()
        session = store.get_session()
        if session.status not in RUNNABLE_STATUSES:
            raise SessionStateError(
                f"Cannot resume a session in status '{session.status.value}'."
            )
        session.stuck_window_start = len(store.get_history())
        store.set_session(session)
        return await self._drive(store, session)

    async def respond(self, message: str) -> bool:
        """Store an operator answer; returns whether the session was waiting for one."""
        if not message.strip():
            raise StateError("Response message cannot be empty.")
        store = self._require_store()
        session = store.get_session()
        awaiting = (
            session.status is SessionStatus.PAUSED
            and session.pause_reason is PauseReason.NEEDS_INPUT
        )
        if not awaiting:
            logger.warning(
                "Session %s is not waiting for input (status: %s).",
                session.project_id,
                session.status.value,
            )
        store.write_response(message)

        if session.environment_id:
            environment = self.environment_for(session)
            if await environment.exists():
                report = await self._sync(store, environment).push_state(("response",))
                if not report.ok:
                    logger.warning("Response saved locally; push to environment failed.")
        return awaiting

    async def stop(self, session_id: str | None = None) -> SessionConfig:
        store = self._require_store(session_id)
        session = store.get_session()
        if session.status in {SessionStatus.CANCELLED, SessionStatus.DONE}:
            raise SessionStateError(
                f"Session {session.project_id} is already {session.status.value}."
            )

        environment = self.environment_for(session)
        try:
            if await environment.exists():
                await environment.destroy()
                self._emit(
                    {"event": "environment_destroyed", "environment": environment.identifier}
                )
        except ExecutionEnvironmentError as exc:
            logger.warning("Could not destroy environment %s: %s", environment.identifier, exc)

        session = store.get_session()
        transition(session, SessionStatus.CANCELLED)
        session.environment_id = None
        store.set_session(session)
        store.acquire_lease(force=True)
        store.release_lease()
        return session

    async def finalize(self, *, create_pr: bool = True) -> FinalizeReport:
        store = self._require_store()
        session = store.get_session()
        tasks = store.get_tasks()
        if not all_tasks_pass(tasks):
            incomplete = len(tasks) - count_completed(tasks)
            raise SessionStateError(
                f"{incomplete} of {len(tasks)} tasks are still incomplete."
                if tasks
                else "The session has no tasks."
            )
        if session.status is not SessionStatus.COMPLETE:
            raise SessionStateError(
                f"Session is {session.status.value}, not complete. "
                "Run `loopkeeper resume` so the agent can confirm completion."
            )

        report = FinalizeReport()
        store.acquire_lease()
        try:
            environment = self.environment_for(session)
            if session.environment_id and await environment.exists():
                async for line in environment.stream(
                    ["git", "push", "-u", "origin", session.branch], cwd=environment.repo_dir
                ):
                    logger.debug("git push: %s", line)
                report.pushed = True
                self._emit({"event": "branch_pushed", "branch": session.branch})

                if create_pr:
                    report.pr_url, report.pr_error = await self._open_pull_request(
                        environment, tasks, store.read_requirements()
                    )

                await environment.destroy()
                report.environment_destroyed = True
            else:
                logger.warning("No environment for session %s; skipping push.", session.project_id)

            session = store.get_session()
            transition(session, SessionStatus.DONE)
            session.environment_id = None
            store.set_session(session)
        finally:
            store.release_lease()
        return report

    async def _open_pull_request(
        self, environment: ExecutionEnvironment, tasks: list[Task], requirements: str
    ) -> tuple[str | None, str | None]:
        command = [
            "gh",
            "pr",
            "create",
            "--title",
            build_pr_title(tasks),
            "--body",
            build_pr_body(tasks, requirements),
        ]
        lines: list[str] = []
        try:
            async for line in environment.stream(command, cwd=environment.repo_dir):
                lines.append(line)
        except EnvironmentCommandError as exc:
            logger.warning("Pull request creation failed: %s", exc)
            return None, str(exc)
        urls = [line.strip() for line in lines if line.strip().startswith("http")]
        url = urls[-1] if urls else None
        self._emit({"event": "pull_request_created", "url": url})
        return url, None

    def status(self, session_id: str | None = None) -> dict[str, Any]:
        store = self._require_store(session_id)
        session = store.get_session()
        tasks = store.get_tasks()
        history = store.get_history()
        outcome = store.get_raw_outcome()
        question = None
        if (
            isinstance(outcome, dict)
            and str(outcome.get("status", "")).upper() == OutcomeStatus.NEEDS_INPUT.value
        ):
            question = outcome.get("question")
        return {
            "session": session.to_dict(),
            "tasks": {
                "total": len(tasks),
                "completed": count_completed(tasks),
                "items": [task.to_dict() for task in tasks],
            },
            "outcome": outcome,
            "question": question,
            "history": [entry.to_dict() for entry in history[-5:]],
            "lease": store.active_lease(),
            "has_response": store.read_response() is not None,
        }

    def sessions(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for store in list_sessions(self.home):
            try:
                session = store.get_session()
                tasks = store.get_tasks()
            except StateError as exc:
                logger.warning("Skipping unreadable session %s: %s", store.project_id, exc)
                continue
            rows.append(
                {
                    "project_id": session.project_id,
                    "repo": session.repo,
                    "branch": session.branch,
                    "status": session.status.value,
                    "pause_reason": session.pause_reason.value if session.pause_reason else None,
                    "iteration": session.iteration,
                    "tasks_completed": count_completed(tasks),
                    "tasks_total": len(tasks),
                    "current": session.project_id == self.project_id,
                }
            )
        return rows
