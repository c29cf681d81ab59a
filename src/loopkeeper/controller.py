from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loopkeeper.agents.base import AgentRunError, AgentRunner
from loopkeeper.agents.prompts import PromptBuilder
from loopkeeper.config import LoopkeeperConfig
from loopkeeper.environments.base import ExecutionEnvironment
from loopkeeper.models import (
    HistoryEntry,
    InvalidDocumentError,
    IterationOutcome,
    PauseReason,
    SessionConfig,
    SessionStatus,
    Task,
    count_completed,
    parse_tasks,
)
from loopkeeper.session import (
    FATAL_PAUSE_REASONS,
    RUNNABLE_STATUSES,
    Action,
    SessionStateError,
    decide,
    transition,
)
from loopkeeper.state.store import SessionStore
from loopkeeper.sync import EnvironmentSync, SyncPolicy, SyncReport

logger = logging.getLogger(__name__)

AGENT_FAILED_STATUS = "AGENT_FAILED"
NO_OUTCOME_SUMMARY = "No outcome reported; treating iteration as no new information."

EventHook = Callable[[dict[str, Any]], None]


class _LeftRunning(Exception):
    pass


@dataclass(slots=True)
class LoopResult:
    status: SessionStatus
    iteration: int
    pause_reason: PauseReason | None = None
    message: str = ""
    outcome: IterationOutcome | None = None

    @property
    def exit_code(self) -> int:
        if self.status is SessionStatus.PAUSED and self.pause_reason in FATAL_PAUSE_REASONS:
            return 1
        return 0


class IterationController:
    """Drives the agent one iteration at a time until the session halts."""

    def __init__(
        self,
        store: SessionStore,
        environment: ExecutionEnvironment,
        runner: AgentRunner,
        config: LoopkeeperConfig,
        *,
        prompts: PromptBuilder | None = None,
        sync: EnvironmentSync | None = None,
        event_hook: EventHook | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.environment = environment
        self.runner = runner
        self.config = config
        self.prompts = prompts or PromptBuilder(
            max_turns=config.agent.max_turns,
            plan_max_turns=config.agent.plan_max_turns,
        )
        self.event_hook = event_hook
        self.sync = sync or EnvironmentSync(
            store,
            environment,
            SyncPolicy(
                max_attempts=config.sync.max_attempts,
                backoff_seconds=config.sync.backoff_seconds,
            ),
            event_hook=event_hook,
            sleep=sleep,
        )
        self._clock = clock
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _commit(self, mutate: Callable[[SessionConfig], Any]) -> SessionConfig | None:
        """Apply ``mutate`` to the stored session while it is still running.

        Returns None, leaving the stored status alone, once another process
        (``stop``) has moved the session out of ``running``.
        """

        def _apply(session: SessionConfig) -> None:
            if session.status is not SessionStatus.RUNNING:
                raise _LeftRunning
            mutate(session)

        try:
            return self.store.update_session(_apply)
        except _LeftRunning:
            return None

    def _pause(
        self,
        reason: PauseReason,
        detail: str,
        outcome: IterationOutcome | None = None,
    ) -> LoopResult:
        session = self._commit(
            lambda current: transition(current, SessionStatus.PAUSED, reason=reason, detail=detail)
        )
        if session is None:
            return self._external_result()
        self._emit(
            {
                "event": "session_paused",
                "reason": reason.value,
                "detail": detail,
                "iteration": session.iteration,
            }
        )
        return LoopResult(
            status=session.status,
            iteration=session.iteration,
            pause_reason=reason,
            message=detail,
            outcome=outcome,
        )

    def _external_result(self) -> LoopResult:
        session = self.store.get_session()
        return LoopResult(
            status=session.status,
            iteration=session.iteration,
            pause_reason=session.pause_reason,
            message=f"Session is {session.status.value}.",
        )

    def _halted_externally(self) -> LoopResult | None:
        # `stop` from another shell cancels the session while a pass is in flight.
        if self.store.get_session().status is SessionStatus.RUNNING:
            return None
        return self._external_result()

    def _merge_tasks(self, report: SyncReport) -> list[Task]:
        local = self.store.get_tasks()
        if "tasks" not in report.payloads:
            return local
        try:
            pulled = parse_tasks(report.payloads["tasks"])
        except InvalidDocumentError as exc:
            logger.warning("Ignoring invalid task list from environment: %s", exc)
            return local

        pulled_by_id = {task.id: task for task in pulled}
        unknown = sorted(set(pulled_by_id) - {task.id for task in local})
        if unknown:
            logger.warning("Ignoring tasks added by the agent: %s", unknown)
        for task in local:
            remote = pulled_by_id.get(task.id)
            if remote is None:
                continue
            if task.passes and not remote.passes:
                logger.warning("Agent reset task %s to failing; keeping it passing.", task.id)
                continue
            task.passes = remote.passes
        self.store.set_tasks(local)
        return local

    def _read_outcome(self, report: SyncReport, iteration: int) -> IterationOutcome:
        if "state" not in report.payloads:
            outcome = IterationOutcome.placeholder(iteration, NO_OUTCOME_SUMMARY)
        else:
            try:
                outcome = IterationOutcome.from_dict(report.payloads["state"])
            except InvalidDocumentError as exc:
                logger.warning("Ignoring malformed outcome from agent: %s", exc)
                outcome = IterationOutcome.placeholder(iteration, f"Malformed outcome: {exc}")
        if outcome.iteration != iteration:
            logger.debug(
                "Outcome reports iteration %s during iteration %s", outcome.iteration, iteration
            )
            outcome.iteration = iteration
        self.store.set_outcome(outcome)
        return outcome

    async def run_loop(self) -> LoopResult:
        session = self.store.get_session()
        if session.status not in RUNNABLE_STATUSES:
            raise SessionStateError(
                f"Session {session.project_id} cannot run from status '{session.status.value}'."
            )
        transition(session, SessionStatus.RUNNING)
        session.run_start_iteration = session.iteration
        self.store.set_session(session)

        loop_cfg = self.config.loop
        max_seconds = loop_cfg.max_duration_hours * 3600
        started = self._clock()
        push_failures = 0

        while True:
            halted = self._halted_externally()
            if halted is not None:
                return halted
            session = self.store.get_session()
            next_iteration = session.iteration + 1
            if next_iteration - session.run_start_iteration > loop_cfg.max_iterations:
                return self._pause(
                    PauseReason.MAX_ITERATIONS,
                    f"Reached the limit of {loop_cfg.max_iterations} iterations.",
                )
            elapsed = self._clock() - started
            if elapsed > max_seconds:
                return self._pause(
                    PauseReason.MAX_DURATION,
                    f"Exceeded {loop_cfg.max_duration_hours:g}h of wall-clock time.",
                )

            self._emit({"event": "iteration_started", "iteration": next_iteration})
            self.store.set_outcome(IterationOutcome.placeholder(next_iteration, NO_OUTCOME_SUMMARY))
            push = await self.sync.push_state()
            if not push.ok:
                push_failures += 1
                self._emit(
                    {
                        "event": "iteration_aborted",
                        "iteration": next_iteration,
                        "failed": dict(push.failed),
                    }
                )
                if push_failures >= self.config.sync.max_consecutive_failures:
                    return self._pause(
                        PauseReason.SYNC_FAILED,
                        "Could not push state to the environment: "
                        + ", ".join(sorted(push.failed)),
                    )
                await self._sleep(loop_cfg.poll_interval_seconds)
                continue
            push_failures = 0

            session = self._commit(lambda current: setattr(current, "iteration", next_iteration))
            if session is None:
                return self._external_result()
            agent_error: AgentRunError | None = None
            try:
                await self.runner.run(
                    self.environment, self.prompts.iteration(self.environment, next_iteration)
                )
            except AgentRunError as exc:
                agent_error = exc

            halted = self._halted_externally()
            if halted is not None:
                return halted
            if agent_error is not None:
                self.store.append_history(
                    HistoryEntry(
                        iteration=next_iteration,
                        summary=str(agent_error),
                        tasks_completed=count_completed(self.store.get_tasks()),
                        status=AGENT_FAILED_STATUS,
                    )
                )
                return self._pause(PauseReason.CLAUDE_FAILED, str(agent_error))
            self.store.clear_response()

            pull = await self.sync.pull_state()
            halted = self._halted_externally()
            if halted is not None:
                return halted
            tasks = self._merge_tasks(pull)
            outcome = self._read_outcome(pull, next_iteration)
            history = self.store.append_history(
                HistoryEntry(
                    iteration=next_iteration,
                    summary=outcome.summary,
                    tasks_completed=count_completed(tasks),
                    status=outcome.status.value,
                )
            )
            self._emit(
                {
                    "event": "iteration_finished",
                    "iteration": next_iteration,
                    "status": outcome.status.value,
                    "summary": outcome.summary,
                    "tasks_completed": count_completed(tasks),
                    "tasks_total": len(tasks),
                    "sync_failed": sorted(pull.failed),
                }
            )

            decision = decide(
                outcome,
                tasks,
                history[session.stuck_window_start :],
                loop_cfg.stuck_threshold,
            )
            if decision.action is Action.COMPLETE:
                session = self._commit(
                    lambda current: transition(current, SessionStatus.COMPLETE)
                )
                if session is None:
                    return self._external_result()
                self._emit(
                    {"event": "session_complete", "iteration": next_iteration, "tasks": len(tasks)}
                )
                return LoopResult(
                    status=session.status,
                    iteration=session.iteration,
                    message=decision.message,
                    outcome=outcome,
                )
            if decision.action is Action.PAUSE and decision.reason is not None:
                return self._pause(decision.reason, decision.message, outcome)

            await self._sleep(loop_cfg.poll_interval_seconds)
