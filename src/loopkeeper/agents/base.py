from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from loopkeeper.environments.base import ExecutionEnvironment


class AgentRunError(RuntimeError):
    """Raised when an agent invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code


class AgentTimeoutError(AgentRunError):
    """Raised when an agent invocation exceeds its timeout."""


class AgentProcessError(AgentRunError):
    """Raised when the agent process cannot be started or produces nothing."""


@dataclass(slots=True)
class AgentRequest:
    prompt: str
    system_prompt: str = ""
    max_turns: int = 200
    cwd: str | None = None


@dataclass(slots=True)
class AgentRunResult:
    exit_code: int
    output: list[str] = field(default_factory=list)


class AgentRunner(ABC):
    name: str = "agent"

    @abstractmethod
    async def run(
        self, environment: ExecutionEnvironment, request: AgentRequest
    ) -> AgentRunResult:
        """Run one agent invocation inside ``environment`` to completion."""
