from loopkeeper.agents.base import (
    AgentProcessError,
    AgentRequest,
    AgentRunError,
    AgentRunner,
    AgentRunResult,
    AgentTimeoutError,
)
from loopkeeper.agents.claude import ClaudeCodeRunner
from loopkeeper.agents.prompts import PromptBuilder

__all__ = [
    "AgentProcessError",
    "AgentRequest",
    "AgentRunError",
    "AgentRunResult",
    "AgentRunner",
    "AgentTimeoutError",
    "ClaudeCodeRunner",
    "PromptBuilder",
]
