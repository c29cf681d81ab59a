from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from loopkeeper.agents.base import (
    AgentProcessError,
    AgentRequest,
    AgentRunError,
    AgentRunner,
    AgentRunResult,
    AgentTimeoutError,
)
from loopkeeper.environments.base import ExecutionEnvironment, ExecutionEnvironmentError

logger = logging.getLogger(__name__)


class ClaudeCodeRunner(AgentRunner):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        timeout_seconds: float = 3600.0,
        output_hook: Callable[[str], None] | None = None,
    ) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.output_hook = output_hook

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "-p", request.prompt]
        if request.system_prompt:
            command.extend(["--append-system-prompt", request.system_prompt])
        command.extend(
            [
                "--dangerously-skip-permissions",
                "--max-turns",
                str(request.max_turns),
                "--output-format",
                "stream-json",
                "--verbose",
            ]
        )
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, list):
                parts = [
                    item["text"]
                    for item in content
                    if isinstance(item, dict) and isinstance(item.get("text"), str)
                ]
                return "".join(parts)
            if isinstance(content, str):
                return content
        if event.get("type") == "result" and isinstance(event.get("result"), str):
            return event["result"]
        content = event.get("content")
        if isinstance(content, str):
            return content
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _collect(
        self, environment: ExecutionEnvironment, request: AgentRequest
    ) -> list[str]:
        chunks: list[str] = []
        parse_buffer = ""
        async for line in environment.stream(self.build_command(request), cwd=request.cwd):
            line = line.strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line)
                continue

            if not isinstance(event, dict):
                continue
            content = self._extract_content(event)
            if content:
                chunks.append(content)
                if self.output_hook is not None:
                    self.output_hook(content)
        if parse_buffer:
            chunks.append(parse_buffer)
        return chunks

    async def run(
        self, environment: ExecutionEnvironment, request: AgentRequest
    ) -> AgentRunResult:
        try:
            chunks = await asyncio.wait_for(
                self._collect(environment, request), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            raise AgentTimeoutError(
                f"Agent run timed out after {self.timeout_seconds:.0f}s",
                agent=self.name,
            ) from exc
        except ExecutionEnvironmentError as exc:
            raise AgentRunError(
                f"Agent run failed: {exc}",
                agent=self.name,
                exit_code=exc.exit_code,
            ) from exc

        if not any(chunk.strip() for chunk in chunks):
            raise AgentProcessError("Agent produced no output.", agent=self.name, exit_code=0)
        logger.debug("Agent produced %d output chunks", len(chunks))
        return AgentRunResult(exit_code=0, output=chunks)
