from __future__ import annotations

from importlib import resources
from string import Template

from loopkeeper.agents.base import AgentRequest
from loopkeeper.environments.base import ExecutionEnvironment

FALLBACK_PROMPTS = {
    "iterate.md": """
Iteration $iteration. Read $session_dir/tasks.json, pick the first task with
"passes": false, implement it, verify its acceptance criteria, set its
"passes" to true and commit. If $session_dir/response.txt exists, read it as
the operator's answer and delete it. Finally write $session_dir/state.json:
{"status": "CONTINUE|DONE|NEEDS_INPUT|BLOCKED", "summary": "...",
"iteration": $iteration, "question": null, "error": null}.
""",
    "context.md": """
You are working autonomously on the repository in $repo_dir. Session files
live in $session_dir. Work on exactly one task per invocation.
""",
    "plan.md": """
Read the requirements in $session_dir/prd.md and write an ordered task list to
$session_dir/tasks.json: a JSON array of objects with integer "id",
"description", "category", "steps", "acceptance_criteria" and "passes": false.
""",
}

REFRESH_NOTE = """

# Refresh mode

Read the existing tasks from $session_dir/tasks.json. Keep tasks that already
pass unchanged, re-evaluate incomplete ones against the current code, add new
tasks where needed and remove obsolete ones.
"""


def load_template(name: str) -> str:
    try:
        return resources.files("loopkeeper.prompts").joinpath(name).read_text(encoding="utf-8")
    except (FileNotFoundError, ModuleNotFoundError):
        return FALLBACK_PROMPTS[name].strip()


class PromptBuilder:
    """Renders agent requests from the packaged prompt templates."""

    def __init__(self, *, max_turns: int = 200, plan_max_turns: int = 100) -> None:
        self.max_turns = max_turns
        self.plan_max_turns = plan_max_turns

    @staticmethod
    def _render(name: str, environment: ExecutionEnvironment, **values: object) -> str:
        return Template(load_template(name)).safe_substitute(
            session_dir=environment.session_dir,
            repo_dir=environment.repo_dir,
            **values,
        ).strip()

    def iteration(self, environment: ExecutionEnvironment, iteration: int) -> AgentRequest:
        return AgentRequest(
            prompt=self._render("iterate.md", environment, iteration=iteration),
            system_prompt=self._render("context.md", environment),
            max_turns=self.max_turns,
            cwd=environment.repo_dir,
        )

    def plan(self, environment: ExecutionEnvironment, *, refresh: bool) -> AgentRequest:
        prompt = self._render("plan.md", environment)
        if refresh:
            prompt += Template(REFRESH_NOTE).safe_substitute(session_dir=environment.session_dir)
        return AgentRequest(
            prompt=prompt,
            system_prompt=self._render("context.md", environment),
            max_turns=self.plan_max_turns,
            cwd=environment.repo_dir,
        )
