from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


class ExecutionEnvironmentError(RuntimeError):
    """Raised when an operation against the execution environment fails."""

    def __init__(
        self,
        message: str,
        *,
        environment: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.environment = environment
        self.exit_code = exit_code
        self.retriable = retriable


class EnvironmentProvisionError(ExecutionEnvironmentError):
    """Raised when the environment cannot be created or found."""


class EnvironmentSetupError(ExecutionEnvironmentError):
    """Raised when the environment exists but could not be made ready."""


class EnvironmentCommandError(ExecutionEnvironmentError):
    """Raised when a command or file transfer inside the environment fails."""


class ExecutionEnvironment(ABC):
    """Isolated place where the agent runs, addressed by absolute paths."""

    identifier: str
    session_dir: str
    repo_dir: str

    def session_path(self, filename: str) -> str:
        return f"{self.session_dir.rstrip('/')}/{filename}"

    @abstractmethod
    async def exists(self) -> bool:
        """Return whether the environment is currently provisioned."""

    @abstractmethod
    async def create(self) -> None:
        """Provision the environment."""

    @abstractmethod
    async def destroy(self) -> None:
        """Tear the environment down, abandoning any in-flight work."""

    @abstractmethod
    async def prepare(self, clone_url: str, branch: str) -> None:
        """Create working directories and check out the repository."""

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Replace ``path`` inside the environment with ``content``."""

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Return the content of ``path`` inside the environment."""

    @abstractmethod
    async def remove_file(self, path: str) -> None:
        """Delete ``path`` inside the environment if present."""

    @abstractmethod
    async def stream(self, command: list[str], cwd: str | None = None) -> AsyncIterator[str]:
        """Run ``command`` and yield output lines; raise on non-zero exit."""

    async def is_loop_running(self) -> bool:
        return False
