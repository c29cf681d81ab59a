from __future__ import annotations

import asyncio
import shutil
from collections.abc import AsyncIterator
from pathlib import Path

from loopkeeper.environments.base import (
    EnvironmentCommandError,
    EnvironmentSetupError,
    ExecutionEnvironment,
)


class LocalEnvironment(ExecutionEnvironment):
    """Environment backed by a directory tree on this machine."""

    def __init__(self, root: Path, identifier: str = "local") -> None:
        self.root = root.resolve()
        self.identifier = identifier
        self.session_dir = str(self.root / "session")
        self.repo_dir = str(self.root / "repo")

    async def exists(self) -> bool:
        return self.root.is_dir()

    async def create(self) -> None:
        Path(self.session_dir).mkdir(parents=True, exist_ok=True)
        Path(self.repo_dir).mkdir(parents=True, exist_ok=True)

    async def destroy(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)

    async def prepare(self, clone_url: str, branch: str) -> None:
        await self.create()
        repo = Path(self.repo_dir)
        if (repo / ".git").exists() or not clone_url:
            return
        if any(repo.iterdir()):
            raise EnvironmentSetupError(
                f"Repository directory {repo} is not empty and not a git checkout.",
                environment=self.identifier,
                retriable=False,
            )
        try:
            async for _ in self.stream(
                ["git", "clone", "--branch", branch, clone_url, str(repo)], cwd=str(self.root)
            ):
                pass
        except EnvironmentCommandError as exc:
            raise EnvironmentSetupError(
                f"Failed to clone repository: {exc}",
                environment=self.identifier,
                exit_code=exc.exit_code,
                retriable=False,
            ) from exc

    async def write_file(self, path: str, content: str) -> None:
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise EnvironmentCommandError(
                f"Failed to write {path}: {exc}", environment=self.identifier
            ) from exc

    async def read_file(self, path: str) -> str:
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise EnvironmentCommandError(
                f"File not found in environment: {path}",
                environment=self.identifier,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise EnvironmentCommandError(
                f"Failed to read {path}: {exc}", environment=self.identifier
            ) from exc

    async def remove_file(self, path: str) -> None:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass

    async def stream(self, command: list[str], cwd: str | None = None) -> AsyncIterator[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd or self.repo_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise EnvironmentCommandError(
                f"Command not found: {command[0]}",
                environment=self.identifier,
                exit_code=127,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise EnvironmentCommandError(
                f"Could not start {command[0]!r}: {exc}",
                environment=self.identifier,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise EnvironmentCommandError(
                "Local process did not expose stdout.",
                environment=self.identifier,
                retriable=False,
            )

        try:
            async for raw_line in process.stdout:
                yield raw_line.decode("utf-8", errors="replace").rstrip("\n")
            return_code = await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
        if return_code != 0:
            raise EnvironmentCommandError(
                f"Command {command[0]!r} exited with code {return_code}",
                environment=self.identifier,
                exit_code=return_code,
                retriable=False,
            )
