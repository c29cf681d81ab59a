from __future__ import annotations

import asyncio
import base64
import posixpath
import shlex
from collections.abc import AsyncIterator

from loopkeeper.environments.base import (
    EnvironmentCommandError,
    EnvironmentProvisionError,
    EnvironmentSetupError,
    ExecutionEnvironment,
    ExecutionEnvironmentError,
)

# Exit status used by read_file when the remote path does not exist.
MISSING_FILE_EXIT = 44


class SpriteEnvironment(ExecutionEnvironment):
    """Remote VM managed through the ``sprite`` CLI."""

    def __init__(
        self,
        name: str,
        *,
        binary: str = "sprite",
        session_dir: str = "/var/local/loopkeeper/session",
        repo_dir: str = "/var/local/loopkeeper/repo",
    ) -> None:
        self.identifier = name
        self.binary = binary
        self.session_dir = session_dir
        self.repo_dir = repo_dir

    def build_exec_command(self, shell_command: str) -> list[str]:
        return [self.binary, "exec", "-s", self.identifier, "--", "sh", "-c", shell_command]

    def _spawn_error(self, exc: OSError) -> ExecutionEnvironmentError:
        if isinstance(exc, FileNotFoundError):
            return EnvironmentProvisionError(
                f"sprite binary not found: {self.binary}",
                environment=self.identifier,
                retriable=False,
            )
        return EnvironmentCommandError(
            f"Could not start sprite: {exc}",
            environment=self.identifier,
            retriable=False,
        )

    async def _run(self, args: list[str], stdin: bytes | None = None) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise self._spawn_error(exc) from exc
        stdout, stderr = await process.communicate(stdin)
        return (
            process.returncode if process.returncode is not None else 1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def _exec(self, shell_command: str, stdin: bytes | None = None) -> str:
        code, stdout, stderr = await self._run(self.build_exec_command(shell_command), stdin)
        if code != 0:
            raise EnvironmentCommandError(
                f"sprite exec failed with exit code {code}: {stderr}",
                environment=self.identifier,
                exit_code=code,
                retriable=code != MISSING_FILE_EXIT,
            )
        return stdout

    async def exists(self) -> bool:
        code, stdout, _ = await self._run([self.binary, "list"])
        if code != 0:
            return False
        return any(self.identifier in line.split() for line in stdout.splitlines())

    async def create(self) -> None:
        code, stdout, stderr = await self._run([self.binary, "create", self.identifier])
        if code != 0:
            raise EnvironmentProvisionError(
                f"Failed to create sprite {self.identifier}: {stderr or stdout.strip()}",
                environment=self.identifier,
                exit_code=code,
                retriable=False,
            )

    async def destroy(self) -> None:
        await self._run([self.binary, "destroy", "-s", self.identifier, "--force"])

    async def is_loop_running(self) -> bool:
        try:
            output = await self._exec("pgrep -f 'claude -p' || true")
        except EnvironmentCommandError:
            return False
        return bool(output.strip())

    async def prepare(self, clone_url: str, branch: str) -> None:
        try:
            await self._exec(
                f"mkdir -p {shlex.quote(self.session_dir)} {shlex.quote(self.repo_dir)}"
            )
            if not clone_url:
                return
            git_dir = shlex.quote(posixpath.join(self.repo_dir, ".git"))
            clone = shlex.join(["git", "clone", "--branch", branch, clone_url, self.repo_dir])
            await self._exec(f"test -d {git_dir} || {clone}")
        except EnvironmentCommandError as exc:
            raise EnvironmentSetupError(
                f"Environment setup failed: {exc}",
                environment=self.identifier,
                exit_code=exc.exit_code,
                retriable=False,
            ) from exc

    async def write_file(self, path: str, content: str) -> None:
        # Content travels on stdin; argv is capped at 128 KiB per argument.
        encoded = base64.b64encode(content.encode("utf-8"))
        parent = shlex.quote(posixpath.dirname(path) or "/")
        await self._exec(f"mkdir -p {parent} && base64 -d > {shlex.quote(path)}", stdin=encoded)

    async def read_file(self, path: str) -> str:
        quoted = shlex.quote(path)
        return await self._exec(f"test -f {quoted} || exit {MISSING_FILE_EXIT}; cat {quoted}")

    async def remove_file(self, path: str) -> None:
        await self._exec(f"rm -f {shlex.quote(path)}")

    async def stream(self, command: list[str], cwd: str | None = None) -> AsyncIterator[str]:
        shell_command = f"cd {shlex.quote(cwd or self.repo_dir)} && {shlex.join(command)}"
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_exec_command(shell_command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise self._spawn_error(exc) from exc

        if process.stdout is None:
            raise EnvironmentCommandError(
                "sprite exec did not expose stdout.",
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
