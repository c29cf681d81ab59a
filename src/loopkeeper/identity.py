from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from loopkeeper.state.store import compute_project_id


@dataclass(slots=True, frozen=True)
class RepoIdentity:
    remote: str
    directory: str
    branch: str

    @property
    def project_id(self) -> str:
        return compute_project_id(self.remote, self.directory, self.branch)

    @property
    def repo_name(self) -> str:
        """``org/repo`` parsed from the remote URL, or an empty string."""
        path = repo_path_from_remote(self.remote)
        return path or ""

    @property
    def clone_url(self) -> str:
        path = repo_path_from_remote(self.remote)
        if path is None:
            return self.remote
        host = _remote_host(self.remote)
        return f"https://{host}/{path}"


def _remote_host(remote: str) -> str:
    if remote.startswith("git@") and ":" in remote:
        host = remote[len("git@") : remote.index(":")]
        return host if "." in host else "github.com"
    if "://" in remote:
        netloc = remote.split("://", 1)[1].split("/", 1)[0]
        return netloc.rsplit("@", 1)[-1]
    return "github.com"


def repo_path_from_remote(remote: str) -> str | None:
    remote = remote.strip()
    if not remote:
        return None
    if remote.startswith("git@") and ":" in remote:
        path = remote.split(":", 1)[1]
    elif "://" in remote:
        parts = remote.split("://", 1)[1].split("/", 1)
        if len(parts) < 2:
            return None
        path = parts[1]
    else:
        return None
    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return path or None


def _run_git(repo_root: Path, args: list[str]) -> str:
    try:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=repo_root,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError:
        return ""
    if proc.returncode != 0:
        return ""
    return proc.stdout.strip()


def detect_identity(repo_root: Path, branch: str | None = None) -> RepoIdentity:
    repo_root = repo_root.resolve()
    inside = _run_git(repo_root, ["rev-parse", "--is-inside-work-tree"]) == "true"
    remote = _run_git(repo_root, ["remote", "get-url", "origin"]) if inside else ""
    if branch is None:
        branch = _run_git(repo_root, ["rev-parse", "--abbrev-ref", "HEAD"]) if inside else ""
    return RepoIdentity(remote=remote, directory=str(repo_root), branch=branch or "main")
