"""
Accord — Version Control Interface

The sync engine and the dependency notifier only talk to a `Vcs`. GitVcs
drives the `git` executable through subprocess; tests substitute an
in-memory implementation so retry and conflict handling run without a
real repository.

Error mapping:
  push rejected (remote moved on)      → PushRejected   (retryable)
  rebase stopped on conflicting paths  → ConflictError  (never retried)
  anything else git refuses            → SyncError
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Protocol

from accord.errors import ConflictError, SyncError

logger = logging.getLogger("accord.vcs")

_REJECTION_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "failed to push some refs")


class PushRejected(SyncError):
    """The remote refused a publish because it has commits we lack."""
    pass


class Vcs(Protocol):
    def pull(self) -> None: ...
    def commit(self, message: str) -> bool: ...
    def push(self) -> None: ...
    def rebase(self) -> None: ...
    def changed_since(self, path: str, since: str = "HEAD~1") -> bool: ...


class GitVcs:
    """A working tree driven through the git CLI."""

    def __init__(
        self,
        workdir: str | Path,
        remote: str = "origin",
        branch: str | None = None,
        author_name: str | None = None,
        author_email: str | None = None,
        timeout: float = 120.0,
    ):
        self.workdir = Path(workdir)
        self.remote = remote
        self._branch = branch
        self.author_name = author_name or os.environ.get("ACCORD_GIT_AUTHOR_NAME")
        self.author_email = author_email or os.environ.get("ACCORD_GIT_AUTHOR_EMAIL")
        self.timeout = timeout

    # ── Plumbing ────────────────────────────────────────────────

    def _identity(self) -> list[str]:
        args = []
        if self.author_name:
            args += ["-c", f"user.name={self.author_name}"]
        if self.author_email:
            args += ["-c", f"user.email={self.author_email}"]
        return args

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git", *self._identity(), *args]
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.workdir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise SyncError(f"git {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise SyncError("git executable not found") from e
        if check and proc.returncode != 0:
            raise SyncError(f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.stdout.strip()}")
        return proc

    @property
    def branch(self) -> str:
        if self._branch is None:
            proc = self._run("rev-parse", "--abbrev-ref", "HEAD", check=False)
            name = proc.stdout.strip()
            self._branch = name if proc.returncode == 0 and name != "HEAD" else "main"
        return self._branch

    def is_repo(self) -> bool:
        return (self.workdir / ".git").exists()

    def has_remote(self) -> bool:
        proc = self._run("remote", check=False)
        return self.remote in proc.stdout.split()

    def remote_has_branch(self) -> bool:
        proc = self._run("ls-remote", "--heads", self.remote, self.branch, check=False)
        return proc.returncode == 0 and bool(proc.stdout.strip())

    def conflicted_paths(self) -> list[str]:
        proc = self._run("diff", "--name-only", "--diff-filter=U", check=False)
        return [line for line in proc.stdout.splitlines() if line.strip()]

    # ── Operations ──────────────────────────────────────────────

    @classmethod
    def clone(cls, url: str, dest: str | Path, **kwargs) -> GitVcs:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            proc = subprocess.run(
                ["git", "clone", url, str(dest)],
                capture_output=True, text=True, timeout=kwargs.get("timeout", 120.0),
            )
        except subprocess.TimeoutExpired as e:
            raise SyncError(f"git clone {url} timed out") from e
        if proc.returncode != 0:
            raise SyncError(f"git clone {url} failed: {proc.stderr.strip()}")
        return cls(dest, **kwargs)

    def pull(self) -> None:
        """Rebase local commits onto the remote branch."""
        if not self.has_remote() or not self.remote_has_branch():
            logger.debug("No remote branch to pull in %s", self.workdir)
            return
        proc = self._run("pull", "--rebase", "--autostash", "--quiet",
                         self.remote, self.branch, check=False)
        if proc.returncode == 0:
            return
        conflicts = self.conflicted_paths()
        if conflicts:
            self._run("rebase", "--abort", check=False)
            raise ConflictError("same-record conflict while rebasing onto the remote", conflicts)
        raise SyncError(f"git pull failed: {proc.stderr.strip()}")

    def rebase(self) -> None:
        self.pull()

    def commit(self, message: str) -> bool:
        """Stage everything and commit. False when there was nothing to commit."""
        self._run("add", "-A")
        if self._run("diff", "--cached", "--quiet", check=False).returncode == 0:
            return False
        self._run("commit", "--quiet", "-m", message)
        return True

    def push(self) -> None:
        if not self.has_remote():
            logger.debug("No remote configured for %s; nothing to publish", self.workdir)
            return
        proc = self._run("push", "--quiet", self.remote, f"HEAD:{self.branch}", check=False)
        if proc.returncode == 0:
            return
        stderr = proc.stderr.strip()
        if any(marker in stderr for marker in _REJECTION_MARKERS):
            raise PushRejected(f"push rejected: {stderr}")
        raise SyncError(f"git push failed: {stderr}")

    def changed_since(self, path: str, since: str = "HEAD~1") -> bool:
        proc = self._run("diff", "--quiet", since, "--", path, check=False)
        if proc.returncode == 1:
            return True
        if proc.returncode != 0:
            logger.warning("Cannot diff %s against %s: %s", path, since, proc.stderr.strip())
        return False
