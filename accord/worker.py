"""
Accord — External Worker

The worker is an opaque process: it receives the task payload as its
last argument, mutates the repository, and exits. Zero is success; a
non-zero exit raises WorkerFailure; exceeding the wall-clock timeout
kills the process and raises WorkerTimeout. Output goes to
`.accord/logs/agent-{id}.log`.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from accord.errors import WorkerFailure, WorkerTimeout
from accord.types import Request

logger = logging.getLogger("accord.worker")

DEFAULT_AGENT_CMD = "claude --dangerously-skip-permissions -p"


@dataclass
class WorkerResult:
    exit_code: int
    duration: float
    log_path: Path | None = None


class Worker(Protocol):
    def run(self, req: Request, payload: str) -> WorkerResult: ...


class SubprocessWorker:
    """Runs the configured agent command under a timeout."""

    def __init__(
        self,
        command: str | list[str] = DEFAULT_AGENT_CMD,
        timeout: float = 600,
        logs_dir: str | Path | None = None,
        cwd: str | Path | None = None,
    ):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.timeout = timeout
        self.logs_dir = Path(logs_dir) if logs_dir else None
        self.cwd = str(cwd) if cwd else None

    def _log_path(self, req: Request) -> Path | None:
        if self.logs_dir is None:
            return None
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self.logs_dir / f"agent-{req.id}.log"

    def run(self, req: Request, payload: str) -> WorkerResult:
        log_path = self._log_path(req)
        cmd = [*self.command, payload]
        t0 = time.time()
        logger.info("Invoking worker for %s (timeout %ss)", req.id, self.timeout)

        out = open(log_path, "w", encoding="utf-8") if log_path else subprocess.DEVNULL
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.cwd,
                stdout=out,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise WorkerTimeout(self.timeout) from e
        except FileNotFoundError as e:
            raise WorkerFailure(127, f"command not found: {self.command[0]}") from e
        finally:
            if log_path:
                out.close()

        duration = time.time() - t0
        if proc.returncode != 0:
            raise WorkerFailure(proc.returncode)
        logger.info("Worker finished %s in %.1fs", req.id, duration)
        return WorkerResult(exit_code=0, duration=duration, log_path=log_path)
