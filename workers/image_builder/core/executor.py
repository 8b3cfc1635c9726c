"""
Command execution: where builder steps run and how engine calls are made.

Two builder executors share one interface:
  - HostExecutor: run toolchain commands directly in the workspace.
  - ContainerExecutor: one long-lived builder container per run, workspace
    bind-mounted at the definition's builder workdir, steps via ``exec``.

ImageEngine wraps the two engine calls the runtime stage needs
(``build`` and ``image inspect``).

Every call returns a CommandResult.  Timeouts and missing binaries are
reported as exit code -1 with a descriptive stderr, never raised.
"""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from image_builder.core.errors import ToolchainResolutionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1800


@dataclass
class CommandResult:
    """Outcome of one subprocess call."""

    argv: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command(self) -> str:
        return shlex.join(self.argv)


def run_command(
    argv: List[str],
    cwd: Optional[Path] = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> CommandResult:
    """Execute *argv* and capture (stdout, stderr, exit_code, duration)."""
    logger.debug("exec: %s (cwd=%s)", shlex.join(argv), cwd)
    t0 = time.monotonic()
    try:
        result = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return CommandResult(
            argv=list(argv),
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            argv=list(argv),
            exit_code=-1,
            stderr=f"TIMEOUT after {timeout}s",
            duration_ms=int((time.monotonic() - t0) * 1000),
            timed_out=True,
        )
    except FileNotFoundError:
        return CommandResult(
            argv=list(argv),
            exit_code=-1,
            stderr=f"command not found: {argv[0]}",
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
    except OSError as e:
        return CommandResult(
            argv=list(argv),
            exit_code=-1,
            stderr=str(e),
            duration_ms=int((time.monotonic() - t0) * 1000),
        )


# =============================================================================
# Builder executors
# =============================================================================

class Executor:
    """Runs builder steps with the workspace as working directory."""

    kind = "base"

    def __init__(self, workspace: Path, timeout: int = DEFAULT_TIMEOUT):
        self.workspace = Path(workspace)
        self.timeout = timeout

    def __enter__(self) -> Executor:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def start(self):
        """Acquire whatever the executor needs.  No-op by default."""

    def close(self):
        """Release it again.  Must be safe to call after a failed start."""

    def run(self, argv: List[str]) -> CommandResult:
        raise NotImplementedError

    @property
    def image(self) -> Optional[str]:
        return None

    @property
    def container_id(self) -> Optional[str]:
        return None


class HostExecutor(Executor):
    """Toolchain installed on the host (rustup + cargo on PATH)."""

    kind = "host"

    def run(self, argv: List[str]) -> CommandResult:
        return run_command(argv, cwd=self.workspace, timeout=self.timeout)


class ContainerExecutor(Executor):
    """
    Builder container: ``<engine> run -d`` once, ``<engine> exec`` per step,
    ``<engine> rm -f`` on close.  Container names are unique per run so
    independent pipelines never share one.
    """

    kind = "container"

    def __init__(
        self,
        workspace: Path,
        image: str,
        workdir: str = "/app",
        engine: str = "docker",
        timeout: int = DEFAULT_TIMEOUT,
        name: Optional[str] = None,
    ):
        super().__init__(workspace, timeout)
        self._image = image
        self.workdir = workdir
        self.engine = engine
        self.name = name or f"image-builder-{uuid.uuid4().hex[:12]}"
        self._container_id: Optional[str] = None

    @property
    def image(self) -> Optional[str]:
        return self._image

    @property
    def container_id(self) -> Optional[str]:
        return self._container_id

    def start(self):
        argv = [
            self.engine, "run", "-d",
            "--name", self.name,
            "-v", f"{self.workspace.resolve()}:{self.workdir}",
            "-w", self.workdir,
            "--entrypoint", "sleep",
            self._image, "infinity",
        ]
        result = run_command(argv, timeout=self.timeout)
        if not result.ok:
            raise ToolchainResolutionError(
                f"Could not start builder container from {self._image}",
                diagnostic=result.stderr,
            )
        self._container_id = result.stdout.strip() or None
        logger.info("Builder container %s started from %s", self.name, self._image)

    def run(self, argv: List[str]) -> CommandResult:
        exec_argv = [self.engine, "exec", "-w", self.workdir, self.name] + list(argv)
        result = run_command(exec_argv, timeout=self.timeout)
        # Record the step as it ran inside the container
        result.argv = list(argv)
        return result

    def close(self):
        if self._container_id is None:
            return
        # Hand bind-mounted output back to the invoking user before removal
        if hasattr(os, "getuid"):
            chown = run_command(
                [self.engine, "exec", self.name, "chown", "-R",
                 f"{os.getuid()}:{os.getgid()}", self.workdir],
                timeout=120,
            )
            if not chown.ok:
                logger.warning("chown of %s failed: %s", self.workdir, chown.stderr.strip())
        result = run_command([self.engine, "rm", "-f", self.name], timeout=120)
        if not result.ok:
            logger.warning("Failed to remove builder container %s: %s", self.name, result.stderr.strip())
        else:
            logger.info("Builder container %s removed", self.name)
        self._container_id = None


# =============================================================================
# Runtime image engine
# =============================================================================

class ImageEngine:
    """The two container-engine calls the runtime stage makes."""

    def __init__(self, binary: str = "docker", timeout: int = DEFAULT_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def build(self, context_dir: Path, tag: str) -> CommandResult:
        return run_command(
            [self.binary, "build", "-t", tag, str(context_dir)],
            timeout=self.timeout,
        )

    def inspect(self, tag: str) -> CommandResult:
        return run_command(
            [self.binary, "image", "inspect", "--format", "{{json .}}", tag],
            timeout=120,
        )
