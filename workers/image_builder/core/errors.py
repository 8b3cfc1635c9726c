"""
Pipeline errors: one class per failure kind.

Every error is fatal to the whole pipeline.  Nothing here is caught
and retried locally; the runner maps any ``PipelineError`` to the
terminal failure state of the stage that raised it and exits non-zero.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class.  ``stage`` is ``"builder"`` or ``"runtime"``."""

    kind = "pipeline"

    def __init__(self, message: str, stage: str, diagnostic: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.diagnostic = diagnostic

    def __str__(self) -> str:
        if self.diagnostic:
            return f"{self.message}\n{self.diagnostic}"
        return self.message


class ContextError(PipelineError):
    """Build Context missing, unreadable, or without a build manifest."""

    kind = "context"

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        super().__init__(message, stage="builder", diagnostic=diagnostic)


class ToolchainResolutionError(PipelineError):
    """Target ABI cannot be registered with the toolchain."""

    kind = "toolchain"

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        super().__init__(message, stage="builder", diagnostic=diagnostic)


class CompilationError(PipelineError):
    """Compiler exited non-zero.  ``diagnostic`` is its stderr, verbatim."""

    kind = "compilation"

    def __init__(self, message: str, diagnostic: Optional[str] = None, exit_code: int = -1):
        super().__init__(message, stage="builder", diagnostic=diagnostic)
        self.exit_code = exit_code


class ArtifactLocationError(PipelineError):
    """Hand-off artifact not where (or not what) the runtime stage expects."""

    kind = "artifact_location"

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        super().__init__(message, stage="runtime", diagnostic=diagnostic)


class PackagingError(PipelineError):
    """Container engine failed to build or describe the runtime image."""

    kind = "packaging"

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        super().__init__(message, stage="runtime", diagnostic=diagnostic)
