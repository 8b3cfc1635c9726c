"""
PipelineReceipt schema.

Single authoritative JSON receipt per successful pipeline run.
Records what was built, from which context, with which toolchain,
and what the runtime layer set contains.
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from image_builder import DEFINITION_ID, PIPELINE_NAME, PIPELINE_VERSION
from image_builder.policy.definition import PipelineDefinition


# =============================================================================
# Enums
# =============================================================================

class PipelineState(str, Enum):
    """Pipeline-level state.  BUILD_FAILED, PACKAGE_FAILED, PACKAGED are terminal."""
    START = "START"
    BUILDING = "BUILDING"
    BUILD_FAILED = "BUILD_FAILED"
    BUILT = "BUILT"
    PACKAGING = "PACKAGING"
    PACKAGE_FAILED = "PACKAGE_FAILED"
    PACKAGED = "PACKAGED"


class StepStatus(str, Enum):
    """Status of a single executed step."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    SKIPPED = "SKIPPED"


# =============================================================================
# Build Context identity
# =============================================================================

class ContextFile(BaseModel):
    """A single file of the Build Context snapshot."""
    path_rel: str
    sha256: str
    size_bytes: int


class ContextIdentity(BaseModel):
    """Identity of the Build Context as copied into the workspace."""
    root: str
    manifest: str = "Cargo.toml"
    files: List[ContextFile] = []
    excluded: List[str] = []  # paths dropped by .dockerignore
    snapshot_sha256: str


# =============================================================================
# Toolchain identity
# =============================================================================

class ToolchainIdentity(BaseModel):
    """Record of the builder environment."""
    executor: str  # "host" or "container"
    builder_image: Optional[str] = None
    container_id: Optional[str] = None
    rustc_version: str = "unknown"
    cargo_version: str = "unknown"
    target_triple: str


# =============================================================================
# Steps
# =============================================================================

class StepResult(BaseModel):
    """One executed command within a stage."""
    name: str
    command: str
    exit_code: int
    duration_ms: int = 0
    stdout_path_rel: Optional[str] = None
    stderr_path_rel: Optional[str] = None
    status: StepStatus = StepStatus.SUCCESS


# =============================================================================
# Artifact
# =============================================================================

class ElfMeta(BaseModel):
    """ELF header and linkage facts.  No symbol or DWARF parsing."""
    elf_class: int = 0
    elf_type: str = ""  # ET_EXEC, ET_DYN
    machine: str = ""  # EM_X86_64, EM_AARCH64, ...
    interpreter: Optional[str] = None
    needed: List[str] = []
    build_id: Optional[str] = None
    is_static: bool = False


class ArtifactMeta(BaseModel):
    """The single Compiled Artifact."""
    name: str
    path_rel: str  # relative to the context root inside the builder
    target_triple: str
    profile: str
    sha256: str
    size_bytes: int
    elf: ElfMeta = ElfMeta()


class BuilderRecord(BaseModel):
    """Builder stage outcome."""
    steps: List[StepResult] = []
    artifact: Optional[ArtifactMeta] = None


# =============================================================================
# Runtime layer set
# =============================================================================

class LayerSetManifest(BaseModel):
    """What the runtime image consists of."""
    base_image: str
    packages: List[str] = []
    workdir: str
    files: List[str] = []  # staged files besides the Dockerfile
    cmd: List[str]
    dockerfile_sha256: str
    image_tag: str
    image_id: Optional[str] = None


class RuntimeRecord(BaseModel):
    """Runtime stage outcome."""
    steps: List[StepResult] = []
    layer_set: Optional[LayerSetManifest] = None
    engine_build: bool = False


# =============================================================================
# Top-level receipt
# =============================================================================

class PipelineInfo(BaseModel):
    """Identifies the pipeline package."""
    name: str = PIPELINE_NAME
    version: str = PIPELINE_VERSION
    definition_id: str = DEFINITION_ID


class JobInfo(BaseModel):
    """Run-level metadata."""
    job_id: str
    created_at: str  # ISO 8601
    finished_at: Optional[str] = None
    status: PipelineState = PipelineState.START


class PipelineReceipt(BaseModel):
    """
    Single authoritative receipt for a pipeline run.

    One file per run: pipeline_receipt.json, next to the staged image.
    """
    pipeline: PipelineInfo = PipelineInfo()
    job: JobInfo
    definition: PipelineDefinition
    context: ContextIdentity
    toolchain: ToolchainIdentity
    builder: BuilderRecord = BuilderRecord()
    runtime: RuntimeRecord = RuntimeRecord()
    transitions: List[str] = Field(default_factory=list)
    timings_ms: Dict[str, int] = Field(default_factory=dict)


# =============================================================================
# Helpers
# =============================================================================

def hash_file(path: Path) -> str:
    """SHA-256 of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()
