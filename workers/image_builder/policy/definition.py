"""
Pipeline definition: every constant the two stages agree on.

The definition is the only place the target ABI and build profile live.
They are not runtime parameters: a different ABI means a different
definition (``PipelineDefinition.v1()`` or a JSON file), never a CLI flag.

Contract: ``artifact_path_rel()`` is a pure function of
(target_triple, profile, binary_name).  The builder stage produces the
artifact there and the runtime stage looks for it there; nothing else
about placement is negotiated.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from image_builder import DEFINITION_ID


_TRIPLE_RE = re.compile(r"^[a-z0-9_]+-[a-z0-9_]+-[a-z0-9_]+(-[a-z0-9_]+)?$")
_PROFILE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")

# Cargo output directory for the built-in profiles; custom profiles use their own name.
_PROFILE_DIRS: Dict[str, str] = {
    "dev": "debug",
    "test": "debug",
    "release": "release",
    "bench": "release",
}

# Target-triple architecture → (ELF e_machine, ELF class)
_ARCH_MACHINES: Dict[str, Tuple[str, int]] = {
    "x86_64": ("EM_X86_64", 64),
    "aarch64": ("EM_AARCH64", 64),
    "riscv64gc": ("EM_RISCV", 64),
    "powerpc64le": ("EM_PPC64", 64),
    "s390x": ("EM_S390", 64),
    "i686": ("EM_386", 32),
    "i586": ("EM_386", 32),
    "armv7": ("EM_ARM", 32),
    "arm": ("EM_ARM", 32),
}


class PipelineDefinition(BaseModel):
    """Frozen recipe constants shared by the builder and runtime stages."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    definition_id: str = DEFINITION_ID

    # Builder stage
    builder_image: str = "rust:1.91"
    builder_workdir: str = "/app"
    target_triple: str = "x86_64-unknown-linux-musl"
    profile: str = "release"
    binary_name: str = "rust_app"

    # Runtime stage
    runtime_image: str = "alpine:latest"
    runtime_packages: List[str] = Field(default_factory=lambda: ["ca-certificates"])
    package_install: str = "apk add --no-cache"
    runtime_workdir: str = "/usr/local/bin"
    require_static: bool = True
    image_tag: Optional[str] = None

    @field_validator("target_triple")
    @classmethod
    def validate_triple(cls, v: str) -> str:
        if not _TRIPLE_RE.match(v):
            raise ValueError(
                f"target_triple '{v}' is not of the form <arch>-<vendor>-<os>[-<env>]"
            )
        return v

    @field_validator("profile")
    @classmethod
    def validate_profile(cls, v: str) -> str:
        if not _PROFILE_RE.match(v):
            raise ValueError(f"profile '{v}' is not a valid cargo profile name")
        return v

    @field_validator("binary_name")
    @classmethod
    def validate_binary_name(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError(f"binary_name '{v}' must be a plain file name")
        return v

    @field_validator("builder_workdir", "runtime_workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"working directory '{v}' must be absolute")
        return v

    # ── Canonical definitions ────────────────────────────────────────

    @classmethod
    def v1(cls) -> PipelineDefinition:
        """The rust:1.91 → alpine:latest recipe, x86_64 musl, release."""
        return cls()

    @classmethod
    def from_file(cls, path: Path) -> PipelineDefinition:
        """Load a JSON definition.  Omitted fields take the v1 defaults."""
        return cls.model_validate_json(Path(path).read_text())

    # ── Derived values ───────────────────────────────────────────────

    @property
    def target_arch(self) -> str:
        return self.target_triple.split("-", 1)[0]

    def profile_dir(self) -> str:
        """Directory cargo writes the profile's output to."""
        return _PROFILE_DIRS.get(self.profile, self.profile)

    def artifact_path_rel(self) -> str:
        """Deterministic artifact location, relative to the context root."""
        return f"target/{self.target_triple}/{self.profile_dir()}/{self.binary_name}"

    def cargo_build_argv(self) -> List[str]:
        argv = ["cargo", "build"]
        if self.profile == "release":
            argv.append("--release")
        elif self.profile != "dev":
            argv += ["--profile", self.profile]
        return argv + ["--target", self.target_triple]

    def target_add_argv(self) -> List[str]:
        return ["rustup", "target", "add", self.target_triple]

    def entry_command(self) -> List[str]:
        """Runtime CMD: the artifact, no arguments, relative to the workdir."""
        return [f"./{self.binary_name}"]

    def expected_machine(self) -> Optional[Tuple[str, int]]:
        """(e_machine, ELF class) for the triple, or None if unknown."""
        return _ARCH_MACHINES.get(self.target_arch)

    def resolved_image_tag(self) -> str:
        return self.image_tag or f"{self.binary_name}:latest"
