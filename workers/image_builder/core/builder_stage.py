"""
Builder stage: Build Context in, one Compiled Artifact out.

Phases, each fatal on failure:
  1. copy the Build Context into an isolated workspace
  2. register the target ABI with the toolchain
  3. compile in the definition's profile for that target

The stage ends by publishing an ArtifactHandoff: the artifact's
deterministic path plus the ABI tag it was built for.  That record is
the only thing the runtime stage receives.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from elftools.common.exceptions import ELFError

from image_builder.core.context import BuildContext, copy_context
from image_builder.core.elf_meta import read_elf_meta
from image_builder.core.errors import CompilationError
from image_builder.core.executor import Executor
from image_builder.core.toolchain import capture_toolchain, ensure_target
from image_builder.io.schema import (
    ArtifactMeta,
    BuilderRecord,
    ElfMeta,
    ToolchainIdentity,
    hash_file,
)
from image_builder.io.writer import record_step
from image_builder.policy.definition import PipelineDefinition

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[Path], Executor]


@dataclass(frozen=True)
class ArtifactHandoff:
    """The single declared coupling between builder and runtime stage."""

    binary_name: str
    path_rel: str        # relative to source_root
    target_triple: str
    profile: str
    source_root: Path    # context copy inside the builder workspace

    @property
    def source_path(self) -> Path:
        return self.source_root / self.path_rel


class BuilderStage:
    """
    Runs the builder steps inside an executor created for the workspace.

    ``record`` and ``toolchain`` are populated as steps run, so they are
    available for diagnostics even when ``run`` raises.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        workspace: Path,
        executor_factory: ExecutorFactory,
        logs_dir: Path,
        rel_root: Path,
    ):
        self.definition = definition
        self.workspace = Path(workspace)
        self.executor_factory = executor_factory
        self.logs_dir = logs_dir
        self.rel_root = rel_root

        self.record = BuilderRecord()
        self.toolchain: Optional[ToolchainIdentity] = None

    def _record(self, name: str, result) -> None:
        self.record.steps.append(
            record_step(f"builder.{name}", result, self.logs_dir, self.rel_root)
        )

    def run(self, context: BuildContext) -> ArtifactHandoff:
        definition = self.definition
        logger.info(
            "Builder stage: %s for %s (%s)",
            definition.binary_name, definition.target_triple, definition.profile,
        )

        # 1. Isolated copy of the Build Context
        source_root = copy_context(context, self.workspace / "context")

        with self.executor_factory(source_root) as executor:
            # 2. Target ABI
            for name, result in zip(("target-list", "target-add"), ensure_target(executor, definition)):
                self._record(name, result)

            self.toolchain = capture_toolchain(executor, definition)
            logger.info(
                "Toolchain: %s / %s", self.toolchain.rustc_version, self.toolchain.cargo_version
            )

            # 3. Compile
            compile_result = executor.run(definition.cargo_build_argv())
            self._record("compile", compile_result)
            if not compile_result.ok:
                raise CompilationError(
                    f"Compilation failed for {definition.target_triple} "
                    f"(exit {compile_result.exit_code})",
                    diagnostic=compile_result.stderr,
                    exit_code=compile_result.exit_code,
                )

        handoff = ArtifactHandoff(
            binary_name=definition.binary_name,
            path_rel=definition.artifact_path_rel(),
            target_triple=definition.target_triple,
            profile=definition.profile,
            source_root=source_root,
        )
        self.record.artifact = self._describe(handoff)
        return handoff

    def _describe(self, handoff: ArtifactHandoff) -> Optional[ArtifactMeta]:
        """Artifact metadata if the file exists.  Location is checked downstream."""
        path = handoff.source_path
        if not path.is_file():
            logger.warning("No artifact at %s after compilation", handoff.path_rel)
            return None

        try:
            elf = read_elf_meta(path)
        except ELFError as e:
            logger.warning("Artifact %s is not a readable ELF: %s", handoff.path_rel, e)
            elf = ElfMeta()

        meta = ArtifactMeta(
            name=handoff.binary_name,
            path_rel=handoff.path_rel,
            target_triple=handoff.target_triple,
            profile=handoff.profile,
            sha256=hash_file(path),
            size_bytes=path.stat().st_size,
            elf=elf,
        )
        logger.info(
            "Artifact %s: %d bytes, sha256 %s", meta.path_rel, meta.size_bytes, meta.sha256[:12]
        )
        return meta
