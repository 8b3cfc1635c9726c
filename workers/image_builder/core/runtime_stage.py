"""
Runtime stage: one ArtifactHandoff in, a runtime image layer set out.

Phases:
  1. check the hand-off against this stage's own reading of the definition
     (path, ABI tag, binary name); any disagreement is fatal here, before
     an image exists
  2. gate the artifact: ELF, machine/class of the triple, static linkage
  3. stage the layer set: runtime recipe + the artifact, nothing else
  4. optionally build it with the container engine and verify the image's
     default command and working directory
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

from elftools.common.exceptions import ELFError

from image_builder.core.builder_stage import ArtifactHandoff
from image_builder.core.elf_meta import is_elf, read_elf_meta
from image_builder.core.errors import ArtifactLocationError, PackagingError
from image_builder.core.executor import ImageEngine
from image_builder.core.recipe import render_runtime_recipe
from image_builder.io.schema import (
    ElfMeta,
    LayerSetManifest,
    RuntimeRecord,
    hash_file,
)
from image_builder.io.writer import record_step
from image_builder.policy.definition import PipelineDefinition
from image_builder.policy.verdict import Verdict, judge_artifact

logger = logging.getLogger(__name__)

RECIPE_NAME = "Dockerfile"
ARTIFACT_MODE = 0o755


def expected_layer_files(definition: PipelineDefinition) -> List[str]:
    """Everything a staged layer set may contain."""
    return sorted([RECIPE_NAME, definition.binary_name])


def verify_layer_set(image_dir: Path, definition: PipelineDefinition) -> List[str]:
    """
    Return every staged entry that is not the recipe or the artifact.
    An empty list means the layer set is isolated.
    """
    allowed = set(expected_layer_files(definition))
    unexpected: List[str] = []
    for path in sorted(image_dir.rglob("*")):
        rel = path.relative_to(image_dir).as_posix()
        if rel not in allowed:
            unexpected.append(rel)
    return unexpected


def check_handoff(handoff: ArtifactHandoff, definition: PipelineDefinition) -> Path:
    """
    Validate the hand-off contract and return the artifact's path.

    Raises ArtifactLocationError on any path or ABI disagreement and when
    the file is missing.
    """
    expected_rel = definition.artifact_path_rel()
    if handoff.target_triple != definition.target_triple:
        raise ArtifactLocationError(
            f"Artifact built for {handoff.target_triple}, runtime expects {definition.target_triple}",
            diagnostic=f"builder path: {handoff.path_rel}\nruntime path: {expected_rel}",
        )
    if handoff.binary_name != definition.binary_name or handoff.path_rel != expected_rel:
        raise ArtifactLocationError(
            f"Artifact path mismatch: builder handed off {handoff.path_rel}, runtime expects {expected_rel}",
        )

    source = handoff.source_path
    if not source.is_file():
        raise ArtifactLocationError(
            f"Compiled artifact not found at {expected_rel}",
            diagnostic=f"looked in {source}",
        )
    return source


def gate_artifact(path: Path, definition: PipelineDefinition) -> ElfMeta:
    """ELF + ABI + linkage gate.  Raises ArtifactLocationError on REJECT."""
    if not is_elf(path):
        raise ArtifactLocationError(f"Artifact {path.name} is not an ELF executable")
    try:
        meta = read_elf_meta(path)
    except ELFError as e:
        raise ArtifactLocationError(f"Artifact {path.name} is not a readable ELF", diagnostic=str(e)) from e

    verdict, reasons = judge_artifact(meta, definition)
    if verdict == Verdict.REJECT:
        raise ArtifactLocationError(
            f"Artifact {path.name} does not match {definition.target_triple}: {', '.join(reasons)}",
            diagnostic=f"machine={meta.machine} class={meta.elf_class} "
                       f"interpreter={meta.interpreter} needed={meta.needed}",
        )
    if verdict == Verdict.WARN:
        logger.warning("Artifact %s accepted with warnings: %s", path.name, ", ".join(reasons))
    return meta


def _parse_inspect(stdout: str) -> dict:
    """Image description from ``image inspect``.  Raises ValueError unless it is an object."""
    data = json.loads(stdout)
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class RuntimeStage:
    """
    Stages the runtime layer set under ``staging_dir/image``.

    ``engine`` is optional: without it the stage stops after producing the
    recipe and artifact; with it the image is built and inspected.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        staging_dir: Path,
        logs_dir: Path,
        engine: Optional[ImageEngine] = None,
    ):
        self.definition = definition
        self.staging_dir = Path(staging_dir)
        self.image_dir = self.staging_dir / "image"
        self.logs_dir = logs_dir
        self.engine = engine

        self.record = RuntimeRecord(engine_build=engine is not None)
        self.artifact_elf: Optional[ElfMeta] = None

    def _record(self, name: str, result) -> None:
        self.record.steps.append(
            record_step(f"runtime.{name}", result, self.logs_dir, self.staging_dir)
        )

    def run(self, handoff: ArtifactHandoff) -> RuntimeRecord:
        definition = self.definition
        logger.info("Runtime stage: %s on %s", definition.binary_name, definition.runtime_image)

        # 1–2. Locate and gate the artifact
        source = check_handoff(handoff, definition)
        self.artifact_elf = gate_artifact(source, definition)

        # 3. Stage: recipe + artifact only
        self.image_dir.mkdir(parents=True, exist_ok=True)
        recipe_path = self.image_dir / RECIPE_NAME
        recipe_path.write_text(render_runtime_recipe(definition))
        target = self.image_dir / definition.binary_name
        shutil.copyfile(source, target)
        os.chmod(target, ARTIFACT_MODE)

        unexpected = verify_layer_set(self.image_dir, definition)
        if unexpected:
            raise PackagingError(
                "Runtime layer set contains more than the artifact",
                diagnostic="\n".join(unexpected),
            )

        layer_set = LayerSetManifest(
            base_image=definition.runtime_image,
            packages=list(definition.runtime_packages),
            workdir=definition.runtime_workdir,
            files=[definition.binary_name],
            cmd=definition.entry_command(),
            dockerfile_sha256=hash_file(recipe_path),
            image_tag=definition.resolved_image_tag(),
        )

        # 4. Engine build + verification
        if self.engine is not None:
            layer_set.image_id = self._build_image(layer_set)

        self.record.layer_set = layer_set
        return self.record

    def _build_image(self, layer_set: LayerSetManifest) -> Optional[str]:
        tag = layer_set.image_tag

        build = self.engine.build(self.image_dir, tag)
        self._record("image-build", build)
        if not build.ok:
            raise PackagingError(f"Image build failed for {tag}", diagnostic=build.stderr)

        inspect = self.engine.inspect(tag)
        self._record("image-inspect", inspect)
        if not inspect.ok:
            raise PackagingError(f"Cannot inspect built image {tag}", diagnostic=inspect.stderr)

        try:
            data = _parse_inspect(inspect.stdout)
        except ValueError as e:
            raise PackagingError(f"Unreadable inspect output for {tag}", diagnostic=str(e)) from e

        config = data.get("Config") or {}
        cmd = config.get("Cmd")
        workdir = config.get("WorkingDir")
        if cmd != layer_set.cmd or workdir != layer_set.workdir:
            raise PackagingError(
                f"Image {tag} does not start the artifact",
                diagnostic=f"Cmd={cmd} WorkingDir={workdir}; "
                           f"expected Cmd={layer_set.cmd} WorkingDir={layer_set.workdir}",
            )

        image_id = data.get("Id")
        logger.info("Image %s built: %s", tag, image_id)
        return image_id
