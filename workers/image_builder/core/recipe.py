"""
Recipe rendering: the container recipes a definition stands for.

``render_runtime_recipe`` is what the runtime stage actually builds: its
build context holds only the artifact, so it copies from ``.``.
``render_pipeline_recipe`` is the equivalent single multi-stage recipe,
for reading and for engines that should run both stages themselves.
"""
from __future__ import annotations

import json
from typing import List

from image_builder.policy.definition import PipelineDefinition

BUILDER_STAGE_NAME = "builder"


def _runtime_lines(definition: PipelineDefinition, copy_source: str) -> List[str]:
    lines = [f"FROM {definition.runtime_image}"]
    if definition.runtime_packages:
        packages = " ".join(definition.runtime_packages)
        lines.append(f"RUN {definition.package_install} {packages}")
    lines.append(f"WORKDIR {definition.runtime_workdir}")
    lines.append(f"COPY {copy_source} .")
    lines.append(f"CMD {json.dumps(definition.entry_command())}")
    return lines


def render_runtime_recipe(definition: PipelineDefinition) -> str:
    """Runtime-only recipe; expects the artifact at the context root."""
    return "\n\n".join(_runtime_lines(definition, definition.binary_name)) + "\n"


def render_pipeline_recipe(definition: PipelineDefinition) -> str:
    """Both stages in one recipe, coupled by a single ``COPY --from``."""
    artifact = f"{definition.builder_workdir.rstrip('/')}/{definition.artifact_path_rel()}"
    builder = [
        f"FROM {definition.builder_image} as {BUILDER_STAGE_NAME}",
        f"WORKDIR {definition.builder_workdir}",
        "RUN " + " ".join(definition.target_add_argv()),
        "COPY . .",
        "RUN " + " ".join(definition.cargo_build_argv()),
    ]
    runtime = _runtime_lines(definition, f"--from={BUILDER_STAGE_NAME} {artifact}")
    return "\n\n".join(builder + runtime) + "\n"
