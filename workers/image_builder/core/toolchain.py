"""
Toolchain: make the declared target ABI available and record versions.

Target registration is checked before anything is compiled, so an
unsupported or unreachable triple fails the pipeline before the
compiler runs.
"""
from __future__ import annotations

import logging
from typing import List

from image_builder.core.errors import ToolchainResolutionError
from image_builder.core.executor import CommandResult, Executor
from image_builder.io.schema import ToolchainIdentity
from image_builder.policy.definition import PipelineDefinition

logger = logging.getLogger(__name__)


def installed_targets(listing: CommandResult) -> List[str]:
    """Parse ``rustup target list --installed`` output."""
    return [line.strip() for line in listing.stdout.splitlines() if line.strip()]


def ensure_target(executor: Executor, definition: PipelineDefinition) -> List[CommandResult]:
    """
    Register ``definition.target_triple`` with rustup unless already present.

    Returns the executed commands in order.  Raises ToolchainResolutionError
    if rustup is unavailable or refuses the target.
    """
    triple = definition.target_triple
    listing = executor.run(["rustup", "target", "list", "--installed"])
    if not listing.ok:
        raise ToolchainResolutionError(
            "Cannot query installed rustup targets",
            diagnostic=listing.stderr,
        )

    if triple in installed_targets(listing):
        logger.info("Target %s already installed", triple)
        return [listing]

    logger.info("Adding target %s", triple)
    add = executor.run(definition.target_add_argv())
    if not add.ok:
        raise ToolchainResolutionError(
            f"Target {triple} could not be added to the toolchain",
            diagnostic=add.stderr,
        )
    return [listing, add]


def _first_line(result: CommandResult) -> str:
    if not result.ok or not result.stdout.strip():
        return "unknown"
    return result.stdout.strip().splitlines()[0]


def capture_toolchain(executor: Executor, definition: PipelineDefinition) -> ToolchainIdentity:
    """Record the builder environment.  Version probes never fail the run."""
    return ToolchainIdentity(
        executor=executor.kind,
        builder_image=executor.image,
        container_id=executor.container_id,
        rustc_version=_first_line(executor.run(["rustc", "--version"])),
        cargo_version=_first_line(executor.run(["cargo", "--version"])),
        target_triple=definition.target_triple,
    )
