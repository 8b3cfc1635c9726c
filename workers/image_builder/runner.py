"""
Pipeline runner: top-level orchestration from Build Context to runtime image.

Ties the builder stage, the hand-off, the runtime stage and the receipt
together into a single ``run_pipeline`` function that can be called from
the CLI or programmatically.

Nothing reaches the output directory unless the whole pipeline succeeds:
work happens in a private workspace and a staging directory that are
removed on any failure or interruption.
"""
from __future__ import annotations

import argparse
import logging
import posixpath
import shutil
import sys
import tempfile
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from image_builder.config import Settings
from image_builder.core.builder_stage import BuilderStage, ExecutorFactory
from image_builder.core.context import load_build_context
from image_builder.core.errors import ContextError, PipelineError
from image_builder.core.executor import ContainerExecutor, HostExecutor, ImageEngine
from image_builder.core.recipe import render_pipeline_recipe
from image_builder.core.runtime_stage import RuntimeStage
from image_builder.core.state import StateTracker
from image_builder.io.schema import (
    JobInfo,
    PipelineInfo,
    PipelineReceipt,
    PipelineState,
    ToolchainIdentity,
    now_iso,
)
from image_builder.io.writer import publish, write_receipt
from image_builder.policy.definition import PipelineDefinition

logger = logging.getLogger(__name__)


# ── Wiring ───────────────────────────────────────────────────────────────────

def make_executor_factory(settings: Settings, definition: PipelineDefinition) -> ExecutorFactory:
    """Builder executor per settings: host toolchain or builder container."""
    if settings.EXECUTOR == "host":
        return lambda workspace: HostExecutor(workspace, timeout=settings.STEP_TIMEOUT)
    return lambda workspace: ContainerExecutor(
        workspace,
        image=definition.builder_image,
        workdir=definition.builder_workdir,
        engine=settings.ENGINE_BINARY,
        timeout=settings.STEP_TIMEOUT,
    )


def make_engine(settings: Settings) -> Optional[ImageEngine]:
    if not settings.ENGINE_BUILD:
        return None
    return ImageEngine(settings.ENGINE_BINARY, timeout=settings.STEP_TIMEOUT)


def _remove_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


def _is_within(path: Path, parent: Path) -> bool:
    return path == parent or parent in path.parents


def check_output_location(context_root: Path, output_dir: Path) -> None:
    """
    Refuse an output directory that is, or contains, the Build Context.

    Publishing replaces the output directory as a whole, so such a
    location would delete the sources.  Both paths must be resolved.
    """
    if _is_within(context_root, output_dir):
        raise ContextError(
            f"Output directory {output_dir} contains the build context {context_root}",
            diagnostic="The output directory is replaced on every successful run; "
                       "choose a directory outside the build context or nested inside it.",
        )


def output_skip_patterns(context_root: Path, output_dir: Path, workspace: Path) -> List[str]:
    """
    Context-relative patterns for pipeline-owned directories nested in the
    Build Context: the output directory, its staging and previous-output
    siblings, and the builder workspace.
    """
    patterns: List[str] = []
    if _is_within(output_dir, context_root):
        rel = output_dir.relative_to(context_root).as_posix()
        parent = posixpath.dirname(rel)
        patterns.append(rel)
        for prefix in (".staging-", ".previous-"):
            patterns.append(posixpath.join(parent, prefix + "*") if parent else prefix + "*")
    if _is_within(workspace, context_root):
        patterns.append(workspace.relative_to(context_root).as_posix())
    return patterns


# ── Public API ───────────────────────────────────────────────────────────────

def run_pipeline(
    context_dir: Path,
    output_dir: Path,
    definition: Optional[PipelineDefinition] = None,
    settings: Optional[Settings] = None,
    executor_factory: Optional[ExecutorFactory] = None,
    engine: Optional[ImageEngine] = None,
    job_id: Optional[str] = None,
) -> PipelineReceipt:
    """
    Run builder stage then runtime stage for one Build Context.

    Parameters
    ----------
    context_dir : Path
        Root of the Build Context.
    output_dir : Path
        Where the layer set, logs and receipt are published on success.
        Replaced as a whole; untouched on failure.
    definition : PipelineDefinition, optional
        Defaults to ``PipelineDefinition.v1()``.
    settings : Settings, optional
        Defaults to ``Settings()`` (environment).
    executor_factory, engine : optional
        Override the builder executor / image engine chosen from settings.

    Returns
    -------
    PipelineReceipt

    Raises
    ------
    PipelineError
        Any stage failure.  The tracker is in a terminal failure state and
        no output has been written.  ContextError is raised before any
        work when *output_dir* is or contains the Build Context.
    """
    settings = settings or Settings()
    definition = definition or PipelineDefinition.v1()
    if executor_factory is None:
        executor_factory = make_executor_factory(settings, definition)
    if engine is None:
        engine = make_engine(settings)

    job_id = job_id or str(uuid.uuid4())
    created_at = now_iso()
    output_dir = Path(output_dir).resolve()
    context_root = Path(context_dir).resolve()
    check_output_location(context_root, output_dir)
    tracker = StateTracker()
    timings: Dict[str, int] = {}

    workspace_root = Path(settings.WORKSPACE_ROOT).resolve()
    workspace_root.mkdir(parents=True, exist_ok=True)
    output_dir.parent.mkdir(parents=True, exist_ok=True)

    workspace = Path(tempfile.mkdtemp(prefix=f"{definition.binary_name}-", dir=workspace_root))
    # Same filesystem as output_dir so publishing is a rename
    staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=output_dir.parent))
    logs_dir = staging / "logs"

    logger.info(
        "Pipeline %s: %s → %s [%s]", job_id, context_dir, output_dir, definition.definition_id
    )

    try:
        # ── Builder stage ────────────────────────────────────────────
        tracker.advance(PipelineState.BUILDING)
        builder = BuilderStage(definition, workspace, executor_factory, logs_dir, staging)
        t0 = time.monotonic()
        try:
            context = load_build_context(
                Path(context_dir),
                skip=output_skip_patterns(context_root, output_dir, workspace),
            )
            handoff = builder.run(context)
        except PipelineError:
            tracker.fail()
            raise
        timings["builder"] = int((time.monotonic() - t0) * 1000)
        tracker.advance(PipelineState.BUILT)

        # ── Runtime stage ────────────────────────────────────────────
        tracker.advance(PipelineState.PACKAGING)
        runtime = RuntimeStage(definition, staging, logs_dir, engine=engine)
        t0 = time.monotonic()
        try:
            runtime_record = runtime.run(handoff)
        except PipelineError:
            tracker.fail()
            raise
        timings["runtime"] = int((time.monotonic() - t0) * 1000)
        tracker.advance(PipelineState.PACKAGED)

        # Builder-side metadata is refreshed with the runtime gate's reading
        if builder.record.artifact is not None and runtime.artifact_elf is not None:
            builder.record.artifact.elf = runtime.artifact_elf

        receipt = PipelineReceipt(
            pipeline=PipelineInfo(definition_id=definition.definition_id),
            job=JobInfo(
                job_id=job_id,
                created_at=created_at,
                finished_at=now_iso(),
                status=tracker.state,
            ),
            definition=definition,
            context=context.identity(),
            toolchain=builder.toolchain or ToolchainIdentity(
                executor="unknown", target_triple=definition.target_triple,
            ),
            builder=builder.record,
            runtime=runtime_record,
            transitions=[s.value for s in tracker.history],
            timings_ms=timings,
        )
        write_receipt(receipt, staging)
        publish(staging, output_dir)

        logger.info(
            "Pipeline %s finished: %s (%s)", job_id, tracker.state.value,
            runtime_record.layer_set.image_tag if runtime_record.layer_set else "-",
        )
        return receipt
    finally:
        if settings.KEEP_WORKSPACE:
            logger.info("Keeping workspace %s", workspace)
        else:
            _remove_tree(workspace)
        _remove_tree(staging)


# ── CLI ──────────────────────────────────────────────────────────────────────

def _load_definition(path: Optional[Path]) -> PipelineDefinition:
    if path is None:
        return PipelineDefinition.v1()
    return PipelineDefinition.from_file(path)


def _cmd_build(args: argparse.Namespace) -> int:
    settings = Settings()
    output_dir = args.output_dir or Path(settings.OUTPUT_DIR)
    try:
        definition = _load_definition(args.definition)
    except (OSError, ValueError) as e:
        logger.error("Invalid pipeline definition %s: %s", args.definition, e)
        return 1

    try:
        receipt = run_pipeline(
            context_dir=args.context,
            output_dir=output_dir,
            definition=definition,
            settings=settings,
        )
    except PipelineError as e:
        logger.error("Pipeline failed in %s stage (%s): %s", e.stage, e.kind, e.message)
        if e.diagnostic:
            sys.stderr.write(e.diagnostic)
            if not e.diagnostic.endswith("\n"):
                sys.stderr.write("\n")
        return 1

    layer_set = receipt.runtime.layer_set
    artifact = receipt.builder.artifact
    print(f"Status: {receipt.job.status.value}")
    if artifact is not None:
        print(f"Artifact: {artifact.path_rel} ({artifact.size_bytes} bytes, sha256 {artifact.sha256[:12]})")
    if layer_set is not None:
        print(f"Image: {layer_set.image_tag}" + (f" ({layer_set.image_id})" if layer_set.image_id else ""))
        entry = posixpath.normpath(posixpath.join(layer_set.workdir, layer_set.cmd[0]))
        print(f"Entry point: {' '.join([entry] + layer_set.cmd[1:])}")
    print(f"Outputs written to: {output_dir}")
    return 0


def _cmd_render(args: argparse.Namespace) -> int:
    try:
        definition = _load_definition(args.definition)
    except (OSError, ValueError) as e:
        logger.error("Invalid pipeline definition %s: %s", args.definition, e)
        return 1

    recipe = render_pipeline_recipe(definition)
    if args.output:
        args.output.write_text(recipe)
        print(f"Recipe written to: {args.output}")
    else:
        sys.stdout.write(recipe)
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="image-builder",
        description="image_builder: two-stage static image pipeline",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser(
        "build",
        parents=[common],
        help="Compile the Build Context and stage the runtime image",
    )
    build.add_argument(
        "context",
        nargs="?",
        type=Path,
        default=Path("."),
        help="Build Context directory (default: current directory)",
    )
    build.add_argument(
        "--definition",
        type=Path,
        default=None,
        help="Pipeline definition JSON (default: built-in v1)",
    )
    build.add_argument(
        "-o", "--output-dir",
        type=Path,
        default=None,
        help="Directory to publish the layer set, logs and receipt",
    )
    build.set_defaults(func=_cmd_build)

    render = sub.add_parser(
        "render",
        parents=[common],
        help="Print the equivalent multi-stage recipe",
    )
    render.add_argument(
        "--definition",
        type=Path,
        default=None,
        help="Pipeline definition JSON (default: built-in v1)",
    )
    render.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Write the recipe to this file instead of stdout",
    )
    render.set_defaults(func=_cmd_render)

    return parser


def main(argv=None):
    """CLI entry point for image_builder."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
