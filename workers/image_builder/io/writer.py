"""
Writer: step logs and the receipt, plus publishing the finished output.

Output layout (only ever published complete):
    <output_dir>/image/Dockerfile
    <output_dir>/image/<binary_name>
    <output_dir>/logs/<stage>.<step>.stdout|stderr
    <output_dir>/pipeline_receipt.json
"""
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path

from image_builder.core.executor import CommandResult
from image_builder.io.schema import PipelineReceipt, StepResult, StepStatus

logger = logging.getLogger(__name__)

RECEIPT_NAME = "pipeline_receipt.json"


def record_step(
    name: str,
    result: CommandResult,
    logs_dir: Path,
    rel_root: Path,
) -> StepResult:
    """
    Turn a CommandResult into a StepResult, writing its output to
    ``logs_dir/<name>.stdout|stderr``.  Only non-empty streams are written.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)

    stdout_rel = None
    stderr_rel = None
    if result.stdout:
        stdout_file = logs_dir / f"{name}.stdout"
        stdout_file.write_text(result.stdout)
        stdout_rel = stdout_file.relative_to(rel_root).as_posix()
    if result.stderr:
        stderr_file = logs_dir / f"{name}.stderr"
        stderr_file.write_text(result.stderr)
        stderr_rel = stderr_file.relative_to(rel_root).as_posix()

    if result.timed_out:
        status = StepStatus.TIMEOUT
    elif result.ok:
        status = StepStatus.SUCCESS
    else:
        status = StepStatus.FAILED

    logger.info("step %s: exit=%d (%d ms)", name, result.exit_code, result.duration_ms)
    return StepResult(
        name=name,
        command=result.command,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
        stdout_path_rel=stdout_rel,
        stderr_path_rel=stderr_rel,
        status=status,
    )


def write_receipt(receipt: PipelineReceipt, output_dir: Path) -> Path:
    """Write ``pipeline_receipt.json`` into *output_dir*.  Returns its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    receipt_path = output_dir / RECEIPT_NAME
    receipt_path.write_text(
        json.dumps(
            receipt.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    logger.info("Receipt saved: %s", receipt_path)
    return receipt_path


def publish(staging_dir: Path, output_dir: Path) -> Path:
    """
    Move a completed staging directory to *output_dir*.

    A previous output at the same location is replaced as a whole, so the
    published tree never mixes files from two runs.
    """
    output_dir = Path(output_dir)
    output_dir.parent.mkdir(parents=True, exist_ok=True)

    previous = None
    if output_dir.exists():
        previous = Path(tempfile.mkdtemp(prefix=".previous-", dir=output_dir.parent))
        os.replace(output_dir, previous / "out")

    os.replace(staging_dir, output_dir)
    logger.info("Published %s", output_dir)

    if previous is not None:
        shutil.rmtree(previous)
    return output_dir
