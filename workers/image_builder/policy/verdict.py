"""
Artifact verdict: does the hand-off binary match the definition?

Strictly structural: derived from ELF header and segment facts only.
REJECT is fatal to the runtime stage; WARN is recorded and logged.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Tuple

from image_builder.io.schema import ElfMeta
from image_builder.policy.definition import PipelineDefinition


# ── Enums ────────────────────────────────────────────────────────────────────

class Verdict(str, Enum):
    ACCEPT = "ACCEPT"
    WARN = "WARN"
    REJECT = "REJECT"


class ArtifactRejectReason(str, Enum):
    NOT_EXECUTABLE_TYPE = "NOT_EXECUTABLE_TYPE"
    MACHINE_MISMATCH = "MACHINE_MISMATCH"
    CLASS_MISMATCH = "CLASS_MISMATCH"
    DYNAMICALLY_LINKED = "DYNAMICALLY_LINKED"


class ArtifactWarnReason(str, Enum):
    UNKNOWN_TARGET_ARCH = "UNKNOWN_TARGET_ARCH"


EXECUTABLE_TYPES = ("ET_EXEC", "ET_DYN")


# ── Judge ────────────────────────────────────────────────────────────────────

def judge_artifact(
    meta: ElfMeta,
    definition: PipelineDefinition,
) -> Tuple[Verdict, List[str]]:
    """
    Artifact-level verdict.

    ET_DYN is accepted because static-PIE executables carry it.
    Machine and class are checked against the target triple's
    architecture when the architecture is known.
    """
    rejects: List[str] = []
    warns: List[str] = []

    if meta.elf_type not in EXECUTABLE_TYPES:
        rejects.append(ArtifactRejectReason.NOT_EXECUTABLE_TYPE.value)

    expected = definition.expected_machine()
    if expected is None:
        warns.append(ArtifactWarnReason.UNKNOWN_TARGET_ARCH.value)
    else:
        machine, elf_class = expected
        if meta.machine != machine:
            rejects.append(ArtifactRejectReason.MACHINE_MISMATCH.value)
        if meta.elf_class != elf_class:
            rejects.append(ArtifactRejectReason.CLASS_MISMATCH.value)

    if definition.require_static and not meta.is_static:
        rejects.append(ArtifactRejectReason.DYNAMICALLY_LINKED.value)

    if rejects:
        return Verdict.REJECT, rejects + warns
    if warns:
        return Verdict.WARN, warns
    return Verdict.ACCEPT, []
