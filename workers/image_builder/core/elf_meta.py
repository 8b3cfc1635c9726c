"""
ELF inspection for the Compiled Artifact.

Responsibilities:
  - Validate that the artifact is an ELF file at all.
  - Read class, type and machine from the header.
  - Detect dynamic linkage: a PT_INTERP segment or DT_NEEDED entries.
  - Read the GNU build-id if present.

Static-PIE binaries carry a PT_DYNAMIC segment with no DT_NEEDED and no
interpreter; they count as static.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSegment
from elftools.elf.elffile import ELFFile
from elftools.elf.segments import InterpSegment

from image_builder.io.schema import ElfMeta

logger = logging.getLogger(__name__)


def _read_build_id(elf: ELFFile) -> Optional[str]:
    for section in elf.iter_sections():
        if section.name == ".note.gnu.build-id":
            for note in section.iter_notes():
                if note["n_type"] == "NT_GNU_BUILD_ID":
                    return note["n_desc"]
    return None


def _read_needed(segment: DynamicSegment) -> List[str]:
    needed: List[str] = []
    try:
        for tag in segment.iter_tags("DT_NEEDED"):
            needed.append(tag.needed)
    except (ELFError, ValueError, KeyError) as e:
        # No resolvable string table; the entry still proves dynamic linkage
        logger.debug("Unresolved DT_NEEDED names: %s", e)
        needed.append("<unresolved>")
    return needed


def read_elf_meta(path: Path) -> ElfMeta:
    """
    Open *path* and return header and linkage facts.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ELFError
        If the file is not a valid ELF binary.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Artifact not found: {p}")

    with open(p, "rb") as f:
        elf = ELFFile(f)

        interpreter: Optional[str] = None
        needed: List[str] = []
        for segment in elf.iter_segments():
            if isinstance(segment, InterpSegment):
                interpreter = segment.get_interp_name()
            elif isinstance(segment, DynamicSegment):
                needed.extend(_read_needed(segment))

        return ElfMeta(
            elf_class=elf.elfclass,
            elf_type=elf.header["e_type"],
            machine=elf.header["e_machine"],
            interpreter=interpreter,
            needed=needed,
            build_id=_read_build_id(elf),
            is_static=interpreter is None and not needed,
        )


def is_elf(path: Path) -> bool:
    """Cheap magic-number check, no parsing."""
    try:
        with open(path, "rb") as f:
            return f.read(4) == b"\x7fELF"
    except OSError:
        return False
