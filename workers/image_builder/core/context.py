"""
Build Context: catalog, filter and copy the source tree.

The context is read once, hashed, and copied wholesale into the
builder workspace.  ``.dockerignore`` is honored the way ``COPY . .``
honors it: a pattern excludes a path if it matches the path or any of
its parent directories, later patterns win, ``!`` re-includes.
"""
from __future__ import annotations

import hashlib
import logging
import os
import posixpath
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

from image_builder.core.errors import ContextError
from image_builder.io.schema import ContextFile, ContextIdentity, hash_file

logger = logging.getLogger(__name__)

IGNORE_FILE = ".dockerignore"
DEFAULT_MANIFEST = "Cargo.toml"


@dataclass(frozen=True)
class BuildContext:
    """Immutable snapshot of the Build Context at invocation time."""

    root: Path
    manifest: str
    files: Tuple[ContextFile, ...]
    excluded: Tuple[str, ...]
    snapshot_sha256: str

    def identity(self) -> ContextIdentity:
        return ContextIdentity(
            root=str(self.root),
            manifest=self.manifest,
            files=list(self.files),
            excluded=list(self.excluded),
            snapshot_sha256=self.snapshot_sha256,
        )

    def paths(self) -> List[str]:
        return [f.path_rel for f in self.files]


# ── .dockerignore ────────────────────────────────────────────────────────────

def _pattern_to_regex(pattern: str) -> re.Pattern:
    """Translate a dockerignore glob into an anchored regex.

    ``**`` crosses directory boundaries, ``*`` and ``?`` do not.
    """
    out = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                i += 2
                # "**/" also matches zero directories
                if i < n and pattern[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j]
                if body.startswith("!") or body.startswith("^"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j
        elif c == "\\" and i + 1 < n:
            i += 1
            out.append(re.escape(pattern[i]))
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def load_ignore_patterns(root: Path) -> List[Tuple[re.Pattern, bool]]:
    """Parse ``root/.dockerignore`` into (regex, negated) rules, in order."""
    ignore_path = root / IGNORE_FILE
    if not ignore_path.is_file():
        return []

    rules: List[Tuple[re.Pattern, bool]] = []
    for raw in ignore_path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        negated = line.startswith("!")
        if negated:
            line = line[1:].strip()
        line = posixpath.normpath(line.lstrip("/"))
        if line in ("", "."):
            continue
        rules.append((_pattern_to_regex(line), negated))
    return rules


def is_excluded(path_rel: str, rules: List[Tuple[re.Pattern, bool]]) -> bool:
    """Apply ignore rules to a context-relative POSIX path."""
    parts = path_rel.split("/")
    prefixes = ["/".join(parts[:i]) for i in range(1, len(parts) + 1)]

    excluded = False
    for regex, negated in rules:
        if any(regex.match(p) for p in prefixes):
            excluded = not negated
    return excluded


# ── Catalog ──────────────────────────────────────────────────────────────────

def _catalog_entry(path: Path, rel: str) -> ContextFile:
    if path.is_symlink():
        target = os.readlink(path)
        return ContextFile(
            path_rel=rel,
            sha256=hashlib.sha256(target.encode("utf-8")).hexdigest(),
            size_bytes=0,
        )
    return ContextFile(
        path_rel=rel,
        sha256=hash_file(path),
        size_bytes=path.stat().st_size,
    )


def compute_snapshot_hash(files: List[ContextFile]) -> str:
    """
    Deterministic hash over the whole context.
    Sorted by path_rel; each entry contributes its path and content hash.
    """
    h = hashlib.sha256()
    for cf in sorted(files, key=lambda f: f.path_rel):
        h.update(cf.path_rel.encode("utf-8"))
        h.update(b"\0")
        h.update(cf.sha256.encode("ascii"))
    return h.hexdigest()


def load_build_context(
    root: Path,
    manifest: str = DEFAULT_MANIFEST,
    skip: Sequence[str] = (),
) -> BuildContext:
    """
    Validate and catalog the Build Context rooted at *root*.

    *skip* holds context-relative patterns for the pipeline's own output
    (output, staging and previous-output directories nested in the
    context).  Matching directories are not descended into and are not
    listed as excluded.

    Raises ContextError if the root is missing, not a directory,
    unreadable, or lacks the build manifest after ignore rules apply.
    """
    root = Path(root)
    if not root.exists():
        raise ContextError(f"Build context not found: {root}")
    if not root.is_dir():
        raise ContextError(f"Build context is not a directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise ContextError(f"Build context is not readable: {root}")

    root = root.resolve()
    rules = load_ignore_patterns(root)
    skip_rules = [_pattern_to_regex(p) for p in skip]

    files: List[ContextFile] = []
    excluded: List[str] = []

    def _on_error(err: OSError):
        raise ContextError(f"Cannot read build context entry: {err.filename}", diagnostic=str(err))

    try:
        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
            dirnames.sort()
            base = Path(dirpath)
            for name in list(dirnames):
                rel = (base / name).relative_to(root).as_posix()
                if any(r.match(rel) for r in skip_rules):
                    logger.debug("Skipping pipeline output %s", rel)
                    dirnames.remove(name)
            for name in sorted(filenames):
                fpath = base / name
                rel = fpath.relative_to(root).as_posix()
                if is_excluded(rel, rules):
                    excluded.append(rel)
                    continue
                files.append(_catalog_entry(fpath, rel))
            # Symlinked directories are not descended into; keep them as links
            for name in list(dirnames):
                dpath = base / name
                if dpath.is_symlink():
                    dirnames.remove(name)
                    rel = dpath.relative_to(root).as_posix()
                    if is_excluded(rel, rules):
                        excluded.append(rel)
                    else:
                        files.append(_catalog_entry(dpath, rel))
    except OSError as e:
        raise ContextError(f"Cannot read build context entry: {e.filename}", diagnostic=str(e)) from e

    if manifest not in {f.path_rel for f in files}:
        raise ContextError(
            f"Build context {root} has no {manifest}",
            diagnostic="The builder stage compiles the package described by the "
                       f"top-level {manifest}; add it or fix .dockerignore.",
        )

    ctx = BuildContext(
        root=root,
        manifest=manifest,
        files=tuple(files),
        excluded=tuple(excluded),
        snapshot_sha256=compute_snapshot_hash(files),
    )
    logger.info(
        "Build context %s: %d files (%d excluded), snapshot %s",
        root, len(files), len(excluded), ctx.snapshot_sha256[:12],
    )
    return ctx


def copy_context(context: BuildContext, dest: Path) -> Path:
    """Copy every cataloged file of *context* into *dest*.  Returns *dest*."""
    dest.mkdir(parents=True, exist_ok=True)
    for cf in context.files:
        src = context.root / cf.path_rel
        target = dest / cf.path_rel
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            if src.is_symlink():
                os.symlink(os.readlink(src), target)
            else:
                shutil.copy2(src, target)
        except OSError as e:
            raise ContextError(f"Failed to copy {cf.path_rel} into workspace", diagnostic=str(e)) from e
    logger.debug("Copied %d context files into %s", len(context.files), dest)
    return dest
