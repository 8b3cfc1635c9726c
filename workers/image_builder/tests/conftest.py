"""
Shared pytest fixtures for image_builder tests.

Provides:
  - sample Build Contexts (a minimal cargo package) on tmp_path
  - hand-assembled ELF images: static / dynamic, x86_64 / aarch64
  - FakeToolchain: an Executor that answers rustup/rustc/cargo the way
    the real tools do and drops an ELF at cargo's output path
  - FakeEngine: an ImageEngine that "builds" by reading the staged
    recipe back, so Cmd/WorkingDir come from what was actually staged

No toolchain, container engine or network is needed.
"""
from __future__ import annotations

import json
import struct
import textwrap
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from image_builder.config import Settings
from image_builder.core.executor import CommandResult, Executor, ImageEngine
from image_builder.policy.definition import PipelineDefinition


# ── ELF images ───────────────────────────────────────────────────────────────

EM_CODES: Dict[str, int] = {
    "EM_386": 3,
    "EM_ARM": 40,
    "EM_X86_64": 62,
    "EM_AARCH64": 183,
}
ET_CODES: Dict[str, int] = {"ET_REL": 1, "ET_EXEC": 2, "ET_DYN": 3}

PT_LOAD = 1
PT_INTERP = 3
SHT_STRTAB = 3

MUSL_INTERP = "/lib/ld-musl-x86_64.so.1"


def make_elf(
    machine: str = "EM_X86_64",
    elf_type: str = "ET_EXEC",
    interp: Optional[str] = None,
) -> bytes:
    """
    Assemble a minimal little-endian ELF64 image.

    One PT_LOAD segment (plus PT_INTERP when *interp* is given), and a
    section table holding only the null section and .shstrtab.
    """
    ehsize, phentsize, shentsize = 64, 56, 64
    phnum = 2 if interp else 1

    interp_bytes = (interp.encode() + b"\0") if interp else b""
    shstrtab = b"\0.shstrtab\0"

    interp_off = ehsize + phnum * phentsize
    shstrtab_off = interp_off + len(interp_bytes)
    shoff = (shstrtab_off + len(shstrtab) + 7) & ~7
    total = shoff + 2 * shentsize

    e_ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\0" * 8
    header = e_ident + struct.pack(
        "<HHIQQQIHHHHHH",
        ET_CODES[elf_type],
        EM_CODES[machine],
        1,               # e_version
        0x401000,        # e_entry
        ehsize,          # e_phoff
        shoff,           # e_shoff
        0,               # e_flags
        ehsize,
        phentsize,
        phnum,
        shentsize,
        2,               # e_shnum
        1,               # e_shstrndx
    )

    phdrs = b""
    if interp:
        phdrs += struct.pack(
            "<IIQQQQQQ", PT_INTERP, 4, interp_off, 0x400000 + interp_off,
            0x400000 + interp_off, len(interp_bytes), len(interp_bytes), 1,
        )
    phdrs += struct.pack(
        "<IIQQQQQQ", PT_LOAD, 5, 0, 0x400000, 0x400000, total, total, 0x1000,
    )

    body = header + phdrs + interp_bytes + shstrtab
    body += b"\0" * (shoff - len(body))

    null_sh = b"\0" * shentsize
    strtab_sh = struct.pack(
        "<IIQQQQIIQQ", 1, SHT_STRTAB, 0, 0, shstrtab_off, len(shstrtab), 0, 0, 1, 0,
    )
    image = body + null_sh + strtab_sh
    assert len(image) == total
    return image


MACHINE_BY_ARCH = {"x86_64": "EM_X86_64", "aarch64": "EM_AARCH64"}


def elf_for_triple(triple: str) -> bytes:
    return make_elf(machine=MACHINE_BY_ARCH.get(triple.split("-")[0], "EM_X86_64"))


@pytest.fixture
def static_elf(tmp_path: Path) -> Path:
    p = tmp_path / "static_app"
    p.write_bytes(make_elf())
    return p


@pytest.fixture
def dynamic_elf(tmp_path: Path) -> Path:
    p = tmp_path / "dynamic_app"
    p.write_bytes(make_elf(interp=MUSL_INTERP))
    return p


@pytest.fixture
def aarch64_elf(tmp_path: Path) -> Path:
    p = tmp_path / "aarch64_app"
    p.write_bytes(make_elf(machine="EM_AARCH64"))
    return p


# ── Build Contexts ───────────────────────────────────────────────────────────

CARGO_TOML = textwrap.dedent("""\
    [package]
    name = "rust_app"
    version = "0.1.0"
    edition = "2021"

    [dependencies]
    serde = { version = "1.0", features = ["derive"] }
    serde_json = "1.0"
""")

MAIN_RS = textwrap.dedent("""\
    use std::net::TcpListener;

    fn main() {
        let listener = TcpListener::bind("0.0.0.0:8080").unwrap();
        println!("Server listening on port 8080");
        for stream in listener.incoming() {
            drop(stream);
        }
    }
""")

BROKEN_MAIN_RS = "fn main() {\n    let x = ;\n}\n"

COMPILE_ERROR = textwrap.dedent("""\
       Compiling rust_app v0.1.0 (/app)
    error: expected expression, found `;`
     --> src/main.rs:2:13
      |
    2 |     let x = ;
      |             ^ expected expression

    error: could not compile `rust_app` (bin "rust_app") due to 1 previous error
""")


def write_context(root: Path, main_rs: str = MAIN_RS) -> Path:
    (root / "src").mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(CARGO_TOML)
    (root / "src" / "main.rs").write_text(main_rs)
    (root / "Dockerfile").write_text("FROM scratch\n")
    (root / "README.md").write_text("rust_app\n")
    return root


@pytest.fixture
def rust_context(tmp_path: Path) -> Path:
    """Minimal cargo package as a Build Context."""
    return write_context(tmp_path / "ctx")


@pytest.fixture
def ignored_context(rust_context: Path) -> Path:
    """Context with a stale target/ dir and a .dockerignore that drops it."""
    stale = rust_context / "target" / "release"
    stale.mkdir(parents=True)
    (stale / "rust_app").write_bytes(b"stale")
    (rust_context / "notes.log").write_text("debug output\n")
    (rust_context / "keep.log").write_text("kept\n")
    (rust_context / ".dockerignore").write_text(
        "# build output\ntarget\n*.log\n!keep.log\n"
    )
    return rust_context


# ── Fakes ────────────────────────────────────────────────────────────────────

RUSTC_VERSION = "rustc 1.91.0 (f8297e351 2025-10-28)"
CARGO_VERSION = "cargo 1.91.0 (ea2d97820 2025-10-10)"

_PROFILE_DIRS = {"dev": "debug", "test": "debug", "release": "release", "bench": "release"}


class FakeToolchain(Executor):
    """Executor answering rustup/rustc/cargo; records every argv."""

    kind = "fake"

    def __init__(
        self,
        workspace: Path,
        binary_name: str = "rust_app",
        installed: Optional[List[str]] = None,
        can_add: bool = True,
        compile_ok: bool = True,
        compile_stderr: str = COMPILE_ERROR,
        artifact_bytes: Optional[bytes] = None,
        write_artifact: bool = True,
    ):
        super().__init__(workspace)
        self.binary_name = binary_name
        self.installed = list(installed or ["x86_64-unknown-linux-gnu"])
        self.can_add = can_add
        self.compile_ok = compile_ok
        self.compile_stderr = compile_stderr
        self.artifact_bytes = artifact_bytes
        self.write_artifact = write_artifact

        self.commands: List[List[str]] = []
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def close(self):
        self.closed = True

    def run(self, argv: List[str]) -> CommandResult:
        argv = list(argv)
        self.commands.append(argv)

        if argv[:4] == ["rustup", "target", "list", "--installed"]:
            return CommandResult(argv, 0, stdout="\n".join(self.installed) + "\n")

        if argv[:3] == ["rustup", "target", "add"]:
            triple = argv[3]
            if not self.can_add:
                return CommandResult(
                    argv, 1,
                    stderr=f"error: toolchain 'stable-x86_64-unknown-linux-gnu' does not support target '{triple}'\n",
                )
            self.installed.append(triple)
            return CommandResult(argv, 0, stderr=f"info: downloading component 'rust-std' for '{triple}'\n")

        if argv == ["rustc", "--version"]:
            return CommandResult(argv, 0, stdout=RUSTC_VERSION + "\n")
        if argv == ["cargo", "--version"]:
            return CommandResult(argv, 0, stdout=CARGO_VERSION + "\n")

        if argv[:2] == ["cargo", "build"]:
            if not self.compile_ok:
                return CommandResult(argv, 101, stderr=self.compile_stderr)
            triple = argv[argv.index("--target") + 1]
            if "--release" in argv:
                profile_dir = "release"
            elif "--profile" in argv:
                name = argv[argv.index("--profile") + 1]
                profile_dir = _PROFILE_DIRS.get(name, name)
            else:
                profile_dir = "debug"
            if self.write_artifact:
                out = self.workspace / "target" / triple / profile_dir / self.binary_name
                out.parent.mkdir(parents=True, exist_ok=True)
                out.write_bytes(self.artifact_bytes or elf_for_triple(triple))
            return CommandResult(
                argv, 0,
                stderr="   Compiling rust_app v0.1.0 (/app)\n    Finished `release` profile [optimized] target(s)\n",
            )

        return CommandResult(argv, 127, stderr=f"unexpected command: {argv}")


class FakeEngine(ImageEngine):
    """
    Image engine that records what it was asked to build.

    ``inspect`` reports the Cmd/WorkingDir found in the staged recipe,
    unless ``override_cmd`` forces a different one or ``inspect_stdout``
    replaces the whole output.
    """

    def __init__(
        self,
        build_ok: bool = True,
        override_cmd: Optional[List[str]] = None,
        inspect_stdout: Optional[str] = None,
    ):
        super().__init__("fake-engine")
        self.build_ok = build_ok
        self.override_cmd = override_cmd
        self.inspect_stdout = inspect_stdout
        self.builds: List[Dict] = []
        self.inspected: List[str] = []

    def build(self, context_dir: Path, tag: str) -> CommandResult:
        argv = [self.binary, "build", "-t", tag, str(context_dir)]
        files = sorted(p.relative_to(context_dir).as_posix() for p in context_dir.rglob("*"))
        recipe = (context_dir / "Dockerfile").read_text()
        self.builds.append({"tag": tag, "files": files, "recipe": recipe})
        if not self.build_ok:
            return CommandResult(argv, 1, stderr="ERROR: failed to solve: alpine:latest: not found\n")
        return CommandResult(argv, 0, stdout=f"Successfully tagged {tag}\n")

    def inspect(self, tag: str) -> CommandResult:
        argv = [self.binary, "image", "inspect", "--format", "{{json .}}", tag]
        self.inspected.append(tag)
        if self.inspect_stdout is not None:
            return CommandResult(argv, 0, stdout=self.inspect_stdout)
        recipe = self.builds[-1]["recipe"]
        cmd = None
        workdir = None
        for line in recipe.splitlines():
            if line.startswith("CMD "):
                cmd = json.loads(line[4:])
            elif line.startswith("WORKDIR "):
                workdir = line[8:]
        data = {
            "Id": "sha256:" + "ab" * 32,
            "Config": {"Cmd": self.override_cmd or cmd, "WorkingDir": workdir},
        }
        return CommandResult(argv, 0, stdout=json.dumps(data) + "\n")


@pytest.fixture
def v1() -> PipelineDefinition:
    return PipelineDefinition.v1()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        WORKSPACE_ROOT=str(tmp_path / "workspaces"),
        OUTPUT_DIR=str(tmp_path / "dist"),
        EXECUTOR="host",
        ENGINE_BUILD=False,
    )


@pytest.fixture
def toolchains():
    """Factory producing FakeToolchain executors; keeps every instance."""
    created: List[FakeToolchain] = []

    def make(**kwargs):
        def factory(workspace: Path) -> FakeToolchain:
            tc = FakeToolchain(workspace, **kwargs)
            created.append(tc)
            return tc
        return factory

    make.created = created
    return make
