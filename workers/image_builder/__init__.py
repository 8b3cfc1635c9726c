"""
image_builder: Two-stage static image pipeline

Compile a Build Context to one statically-linked ELF inside a builder
toolchain, then stage a minimal runtime image around that single artifact.
Registry push and CI wiring are left to the caller.

Definition: rust-musl-alpine-v1
"""

__version__ = "1.0.0"
PIPELINE_NAME = "image_builder"
PIPELINE_VERSION = "v1"
DEFINITION_ID = "rust-musl-alpine-v1"
