"""Compiler settings, with environment-variable overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

DEFAULT_BUILDER_IMAGE = "gcr.io/jenkinsxio/builder-jx:0.1.527"
DEFAULT_NAMESPACE = "jx"
DEFAULT_SOURCE_DIR = "source"

# Every task's steps run somewhere under this root.
WORKING_DIR_ROOT = "/workspace"


@dataclass
class CompilerSettings:
    source_dir: str = DEFAULT_SOURCE_DIR          # checkout dir under /workspace
    namespace: str = DEFAULT_NAMESPACE
    builder_image: str = DEFAULT_BUILDER_IMAGE    # runs the workspace preparation step
    first_workspace_path: str | None = None       # target path for the very first task only
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CompilerSettings:
        """Read STAGEGRAPH_* variables; BUILDER_JX_IMAGE is honoured for the builder image."""
        env = os.environ if environ is None else environ
        return cls(
            source_dir=env.get("STAGEGRAPH_SOURCE_DIR") or DEFAULT_SOURCE_DIR,
            namespace=env.get("STAGEGRAPH_NAMESPACE") or DEFAULT_NAMESPACE,
            builder_image=(env.get("STAGEGRAPH_BUILDER_IMAGE")
                           or env.get("BUILDER_JX_IMAGE")
                           or DEFAULT_BUILDER_IMAGE),
        )
