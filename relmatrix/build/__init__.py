"""Build system for relmatrix.

This package contains the steps executed by every matrix cell, leaves first.

Modules:
    config: Target matrix and build configuration classes
    environment: Derivation of the run environment from commit and metadata
    toolchain: Target classification, toolchain selection and pinning
    builder: Build job and builder producing the target binary
    packager: Tarball and native package creation
    utils: Command runner and helpers for the build process
"""

from __future__ import annotations

from relmatrix.build.builder import Builder, BuildJob
from relmatrix.build.config import MatrixConfig, OsFamily, PlatformKind, TargetSpec
from relmatrix.build.environment import RunEnvironment, derive_environment
from relmatrix.build.packager import Artifact, ArtifactKind, Packager
from relmatrix.build.toolchain import ToolchainSelection, classify_target, select_toolchain

__all__ = [
    "Artifact",
    "ArtifactKind",
    "Builder",
    "BuildJob",
    "MatrixConfig",
    "OsFamily",
    "Packager",
    "PlatformKind",
    "RunEnvironment",
    "TargetSpec",
    "ToolchainSelection",
    "classify_target",
    "derive_environment",
    "select_toolchain",
]
