"""Build configuration for relmatrix.

This module contains the configuration classes describing the target matrix
and how each target is built, packaged and published. Every model is
validated by pydantic when the run configuration is loaded.
"""

from __future__ import annotations

import enum
import pathlib
from typing import Dict, List, Optional

import pydantic
from pydantic import Field


class PlatformKind(str, enum.Enum):
    """Closed set of platform kinds a target identifier can belong to."""

    DARWIN = "darwin"
    LINUX_STATIC_LIBC = "linux-static-libc"
    LINUX_DYNAMIC_LIBC = "linux-dynamic-libc"


class OsFamily(str, enum.Enum):
    """Operating system family of the host that builds a target."""

    MACOS = "macos"
    LINUX = "linux"


class TargetSpec(pydantic.BaseModel):
    """One matrix cell.

    Attributes:
        platform_id: Target identifier passed to the toolchain
        os_family: Host family the cell runs on
        output_path: Directory, relative to the project, holding the built binary
        display_name: Short name used in artifact names
        native_package: Whether this target also produces the native package
    """

    model_config = pydantic.ConfigDict(frozen=True)

    platform_id: str
    os_family: OsFamily
    output_path: pathlib.Path
    display_name: str
    native_package: bool = False

    @pydantic.field_validator("platform_id", "display_name")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty identifiers."""
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @pydantic.field_validator("output_path", mode="before")
    @classmethod
    def validate_output_path(cls, v):
        """Convert output path to pathlib.Path and keep it project-relative."""
        path = pathlib.Path(v)
        if path.is_absolute():
            raise ValueError(f"output path must be relative to the project: {path}")
        return path


def default_targets() -> List[TargetSpec]:
    return [
        TargetSpec(
            platform_id="x86_64-apple-darwin",
            os_family=OsFamily.MACOS,
            output_path=pathlib.Path("target/release"),
            display_name="macos",
        ),
        TargetSpec(
            platform_id="x86_64-unknown-linux-musl",
            os_family=OsFamily.LINUX,
            output_path=pathlib.Path("target/x86_64-unknown-linux-musl/release"),
            display_name="linux",
            native_package=True,
        ),
        TargetSpec(
            platform_id="x86_64-unknown-linux-gnu",
            os_family=OsFamily.LINUX,
            output_path=pathlib.Path("target/x86_64-unknown-linux-gnu/release"),
            display_name="linux-gnu",
        ),
    ]


class MatrixConfig(pydantic.BaseModel):
    """Ordered list of targets and the matrix scheduling policy."""

    targets: List[TargetSpec] = Field(default_factory=default_targets)
    fail_fast: bool = False
    max_workers: Optional[int] = None

    @pydantic.model_validator(mode="after")
    def validate_targets(self) -> "MatrixConfig":
        """Validate identifier uniqueness and the single native-package target."""
        if not self.targets:
            raise ValueError("matrix must contain at least one target")

        for attr in ("platform_id", "display_name"):
            seen = set()
            for target in self.targets:
                value = getattr(target, attr)
                if value in seen:
                    raise ValueError(f"duplicate {attr} in matrix: {value}")
                seen.add(value)

        designated = [t.platform_id for t in self.targets if t.native_package]
        if len(designated) > 1:
            raise ValueError(
                f"at most one target may produce the native package, got: {', '.join(designated)}"
            )
        return self

    def get_target(self, key: str) -> TargetSpec:
        """Find a target by platform identifier or display name.

        Raises:
            KeyError: If no target matches
        """
        for target in self.targets:
            if key in (target.platform_id, target.display_name):
                return target
        raise KeyError(key)


class ProjectSettings(pydantic.BaseModel):
    """The project being released."""

    name: str = "icx-proxy"
    package_name: Optional[str] = None
    binary_name: Optional[str] = None
    directory: pathlib.Path = pathlib.Path(".")

    @property
    def metadata_package(self) -> str:
        return self.package_name or self.name

    @property
    def binary(self) -> str:
        return self.binary_name or self.name


class ToolchainSettings(pydantic.BaseModel):
    """Toolchain versions per platform kind.

    ``pins`` are written to the project's pin file before building. A pin
    fixes the toolchain of the static-libc build container and of tools run
    there without an explicit version; cargo itself is always invoked with
    the kind's own version.
    """

    default_version: str = "1.55.0"
    versions: Dict[PlatformKind, str] = Field(default_factory=dict)
    pins: Dict[PlatformKind, str] = Field(
        default_factory=lambda: {PlatformKind.LINUX_STATIC_LIBC: "1.58.1"}
    )
    pin_file: str = "rust-toolchain"
    install: bool = True
    profile: str = "minimal"


class BuildSettings(pydantic.BaseModel):
    """Compilation settings shared by every target."""

    features: List[str] = Field(default_factory=lambda: ["skip_body_verification"])
    locked: bool = True
    static_link: bool = True
    remap_root: str = "/builds/dfinity"
    workspace: Optional[pathlib.Path] = None
    dependency_check: bool = True


class PackageSettings(pydantic.BaseModel):
    """Artifact naming and native package settings."""

    tarball_prefix: str = "binaries"
    arch_suffix: str = "amd64"
    extension: str = "deb"
    output_dir: pathlib.Path = pathlib.Path("dist")


class PublishBackend(str, enum.Enum):
    GITHUB = "github"
    MEMORY = "memory"


class PublishSettings(pydantic.BaseModel):
    """Where release assets are published."""

    backend: PublishBackend = PublishBackend.GITHUB
    repository: Optional[str] = None
    api_url: str = "https://api.github.com"
    uploads_url: str = "https://uploads.github.com"
    token: Optional[str] = None
    token_env: str = "GITHUB_TOKEN"
    timeout: float = 60.0
    prerelease: bool = False

    @pydantic.field_validator("repository")
    @classmethod
    def validate_repository(cls, v: Optional[str]) -> Optional[str]:
        """Require the ``owner/name`` form."""
        if v is None:
            return v
        parts = v.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"repository must look like 'owner/name': {v}")
        return v
