"""Packaging of built binaries into release artifacts.

Every target yields a gzip-compressed tarball holding its binary. The one
target configured with ``native_package`` also yields a Debian package built
by ``cargo deb`` from the already compiled binary.
"""

from __future__ import annotations

import enum
import pathlib
import tarfile
from dataclasses import dataclass
from typing import Any, List, Optional, Union

import structlog

from relmatrix.build.config import PackageSettings, TargetSpec
from relmatrix.build.environment import RunEnvironment
from relmatrix.build.utils import CommandRunner
from relmatrix.utils.exceptions import PackagingFailure


class ArtifactKind(str, enum.Enum):
    """Kinds of release artifacts, in publish order."""

    TARBALL = "tarball"
    NATIVE_PACKAGE = "native-package"


@dataclass(frozen=True)
class Artifact:
    """A file ready to be published.

    Attributes:
        kind: Artifact kind
        source_path: Local file to upload
        asset_name: Name of the asset in the release
    """

    kind: ArtifactKind
    source_path: pathlib.Path
    asset_name: str


def tarball_name(target: TargetSpec, prefix: str = "binaries") -> str:
    return f"{prefix}-{target.display_name}.tar.gz"


def native_package_name(project: str, version: str, arch_suffix: str = "amd64", extension: str = "deb") -> str:
    """Name of the native package as written by the package builder."""
    return f"{project}_{version}_{arch_suffix}.{extension}"


def create_tarball(
        binary: Union[str, pathlib.Path],
        target: TargetSpec,
        output_dir: Union[str, pathlib.Path],
        prefix: str = "binaries",
) -> Artifact:
    """Create the compressed archive holding a target's binary.

    The binary is stored at the archive root under its own file name.

    Raises:
        PackagingFailure: If the binary is missing or the archive cannot be written
    """
    binary = pathlib.Path(binary)
    if not binary.is_file():
        raise PackagingFailure(f"Binary not found: {binary}", target=target.platform_id)

    output_dir = pathlib.Path(output_dir)
    name = tarball_name(target, prefix)
    archive_path = output_dir / name
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, "w:gz") as tar:
            tar.add(str(binary), arcname=binary.name)
    except (OSError, tarfile.TarError) as e:
        raise PackagingFailure(
            f"Cannot create archive {archive_path}: {e}", target=target.platform_id
        ) from e

    return Artifact(kind=ArtifactKind.TARBALL, source_path=archive_path, asset_name=name)


class Packager:
    """Produces the artifacts of one matrix target.

    Attributes:
        project_dir: Root of the project checkout
        settings: Naming and output settings
        runner: Command runner used for the native package build
        logger: Logger instance
    """

    def __init__(
            self,
            project_dir: Union[str, pathlib.Path],
            settings: Optional[PackageSettings] = None,
            runner: Optional[CommandRunner] = None,
            logger: Optional[Any] = None,
    ) -> None:
        self.project_dir = pathlib.Path(project_dir)
        self.settings = settings or PackageSettings()
        self.logger = logger or structlog.get_logger(__name__)
        self.runner = runner or CommandRunner(logger=self.logger)

    @property
    def output_dir(self) -> pathlib.Path:
        if self.settings.output_dir.is_absolute():
            return self.settings.output_dir
        return self.project_dir / self.settings.output_dir

    def native_package_path(self, target: TargetSpec, env: RunEnvironment) -> pathlib.Path:
        # the package builder writes next to the target's release directory
        name = native_package_name(
            env.project_name, env.version, self.settings.arch_suffix, self.settings.extension
        )
        return self.project_dir / target.output_path.parent / "debian" / name

    def build_native_package(
            self,
            target: TargetSpec,
            env: RunEnvironment,
            toolchain_version: Optional[str] = None,
    ) -> Artifact:
        """Build the native package from the already compiled binary.

        Raises:
            PackagingFailure: If the package builder fails or writes no package
        """
        args = ["cargo"]
        if toolchain_version:
            args.append(f"+{toolchain_version}")
        args.extend(["deb", "--no-build", "--target", target.platform_id])

        result = self.runner.run(args, cwd=self.project_dir)
        if not result.ok:
            raise PackagingFailure(
                f"Native package build failed with return code {result.returncode}",
                target=target.platform_id,
                output=result.output[-2000:],
            )

        package_path = self.native_package_path(target, env)
        if not package_path.is_file():
            raise PackagingFailure(
                f"Native package not found at {package_path}", target=target.platform_id
            )

        self.logger.info("Native package created", package=str(package_path))
        return Artifact(
            kind=ArtifactKind.NATIVE_PACKAGE,
            source_path=package_path,
            asset_name=package_path.name,
        )

    def package(
            self,
            binary: Union[str, pathlib.Path],
            target: TargetSpec,
            env: RunEnvironment,
            toolchain_version: Optional[str] = None,
    ) -> List[Artifact]:
        """Produce every artifact for a target.

        Returns:
            The tarball, followed by the native package for the designated target
        """
        artifacts = [create_tarball(binary, target, self.output_dir, self.settings.tarball_prefix)]
        self.logger.info("Tarball created", asset=artifacts[0].asset_name)

        if target.native_package:
            artifacts.append(self.build_native_package(target, env, toolchain_version))

        return artifacts
