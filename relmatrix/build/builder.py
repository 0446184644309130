"""Builder for producing the release binary of one matrix target.

This module contains the BuildJob describing a single target build and the
Builder class that runs the build command, verifies the produced binary and
lists its runtime library dependencies for the build log.
"""

from __future__ import annotations

import pathlib
import types
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Union

import structlog

from relmatrix.build.config import BuildSettings, PlatformKind, TargetSpec
from relmatrix.build.environment import RunEnvironment
from relmatrix.build.toolchain import ToolchainSelection
from relmatrix.build.utils import CommandResult, CommandRunner, join_features
from relmatrix.utils.exceptions import BuildFailure


@dataclass(frozen=True)
class BuildJob:
    """Everything needed to build one target.

    Attributes:
        target: Matrix cell being built
        kind: Platform kind of the target
        toolchain_version: Toolchain the build command runs with
        feature_flags: Cargo features enabled for the build
        env: Variables added to the build command's environment
    """

    target: TargetSpec
    kind: PlatformKind
    toolchain_version: Optional[str]
    feature_flags: FrozenSet[str]
    env: Mapping[str, str]


def remap_flag(workspace: Union[str, pathlib.Path], remap_root: str) -> str:
    """Compiler flag hiding the build host's checkout path in the binary."""
    return f"--remap-path-prefix={workspace}={remap_root}"


def create_build_job(
        target: TargetSpec,
        selection: ToolchainSelection,
        env: RunEnvironment,
        settings: BuildSettings,
        project_dir: Union[str, pathlib.Path],
        extra_features: Iterable[str] = (),
) -> BuildJob:
    """Assemble the immutable build job for a target."""
    workspace = settings.workspace or pathlib.Path(project_dir).resolve()
    build_env = {"RUSTFLAGS": remap_flag(workspace, settings.remap_root)}
    if env.static_link:
        build_env["OPENSSL_STATIC"] = "yes"

    return BuildJob(
        target=target,
        kind=selection.kind,
        toolchain_version=selection.toolchain_version,
        feature_flags=frozenset(settings.features) | frozenset(extra_features),
        env=types.MappingProxyType(build_env),
    )


def build_command(job: BuildJob, locked: bool = True) -> List[str]:
    """Build the cargo command line for a job.

    Darwin builds for the host target, so its binary lands in the default
    ``target/release`` directory; the Linux kinds name their target
    explicitly.
    """
    args = ["cargo"]
    if job.toolchain_version:
        args.append(f"+{job.toolchain_version}")
    args.append("build")
    if locked:
        args.append("--locked")
    args.append("--release")
    if job.kind != PlatformKind.DARWIN:
        args.extend(["--target", job.target.platform_id])
    if job.feature_flags:
        args.append(f"--features={join_features(job.feature_flags)}")
    return args


def dependency_command(kind: PlatformKind, binary: pathlib.Path) -> Optional[List[str]]:
    """Return the dependency listing command, or None for a statically linked binary."""
    if kind == PlatformKind.LINUX_STATIC_LIBC:
        return None
    if kind == PlatformKind.DARWIN:
        return ["otool", "-L", str(binary)]
    return ["ldd", str(binary)]


class Builder:
    """Builds the binary for a single matrix target.

    Attributes:
        job: Build job to execute
        project_dir: Root of the project checkout
        binary_name: File name of the produced binary
        settings: Shared build settings
        runner: Command runner used for the build and the dependency check
        logger: Logger bound to the target being built
    """

    def __init__(
            self,
            job: BuildJob,
            project_dir: Union[str, pathlib.Path],
            binary_name: str,
            settings: Optional[BuildSettings] = None,
            runner: Optional[CommandRunner] = None,
            logger: Optional[Any] = None,
    ) -> None:
        self.job = job
        self.project_dir = pathlib.Path(project_dir)
        self.binary_name = binary_name
        self.settings = settings or BuildSettings()
        self.logger = logger or structlog.get_logger(__name__).bind(
            target=job.target.platform_id
        )
        self.runner = runner or CommandRunner(logger=self.logger)

    @property
    def binary_path(self) -> pathlib.Path:
        return self.project_dir / self.job.target.output_path / self.binary_name

    def run_build(self) -> CommandResult:
        """Run the build command."""
        args = build_command(self.job, locked=self.settings.locked)
        self.logger.info(
            "Building target",
            kind=self.job.kind.value,
            toolchain=self.job.toolchain_version,
            features=sorted(self.job.feature_flags),
        )
        return self.runner.run(args, cwd=self.project_dir, env=dict(self.job.env))

    def check_dependencies(self, binary: pathlib.Path) -> Optional[CommandResult]:
        """List the binary's dynamic library dependencies.

        The listing is for the build log only; a failing or missing listing
        tool never fails the build.
        """
        command = dependency_command(self.job.kind, binary)
        if command is None:
            self.logger.info("Statically linked binary, no dependencies to list", binary=str(binary))
            return None
        result = self.runner.run(command, cwd=self.project_dir)
        if result.ok:
            self.logger.info("Binary dependencies", binary=str(binary), listing=result.output)
        else:
            self.logger.warning(
                "Dependency listing failed",
                binary=str(binary),
                returncode=result.returncode,
                output=result.output or result.stderr,
            )
        return result

    def build(self) -> pathlib.Path:
        """Build the target and return the path of the produced binary.

        Raises:
            BuildFailure: If the build command fails or produces no binary
        """
        result = self.run_build()
        if not result.ok:
            self.logger.error("Build failed", returncode=result.returncode)
            raise BuildFailure(
                f"Build command failed with return code {result.returncode}",
                returncode=result.returncode,
                target=self.job.target.platform_id,
                output=result.output[-2000:],
            )

        binary = self.binary_path
        if not binary.is_file():
            raise BuildFailure(
                f"Build produced no binary at {binary}",
                target=self.job.target.platform_id,
            )

        if self.settings.dependency_check:
            self.check_dependencies(binary)

        self.logger.info("Build completed successfully", binary=str(binary))
        return binary
