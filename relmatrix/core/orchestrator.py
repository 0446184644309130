"""
Matrix orchestration.

A release run executes one cell per target. Each cell derives its own run
environment and then runs toolchain selection, build, packaging and
publishing strictly in sequence. Cells run in parallel worker threads and
share nothing but the release store; one cell failing never cancels another
unless the matrix is explicitly configured to fail fast.
"""

from __future__ import annotations

import enum
import pathlib
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from relmatrix.build.builder import Builder, create_build_job
from relmatrix.build.config import TargetSpec
from relmatrix.build.environment import RunEnvironment, derive_environment
from relmatrix.build.packager import Artifact, Packager
from relmatrix.build.toolchain import apply_pin, install_toolchain, select_toolchain
from relmatrix.build.utils import CommandRunner
from relmatrix.core.config_manager import ConfigSchema
from relmatrix.release.publisher import PublishRecord, ReleasePublisher
from relmatrix.release.store import ReleaseStore
from relmatrix.utils.exceptions import ConfigurationError, RelmatrixError

MetadataLoader = Callable[[], Mapping[str, Any]]


class CellStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class CellResult:
    """Terminal state of one matrix cell."""

    target: TargetSpec
    status: CellStatus
    error: Optional[str] = None
    error_type: Optional[str] = None
    artifacts: List[Artifact] = field(default_factory=list)
    records: List[PublishRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == CellStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.platform_id,
            "name": self.target.display_name,
            "status": self.status.value,
            "error": self.error,
            "error_type": self.error_type,
            "assets": [
                {"name": r.asset_name, "status": r.status.value, "error": r.error}
                for r in self.records
            ],
        }


@dataclass
class RunReport:
    """Aggregate of every cell of a run."""

    tag: str
    version: str
    cells: List[CellResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(cell.ok for cell in self.cells)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def get(self, key: str) -> CellResult:
        for cell in self.cells:
            if key in (cell.target.platform_id, cell.target.display_name):
                return cell
        raise KeyError(key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "version": self.version,
            "succeeded": self.succeeded,
            "cells": [cell.to_dict() for cell in self.cells],
        }


class CellRunner:
    """Runs the pipeline of a single matrix cell.

    Attributes:
        settings: Validated run configuration
        commit: Hash of the triggering commit
        metadata_loader: Returns this cell's project metadata snapshot
        store: Release store receiving the artifacts
        project_dir: Root of the project checkout
        runner: Command runner for every external command
    """

    def __init__(
            self,
            settings: ConfigSchema,
            commit: str,
            metadata_loader: MetadataLoader,
            store: ReleaseStore,
            project_dir: Union[str, pathlib.Path],
            runner: Optional[CommandRunner] = None,
            logger: Optional[Any] = None,
    ) -> None:
        self.settings = settings
        self.commit = commit
        self.metadata_loader = metadata_loader
        self.store = store
        self.project_dir = pathlib.Path(project_dir)
        self.runner = runner or CommandRunner()
        self.logger = logger or structlog.get_logger(__name__)

    def derive(self) -> RunEnvironment:
        return derive_environment(
            self.commit,
            self.metadata_loader(),
            self.settings.project.metadata_package,
            static_link=self.settings.build.static_link,
        )

    def run(self, target: TargetSpec) -> CellResult:
        """Run every step for a target and report the cell's terminal state."""
        log = self.logger.bind(target=target.platform_id)
        artifacts: List[Artifact] = []
        try:
            env = self.derive()
            log = log.bind(tag=env.tag, version=env.version)

            selection = select_toolchain(target, self.settings.toolchain)
            if selection.pin_override:
                apply_pin(self.project_dir, selection.pin_override, self.settings.toolchain.pin_file)
            if self.settings.toolchain.install:
                install_toolchain(selection, target, self.runner, self.settings.toolchain.profile)

            job = create_build_job(target, selection, env, self.settings.build, self.project_dir)
            binary = Builder(
                job,
                self.project_dir,
                self.settings.project.binary,
                settings=self.settings.build,
                runner=self.runner,
                logger=log,
            ).build()

            artifacts = Packager(
                self.project_dir, self.settings.package, runner=self.runner, logger=log
            ).package(binary, target, env, selection.toolchain_version)

            records = ReleasePublisher(self.store, logger=log).publish(
                env.tag, artifacts, commit=env.commit
            )
        except RelmatrixError as e:
            log.error("Cell failed", error=str(e), error_type=type(e).__name__)
            return CellResult(
                target=target,
                status=CellStatus.FAILED,
                error=str(e),
                error_type=type(e).__name__,
                artifacts=artifacts,
            )

        failed = [r for r in records if not r.ok]
        if failed:
            return CellResult(
                target=target,
                status=CellStatus.FAILED,
                error=f"{len(failed)} of {len(records)} assets failed to publish: "
                      + ", ".join(r.asset_name for r in failed),
                error_type="PublishError",
                artifacts=artifacts,
                records=records,
            )

        log.info("Cell succeeded", assets=[r.asset_name for r in records])
        return CellResult(
            target=target, status=CellStatus.SUCCEEDED, artifacts=artifacts, records=records
        )


class MatrixRunner:
    """Runs the cells of a matrix in parallel.

    Attributes:
        settings: Validated run configuration
        cell_runner: Runner executing each cell
    """

    def __init__(self, settings: ConfigSchema, cell_runner: CellRunner, logger: Optional[Any] = None) -> None:
        self.settings = settings
        self.cell_runner = cell_runner
        self.logger = logger or structlog.get_logger(__name__)

    def select_targets(self, only: Optional[Sequence[str]] = None) -> List[TargetSpec]:
        """Return the matrix targets to run, in matrix order.

        Raises:
            ConfigurationError: If a requested target is not in the matrix
        """
        matrix = self.settings.matrix
        if not only:
            return list(matrix.targets)
        selected = []
        for key in only:
            try:
                selected.append(matrix.get_target(key))
            except KeyError:
                raise ConfigurationError(
                    f"Target {key} is not part of the matrix", config_key="matrix.targets"
                ) from None
        return [t for t in matrix.targets if t in selected]

    def run(self, only: Optional[Sequence[str]] = None) -> RunReport:
        """Run the selected cells and aggregate their results.

        The run environment is derived once up front so that a metadata
        lookup failure aborts the run before any cell starts.

        Raises:
            MetadataLookupError: If the project version cannot be resolved
            ConfigurationError: If the commit or target selection is invalid
        """
        targets = self.select_targets(only)
        probe = self.cell_runner.derive()
        log = self.logger.bind(tag=probe.tag, version=probe.version)
        log.info("Starting release run", targets=[t.platform_id for t in targets])

        results: Dict[str, CellResult] = {}
        max_workers = self.settings.matrix.max_workers or len(targets)
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="relmatrix-cell") as pool:
            futures: Dict[Future, TargetSpec] = {
                pool.submit(self.cell_runner.run, target): target for target in targets
            }
            for future in as_completed(futures):
                target = futures[future]
                results[target.platform_id] = self._collect(future, target, log)
                if self.settings.matrix.fail_fast and not results[target.platform_id].ok:
                    for pending in futures:
                        pending.cancel()

        report = RunReport(
            tag=probe.tag,
            version=probe.version,
            cells=[results[t.platform_id] for t in targets],
        )
        log.info(
            "Release run finished",
            succeeded=report.succeeded,
            cells={c.target.display_name: c.status.value for c in report.cells},
        )
        return report

    def _collect(self, future: Future, target: TargetSpec, log: Any) -> CellResult:
        if future.cancelled():
            return CellResult(target=target, status=CellStatus.CANCELLED, error="Cancelled after an earlier failure")
        try:
            return future.result()
        except Exception as e:
            log.exception("Cell crashed", target=target.platform_id)
            return CellResult(
                target=target,
                status=CellStatus.FAILED,
                error=str(e),
                error_type=type(e).__name__,
            )
