"""Publishing of artifacts to a tag-addressed release.

Each ``(tag, asset name)`` pair is upserted independently: an existing asset
with the same name is replaced, otherwise the asset is created. The release
itself is created on the first upsert that needs it.
"""

from __future__ import annotations

import enum
import pathlib
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

import structlog

from relmatrix.build.packager import Artifact, ArtifactKind
from relmatrix.release.store import Release, ReleaseStore
from relmatrix.utils.exceptions import PublishError

_PUBLISH_ORDER = {ArtifactKind.TARBALL: 0, ArtifactKind.NATIVE_PACKAGE: 1}


class PublishStatus(str, enum.Enum):
    CREATED = "created"
    REPLACED = "replaced"
    FAILED = "failed"


@dataclass(frozen=True)
class PublishRecord:
    """Outcome of one upsert."""

    tag: str
    asset_name: str
    status: PublishStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != PublishStatus.FAILED


class ReleasePublisher:
    """Upserts artifacts into the release for a tag.

    Attributes:
        store: Release store receiving the assets
        logger: Logger instance
    """

    def __init__(self, store: ReleaseStore, logger: Optional[Any] = None) -> None:
        self.store = store
        self.logger = logger or structlog.get_logger(__name__)

    def ensure_release(self, tag: str, commit: Optional[str] = None) -> Release:
        release = self.store.find_release(tag)
        if release is None:
            release = self.store.create_release(tag, commit)
        return release

    def upsert(self, tag: str, artifact: Artifact, commit: Optional[str] = None) -> PublishRecord:
        """Create or replace one asset.

        A missing release is created at ``commit``.

        Raises:
            PublishError: If the artifact cannot be read or the store rejects an operation
        """
        try:
            data = pathlib.Path(artifact.source_path).read_bytes()
        except OSError as e:
            raise PublishError(
                f"Cannot read artifact {artifact.source_path}: {e}",
                tag=tag,
                asset_name=artifact.asset_name,
            ) from e

        release = self.ensure_release(tag, commit)
        status = PublishStatus.CREATED
        for asset in self.store.list_assets(release):
            if asset.name == artifact.asset_name:
                self.store.delete_asset(release, asset)
                status = PublishStatus.REPLACED

        self.store.upload_asset(release, artifact.asset_name, data)
        self.logger.info(
            "Published asset", tag=tag, asset=artifact.asset_name, status=status.value
        )
        return PublishRecord(tag=tag, asset_name=artifact.asset_name, status=status)

    def publish(
            self, tag: str, artifacts: Iterable[Artifact], commit: Optional[str] = None
    ) -> List[PublishRecord]:
        """Upsert every artifact, tarballs first.

        A failed upsert is recorded and does not stop the remaining ones.
        """
        records: List[PublishRecord] = []
        for artifact in sorted(artifacts, key=lambda a: _PUBLISH_ORDER[a.kind]):
            try:
                records.append(self.upsert(tag, artifact, commit))
            except Exception as e:
                self.logger.error(
                    "Failed to publish asset",
                    tag=tag,
                    asset=artifact.asset_name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                records.append(
                    PublishRecord(
                        tag=tag,
                        asset_name=artifact.asset_name,
                        status=PublishStatus.FAILED,
                        error=str(e),
                    )
                )
        return records
