"""Release publishing: store backends and the upserting publisher."""

from relmatrix.release.publisher import PublishRecord, PublishStatus, ReleasePublisher
from relmatrix.release.store import GitHubReleaseStore, InMemoryReleaseStore, ReleaseStore, create_store
