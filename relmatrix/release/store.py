"""
Release store backends.

A release store groups uploaded assets under a tag. The publisher only needs
a handful of primitive operations from a store; upsert semantics are built on
top of them in :mod:`relmatrix.release.publisher`.
"""

from __future__ import annotations

import itertools
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

import httpx
import structlog

from relmatrix.build.config import PublishBackend, PublishSettings
from relmatrix.utils.exceptions import ConfigurationError, PublishError

T = TypeVar("T")


@dataclass(frozen=True)
class Release:
    """A release identified by its tag."""

    id: int
    tag: str


@dataclass(frozen=True)
class Asset:
    """A named file attached to a release."""

    id: int
    name: str
    size: int = 0


@runtime_checkable
class ReleaseStore(Protocol):
    """Protocol defining the operations a release store must provide."""

    def find_release(self, tag: str) -> Optional[Release]:
        """Return the release for a tag, or None if it does not exist."""
        ...

    def create_release(self, tag: str, commit: Optional[str] = None) -> Release:
        """Create the release for a tag at a commit, returning the existing one if another writer won."""
        ...

    def list_assets(self, release: Release) -> List[Asset]:
        """List the assets of a release."""
        ...

    def delete_asset(self, release: Release, asset: Asset) -> None:
        """Delete an asset; deleting an asset that is already gone is not an error."""
        ...

    def upload_asset(self, release: Release, name: str, data: bytes) -> Asset:
        """Upload a new asset."""
        ...


class InMemoryReleaseStore:
    """Thread-safe release store kept in process memory.

    Used for dry runs and tests. Like a real store it refuses a second asset
    with an existing name, so duplicate uploads surface as errors.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._releases: Dict[str, Release] = {}
        self._assets: Dict[int, Dict[str, Asset]] = {}
        self._content: Dict[int, bytes] = {}
        self._commits: Dict[str, Optional[str]] = {}

    def find_release(self, tag: str) -> Optional[Release]:
        with self._lock:
            return self._releases.get(tag)

    def create_release(self, tag: str, commit: Optional[str] = None) -> Release:
        with self._lock:
            release = self._releases.get(tag)
            if release is None:
                release = Release(id=next(self._ids), tag=tag)
                self._releases[tag] = release
                self._commits[tag] = commit
                self._assets[release.id] = {}
            return release

    def list_assets(self, release: Release) -> List[Asset]:
        with self._lock:
            return list(self._assets.get(release.id, {}).values())

    def delete_asset(self, release: Release, asset: Asset) -> None:
        with self._lock:
            assets = self._assets.get(release.id, {})
            if assets.get(asset.name) == asset:
                del assets[asset.name]
                self._content.pop(asset.id, None)

    def upload_asset(self, release: Release, name: str, data: bytes) -> Asset:
        with self._lock:
            if release.id not in self._assets:
                raise PublishError(f"Unknown release {release.tag}", tag=release.tag, asset_name=name)
            assets = self._assets[release.id]
            if name in assets:
                raise PublishError(
                    f"Asset {name} already exists in release {release.tag}",
                    tag=release.tag,
                    asset_name=name,
                    status_code=422,
                )
            asset = Asset(id=next(self._ids), name=name, size=len(data))
            assets[name] = asset
            self._content[asset.id] = bytes(data)
            return asset

    def release_tags(self) -> List[str]:
        with self._lock:
            return list(self._releases)

    def release_commit(self, tag: str) -> Optional[str]:
        """Return the commit a release was created at."""
        with self._lock:
            return self._commits[tag]

    def asset_content(self, tag: str, name: str) -> bytes:
        """Return the stored bytes of an asset.

        Raises:
            KeyError: If the release or asset does not exist
        """
        with self._lock:
            release = self._releases[tag]
            return self._content[self._assets[release.id][name].id]


class GitHubReleaseStore:
    """Release store backed by GitHub Releases.

    Attributes:
        repository: Repository in ``owner/name`` form
        api_url: Base URL of the REST API
        uploads_url: Base URL of the asset upload endpoint
    """

    def __init__(
            self,
            repository: str,
            token: str,
            api_url: str = "https://api.github.com",
            uploads_url: str = "https://uploads.github.com",
            timeout: float = 60.0,
            prerelease: bool = False,
            transport: Optional[httpx.BaseTransport] = None,
            logger: Any = None,
    ) -> None:
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.uploads_url = uploads_url.rstrip("/")
        self.prerelease = prerelease
        self._logger = logger or structlog.get_logger(__name__)
        self._client = httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    def _url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.repository}{path}"

    def _request(self, method: str, url: str, tag: Optional[str] = None,
                 asset_name: Optional[str] = None, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            self._logger.error(
                "Release store request failed", method=method, url=url, error=str(e)
            )
            raise PublishError(
                f"{method} {url} failed: {e}", tag=tag, asset_name=asset_name
            ) from e

    @staticmethod
    def _check(response: httpx.Response, tag: Optional[str] = None,
               asset_name: Optional[str] = None) -> httpx.Response:
        if not response.is_success:
            raise PublishError(
                f"{response.request.method} {response.request.url} returned "
                f"{response.status_code}: {response.text[:500]}",
                tag=tag,
                asset_name=asset_name,
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _parse(response: httpx.Response, parse: Callable[[Any], T], tag: Optional[str] = None,
               asset_name: Optional[str] = None) -> T:
        """Decode a successful response body and read the fields ``parse`` needs.

        Raises:
            PublishError: If the body is not JSON or lacks the expected fields
        """
        try:
            return parse(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise PublishError(
                f"{response.request.method} {response.request.url} returned an unexpected "
                f"body ({type(e).__name__}: {e}): {response.text[:200]}",
                tag=tag,
                asset_name=asset_name,
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _release(data: Any) -> Release:
        return Release(id=data["id"], tag=data["tag_name"])

    def find_release(self, tag: str) -> Optional[Release]:
        response = self._request("GET", self._url(f"/releases/tags/{tag}"), tag=tag)
        if response.status_code == 404:
            return None
        return self._parse(self._check(response, tag=tag), self._release, tag=tag)

    def create_release(self, tag: str, commit: Optional[str] = None) -> Release:
        body: Dict[str, Any] = {"tag_name": tag, "name": tag, "prerelease": self.prerelease}
        if commit:
            body["target_commitish"] = commit
        response = self._request("POST", self._url("/releases"), tag=tag, json=body)
        if response.status_code == 422:
            # another cell created it first
            existing = self.find_release(tag)
            if existing is not None:
                return existing
        release = self._parse(self._check(response, tag=tag), self._release, tag=tag)
        self._logger.info("Created release", tag=tag, release_id=release.id, commit=commit)
        return release

    def list_assets(self, release: Release) -> List[Asset]:
        assets: List[Asset] = []
        url: Optional[str] = self._url(f"/releases/{release.id}/assets")
        params: Optional[Dict[str, Any]] = {"per_page": 100}
        while url:
            response = self._check(
                self._request("GET", url, tag=release.tag, params=params), tag=release.tag
            )
            assets.extend(self._parse(
                response,
                lambda items: [
                    Asset(id=item["id"], name=item["name"], size=item.get("size", 0))
                    for item in items
                ],
                tag=release.tag,
            ))
            url = response.links.get("next", {}).get("url")
            params = None
        return assets

    def delete_asset(self, release: Release, asset: Asset) -> None:
        response = self._request(
            "DELETE",
            self._url(f"/releases/assets/{asset.id}"),
            tag=release.tag,
            asset_name=asset.name,
        )
        if response.status_code != 404:
            self._check(response, tag=release.tag, asset_name=asset.name)

    def upload_asset(self, release: Release, name: str, data: bytes) -> Asset:
        response = self._request(
            "POST",
            f"{self.uploads_url}/repos/{self.repository}/releases/{release.id}/assets",
            tag=release.tag,
            asset_name=name,
            params={"name": name},
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        return self._parse(
            self._check(response, tag=release.tag, asset_name=name),
            lambda item: Asset(id=item["id"], name=item["name"], size=item.get("size", len(data))),
            tag=release.tag,
            asset_name=name,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()


def create_store(
        settings: PublishSettings, transport: Optional[httpx.BaseTransport] = None
) -> ReleaseStore:
    """Create the release store selected by the publish settings.

    Raises:
        ConfigurationError: If the GitHub backend lacks a repository or token
    """
    if settings.backend == PublishBackend.MEMORY:
        return InMemoryReleaseStore()

    if not settings.repository:
        raise ConfigurationError(
            "A repository is required to publish to GitHub", config_key="publish.repository"
        )
    token = settings.token or os.environ.get(settings.token_env)
    if not token:
        raise ConfigurationError(
            f"No GitHub token configured; set publish.token or {settings.token_env}",
            config_key="publish.token",
        )
    return GitHubReleaseStore(
        repository=settings.repository,
        token=token,
        api_url=settings.api_url,
        uploads_url=settings.uploads_url,
        timeout=settings.timeout,
        prerelease=settings.prerelease,
        transport=transport,
    )
