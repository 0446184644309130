"""Pytest configuration and fixtures for relmatrix tests."""

from __future__ import annotations

import json
import pathlib
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

import httpx
import pytest

from relmatrix.build.utils import CommandResult
from relmatrix.core.config_manager import ConfigSchema
from relmatrix.release.store import InMemoryReleaseStore

COMMIT = "abcdef1234567890abcdef1234567890abcdef12"
VERSION = "0.22.1"
PROJECT = "icx-proxy"
REPO = "dfinity/icx-proxy"


@dataclass
class FakeCargo:
    """Command runner standing in for cargo, rustup and the listing tools.

    ``cargo build`` writes a binary where the real build would, ``cargo deb``
    writes the package file. Builds for a target in ``fail_targets`` fail
    (``"host"`` names the darwin build, which passes no target), as do
    commands whose first word is in ``fail_tools``.
    """

    version: str = VERSION
    binary_name: str = PROJECT
    fail_targets: Set[str] = field(default_factory=set)
    fail_tools: Set[str] = field(default_factory=set)
    fail_deb: bool = False
    calls: List[Dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def run(
            self,
            args: Sequence[str],
            cwd: Optional[Union[str, pathlib.Path]] = None,
            env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        cwd = pathlib.Path(cwd) if cwd else pathlib.Path(".")
        with self._lock:
            self.calls.append({"args": argv, "cwd": cwd, "env": dict(env or {})})

        if argv[0] in self.fail_tools:
            return CommandResult(args=argv, returncode=1, output=f"{argv[0]} failed")

        target = argv[argv.index("--target") + 1] if "--target" in argv else None
        is_build = argv[0] == "cargo" and "build" in argv
        if is_build and (target or "host") in self.fail_targets:
            return CommandResult(args=argv, returncode=101, output="error: could not compile")

        if is_build:
            out = cwd / "target" / target / "release" if target else cwd / "target" / "release"
            out.mkdir(parents=True, exist_ok=True)
            binary = out / self.binary_name
            binary.write_bytes(f"binary for {target or 'host'}".encode())
            binary.chmod(0o755)
        elif argv[0] == "cargo" and "deb" in argv:
            if self.fail_deb:
                return CommandResult(args=argv, returncode=1, output="cargo-deb failed")
            out = cwd / "target" / target / "debian"
            out.mkdir(parents=True, exist_ok=True)
            (out / f"{PROJECT}_{self.version}_amd64.deb").write_bytes(b"debian package")
        elif argv[0] in ("ldd", "otool"):
            return CommandResult(args=argv, returncode=0, output="\tlibc.so.6 => /lib/libc.so.6")

        return CommandResult(args=argv, returncode=0)

    def commands(self, tool: Optional[str] = None) -> List[List[str]]:
        return [c["args"] for c in self.calls if tool is None or c["args"][0] == tool]


class FakeGitHub:
    """Minimal stand-in for the releases API, served through httpx.MockTransport."""

    def __init__(self, page_size: int = 100) -> None:
        self.releases: Dict[str, Dict[str, Any]] = {}
        self.assets: Dict[int, List[Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        self.page_size = page_size
        self.next_id = 1
        self.create_conflict = False
        # asset names whose upload succeeds with a body that is not JSON
        self.malformed_uploads: Set[str] = set()
        self._lock = threading.Lock()

    def _id(self) -> int:
        self.next_id += 1
        return self.next_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            return self._handle(request)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        prefix = f"/repos/{REPO}"
        assert path.startswith(prefix)
        path = path[len(prefix):]

        if request.method == "GET" and path.startswith("/releases/tags/"):
            release = self.releases.get(path.rsplit("/", 1)[1])
            return httpx.Response(200, json=release) if release else httpx.Response(404, json={})

        if request.method == "POST" and path == "/releases":
            body = json.loads(request.content)
            if self.create_conflict:
                # another writer creates the release in between
                self.create_conflict = False
                self._add_release(body["tag_name"])
                return httpx.Response(422, json={"message": "Validation Failed"})
            if body["tag_name"] in self.releases:
                return httpx.Response(422, json={"message": "Validation Failed"})
            return httpx.Response(
                201, json=self._add_release(body["tag_name"], body.get("target_commitish"))
            )

        if request.method == "GET" and path.endswith("/assets"):
            release_id = int(path.split("/")[2])
            page = int(request.url.params.get("page", "1"))
            items = self.assets[release_id]
            start = (page - 1) * self.page_size
            headers = {}
            if start + self.page_size < len(items):
                next_url = f"https://api.github.com{prefix}/releases/{release_id}/assets?page={page + 1}"
                headers["Link"] = f'<{next_url}>; rel="next"'
            return httpx.Response(200, json=items[start:start + self.page_size], headers=headers)

        if request.method == "DELETE" and path.startswith("/releases/assets/"):
            asset_id = int(path.rsplit("/", 1)[1])
            for items in self.assets.values():
                for item in items:
                    if item["id"] == asset_id:
                        items.remove(item)
                        return httpx.Response(204)
            return httpx.Response(404, json={})

        if request.method == "POST" and path.endswith("/assets"):
            assert request.url.host == "uploads.github.com"
            release_id = int(path.split("/")[2])
            name = request.url.params["name"]
            if any(item["name"] == name for item in self.assets[release_id]):
                return httpx.Response(422, json={"message": "already_exists"})
            if name in self.malformed_uploads:
                return httpx.Response(201, text="<html>proxy error</html>")
            item = {"id": self._id(), "name": name, "size": len(request.content)}
            self.assets[release_id].append(item)
            return httpx.Response(201, json=item)

        return httpx.Response(500, json={"message": "unexpected request"})

    def _add_release(self, tag: str, commit: Optional[str] = None) -> Dict[str, Any]:
        release = {"id": self._id(), "tag_name": tag, "target_commitish": commit or "main"}
        self.releases[tag] = release
        self.assets[release["id"]] = []
        return release


@pytest.fixture
def metadata() -> Dict[str, Any]:
    return {
        "packages": [
            {"name": "ic-utils", "version": "0.9.0"},
            {"name": PROJECT, "version": VERSION},
        ]
    }


@pytest.fixture
def project_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def settings(project_dir: pathlib.Path) -> ConfigSchema:
    """Default configuration publishing to memory and logging quietly."""
    return ConfigSchema(
        project={"name": PROJECT, "directory": str(project_dir)},
        publish={"backend": "memory"},
        logging={"level": "WARNING", "console": {"enabled": False}},
    )


@pytest.fixture
def fake_cargo() -> FakeCargo:
    return FakeCargo()


@pytest.fixture
def memory_store() -> InMemoryReleaseStore:
    return InMemoryReleaseStore()


@pytest.fixture
def metadata_loader(metadata) -> Callable[[], Dict[str, Any]]:
    return lambda: metadata


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()
