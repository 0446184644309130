"""Derivation of run-scoped build parameters.

Every matrix cell derives its own :class:`RunEnvironment` from the triggering
commit and a snapshot of the project metadata. Derivation is a pure function
of those inputs, so independent cells agree on the release tag and version
without talking to each other.
"""

from __future__ import annotations

import json
import pathlib
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from relmatrix.build.utils import CommandRunner
from relmatrix.utils.exceptions import ConfigurationError, MetadataLookupError

SHORT_REVISION_LENGTH = 7

_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{7,64}$")


@dataclass(frozen=True)
class RunEnvironment:
    """Immutable values shared by every step of a cell.

    Attributes:
        commit: Full hash of the triggering commit
        short_revision: Release tag, the first seven hex characters of the commit
        version: Resolved project version
        project_name: Name of the released project
        static_link: Whether static-libc targets link their C dependencies statically
    """

    commit: str
    short_revision: str
    version: str
    project_name: str
    static_link: bool = True

    @property
    def tag(self) -> str:
        return self.short_revision

    def as_env_lines(self) -> List[str]:
        """Render the environment as ``KEY=value`` lines for a CI env file."""
        version_key = re.sub(r"[^A-Z0-9]+", "_", self.project_name.upper()).strip("_")
        lines = [f"SHA_SHORT={self.short_revision}"]
        if self.static_link:
            lines.append("OPENSSL_STATIC=yes")
        lines.append(f"{version_key}_VERSION={self.version}")
        return lines


def short_revision(commit: str) -> str:
    """Return the release tag for a commit hash.

    Raises:
        ConfigurationError: If the commit is not a hex hash of at least seven characters
    """
    commit = (commit or "").strip()
    if not _COMMIT_RE.match(commit):
        raise ConfigurationError(f"Not a commit hash: {commit!r}", config_key="commit")
    return commit[:SHORT_REVISION_LENGTH].lower()


def resolve_version(metadata: Mapping[str, Any], package_name: str) -> str:
    """Look up a package version in a cargo metadata document.

    Args:
        metadata: Parsed output of ``cargo metadata``
        package_name: Name of the package to find

    Returns:
        The package's version string

    Raises:
        MetadataLookupError: If the document has no matching package
    """
    packages = metadata.get("packages") if isinstance(metadata, Mapping) else None
    if not isinstance(packages, list):
        raise MetadataLookupError(
            "Project metadata has no package list", package_name=package_name
        )

    for package in packages:
        if isinstance(package, Mapping) and package.get("name") == package_name:
            version = package.get("version")
            if not version:
                raise MetadataLookupError(
                    f"Package {package_name} has no version", package_name=package_name
                )
            return str(version)

    raise MetadataLookupError(
        f"No package named {package_name} in project metadata", package_name=package_name
    )


def load_metadata(
        project_dir: Union[str, pathlib.Path], runner: Optional[CommandRunner] = None
) -> Dict[str, Any]:
    """Read project metadata by running ``cargo metadata`` in the project."""
    runner = runner or CommandRunner()
    result = runner.run(
        ["cargo", "metadata", "--format-version", "1", "--no-deps"], cwd=project_dir
    )
    if not result.ok:
        raise MetadataLookupError(
            f"cargo metadata failed with return code {result.returncode}",
            output=result.output[-2000:],
        )
    return _parse_metadata(result.output, source="cargo metadata")


def load_metadata_file(path: Union[str, pathlib.Path]) -> Dict[str, Any]:
    """Read a saved metadata snapshot."""
    path = pathlib.Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MetadataLookupError(f"Cannot read metadata file {path}: {e}") from e
    return _parse_metadata(content, source=str(path))


def _parse_metadata(content: str, source: str) -> Dict[str, Any]:
    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        # warnings on stderr are interleaved with the document, which is a single line
        lines = [line for line in content.splitlines() if line.startswith("{")]
        if not lines:
            raise MetadataLookupError(f"Invalid metadata from {source}: {e}") from e
        try:
            document = json.loads(lines[-1])
        except json.JSONDecodeError as inner:
            raise MetadataLookupError(f"Invalid metadata from {source}: {inner}") from inner
    if not isinstance(document, dict):
        raise MetadataLookupError(f"Invalid metadata from {source}: not an object")
    return document


def derive_environment(
        commit: str,
        metadata: Mapping[str, Any],
        package_name: str,
        static_link: bool = True,
) -> RunEnvironment:
    """Compute the run environment for one cell.

    Args:
        commit: Hash of the triggering commit
        metadata: Project metadata snapshot
        package_name: Package whose version names the release artifacts
        static_link: Static-link flag passed on to the build

    Returns:
        A frozen RunEnvironment; equal inputs always give equal results
    """
    return RunEnvironment(
        commit=commit.strip().lower(),
        short_revision=short_revision(commit),
        version=resolve_version(metadata, package_name),
        project_name=package_name,
        static_link=static_link,
    )
