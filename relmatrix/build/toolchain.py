"""Toolchain selection for matrix targets.

Target identifiers are classified into a :class:`PlatformKind` by an ordered
rule table. Each rule matches on the identifier's structure (vendor, system
and C runtime segments), and the most specific rules come first so a generic
Linux rule can never capture a static-libc identifier.
"""

from __future__ import annotations

import pathlib
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Tuple, Union

import structlog

from relmatrix.build.config import PlatformKind, TargetSpec, ToolchainSettings
from relmatrix.build.utils import CommandRunner
from relmatrix.utils.exceptions import ToolchainInstallError, UnsupportedTargetError

logger = structlog.get_logger(__name__)


# Ordered by specificity: the C runtime decides between the Linux kinds.
CLASSIFICATION_RULES: Tuple[Tuple[PlatformKind, Pattern[str]], ...] = (
    (PlatformKind.LINUX_STATIC_LIBC, re.compile(r"^[a-z0-9_]+-[a-z0-9_]+-linux-musl[a-z0-9_]*$")),
    (PlatformKind.LINUX_DYNAMIC_LIBC, re.compile(r"^[a-z0-9_]+-[a-z0-9_]+-linux-gnu[a-z0-9_]*$")),
    (PlatformKind.DARWIN, re.compile(r"^[a-z0-9_]+-apple-darwin$")),
)


@dataclass(frozen=True)
class ToolchainSelection:
    """Toolchain required by one target.

    Attributes:
        kind: Platform kind of the target
        toolchain_version: Toolchain the build and packaging commands run with
        pin_override: Version written to the pin file before building, if any.
            It selects the toolchain for tools invoked without an explicit
            ``+version``, such as the packaging tool's installation.
    """

    kind: PlatformKind
    toolchain_version: str
    pin_override: Optional[str] = None


def matching_kinds(platform_id: str) -> List[PlatformKind]:
    """Return every platform kind whose rule matches the identifier."""
    return [kind for kind, pattern in CLASSIFICATION_RULES if pattern.match(platform_id)]


def classify_target(platform_id: str) -> PlatformKind:
    """Classify a target identifier.

    Raises:
        UnsupportedTargetError: If no rule matches
    """
    for kind, pattern in CLASSIFICATION_RULES:
        if pattern.match(platform_id):
            return kind
    raise UnsupportedTargetError(platform_id)


def check_rules_exclusive(platform_ids: Iterable[str]) -> None:
    """Verify that no identifier is matched by more than one rule.

    Raises:
        ValueError: Naming the first ambiguous identifier
    """
    for platform_id in platform_ids:
        kinds = matching_kinds(platform_id)
        if len(kinds) > 1:
            raise ValueError(
                f"{platform_id} matches several platform kinds: "
                + ", ".join(kind.value for kind in kinds)
            )


def select_toolchain(target: TargetSpec, settings: Optional[ToolchainSettings] = None) -> ToolchainSelection:
    """Choose the toolchain version and pin override for a target."""
    settings = settings or ToolchainSettings()
    kind = classify_target(target.platform_id)
    return ToolchainSelection(
        kind=kind,
        toolchain_version=settings.versions.get(kind, settings.default_version),
        pin_override=settings.pins.get(kind),
    )


def apply_pin(
        project_dir: Union[str, pathlib.Path], pin: str, pin_file: str = "rust-toolchain"
) -> bool:
    """Write a toolchain pin file.

    The file always ends up containing exactly the pin, so applying the same
    pin again leaves it untouched.

    Returns:
        True if the file was written, False if it already held the pin
    """
    path = pathlib.Path(project_dir) / pin_file
    content = f"{pin.strip()}\n"
    if path.is_file() and path.read_text(encoding="utf-8") == content:
        logger.debug("Toolchain pin already applied", path=str(path), pin=pin)
        return False
    path.write_text(content, encoding="utf-8")
    logger.info("Applied toolchain pin", path=str(path), pin=pin)
    return True


def install_toolchain(
        selection: ToolchainSelection,
        target: TargetSpec,
        runner: CommandRunner,
        profile: str = "minimal",
) -> None:
    """Install the selected toolchain and the target's standard library.

    A pinned toolchain that differs from the build toolchain is installed too.

    Raises:
        ToolchainInstallError: If any install command fails
    """
    version = selection.toolchain_version
    commands = [
        (version, ["rustup", "toolchain", "install", version, "--profile", profile]),
        (version, ["rustup", "target", "add", "--toolchain", version, target.platform_id]),
    ]
    pin = selection.pin_override
    if pin and pin != version:
        commands.append((pin, ["rustup", "toolchain", "install", pin, "--profile", profile]))
    for toolchain, command in commands:
        result = runner.run(command)
        if not result.ok:
            raise ToolchainInstallError(
                f"Toolchain command failed with return code {result.returncode}: {' '.join(command)}",
                target=target.platform_id,
                toolchain=toolchain,
            )
    logger.info("Toolchain ready", target=target.platform_id, toolchain=version)
