"""Utility functions for the relmatrix build system.

This module contains the command runner used by every build step that shells
out (toolchain installation, compilation, dependency listing and native
packaging), plus small helpers shared by those steps.
"""

from __future__ import annotations

import os
import pathlib
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an external command.

    ``output`` holds stdout and stderr interleaved, in the order written.
    """

    args: List[str]
    returncode: int
    output: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands, streaming their output to a logger.

    Every step that needs a subprocess takes a runner instead of calling
    :mod:`subprocess` directly, so a whole cell can be exercised with a fake
    runner.

    Attributes:
        logger: Logger receiving one debug record per output line
        base_env: Environment the command environment is layered on
    """

    def __init__(
            self,
            logger: Optional[Any] = None,
            base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.logger = logger or structlog.get_logger("relmatrix.command")
        self.base_env: Dict[str, str] = dict(os.environ if base_env is None else base_env)

    def run(
            self,
            args: Sequence[str],
            cwd: Optional[Union[str, pathlib.Path]] = None,
            env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            args: Command and its arguments
            cwd: Working directory
            env: Variables added to the base environment

        Returns:
            The command result. A command that cannot be started at all
            (missing executable) is reported with return code 127.
        """
        argv = [str(a) for a in args]
        command_env = dict(self.base_env)
        if env:
            command_env.update(env)

        self.logger.info("Running command", command=" ".join(argv), cwd=str(cwd or "."))

        try:
            process = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd else None,
                env=command_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            self.logger.error("Command could not be started", command=argv[0], error=str(e))
            return CommandResult(args=argv, returncode=127, stderr=str(e))

        lines: List[str] = []
        for line in process.stdout:
            line = line.rstrip("\n")
            lines.append(line)
            self.logger.debug(line)

        process.wait()

        return CommandResult(
            args=argv,
            returncode=process.returncode,
            output="\n".join(lines),
        )


def join_features(features: Sequence[str]) -> str:
    """Render a feature set as a stable, comma-separated cargo argument."""
    return ",".join(sorted(set(features)))
