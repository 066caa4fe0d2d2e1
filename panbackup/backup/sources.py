"""
Source preparation for backup entries.

An entry's archive input is either:
- the configured source_path/source_dir, used read-only, or
- the file/directory a configured shell command produces at source_path.
"""

import os
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when the archive input cannot be prepared."""
    pass


class CommandFailed(SourceError):
    """Raised when a source-generating command exits non-zero."""

    def __init__(self, exit_code: int):
        # Message carries the exit code only, never the command text
        super().__init__(f"Command failed with exit code: {exit_code}")
        self.exit_code = exit_code


class ShellCommandRunner:
    """
    Runs commands through the platform shell.

    The command's stdout/stderr are inherited, never captured or logged.
    """

    def run(self, command: str, workdir: Optional[str] = None) -> int:
        """
        Run a command and wait for it.

        Args:
            command: Command line to pass to the shell
            workdir: Working directory (None = current directory)

        Returns:
            Process exit status

        Raises:
            SourceError: If the shell cannot be started
        """
        if os.name == 'nt':
            args = ['cmd', '/C', command]
        else:
            args = ['sh', '-c', command]

        try:
            completed = subprocess.run(args, cwd=workdir)
        except OSError as e:
            raise SourceError(f"Failed to start command shell: {e}") from e
        return completed.returncode


@dataclass(frozen=True)
class PreparedSource:
    """Archive input produced by the Preparing stage."""

    path: Path
    generated: bool = False


def prepare_source(
    source: str,
    command: Optional[str] = None,
    command_workdir: Optional[str] = None,
    runner: Optional[ShellCommandRunner] = None
) -> PreparedSource:
    """
    Prepare the archive input for an entry.

    Args:
        source: Resolved source_path (or source_dir fallback)
        command: Resolved command that produces the source, if any
        command_workdir: Resolved working directory for the command
        runner: Command runner (defaults to ShellCommandRunner)

    Returns:
        PreparedSource pointing at an existing file or directory

    Raises:
        CommandFailed: If the command exits non-zero
        SourceError: If the workdir or resulting source is unusable
    """
    source_path = Path(source).expanduser()
    generated = False

    if command:
        if command_workdir and not Path(command_workdir).is_dir():
            raise SourceError(f"Command workdir is not a directory: {command_workdir}")

        runner = runner or ShellCommandRunner()
        logger.info("Running source command%s",
                    f" in {command_workdir}" if command_workdir else "")
        exit_code = runner.run(command, command_workdir)
        if exit_code != 0:
            raise CommandFailed(exit_code)
        generated = True

    if not source_path.exists():
        raise SourceError(f"Source path not found: {source_path}")
    if not source_path.is_dir() and not source_path.is_file():
        raise SourceError(f"Source path is not a file or directory: {source_path}")

    return PreparedSource(path=source_path, generated=generated)
