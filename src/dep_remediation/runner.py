"""Command runner boundary for package-manager and version-control tools."""

import logging
import subprocess
from pathlib import Path
from typing import Optional, Protocol

from git.cmd import Git
from git.exc import GitCommandNotFound

from .errors import CommandError
from .models import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120


class CommandRunner(Protocol):
    """Anything that can execute a command and report exit code and output."""

    def run(
        self,
        command: str,
        args: list[str],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """
    Run external tools with a bounded timeout.

    git invocations are routed through GitPython so that repository
    discovery and environment handling match the rest of the git tooling;
    everything else goes through subprocess.

    Non-zero exit codes are returned to the caller. Only a launch failure
    or a timeout raises CommandError.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def run(
        self,
        command: str,
        args: list[str],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        timeout = timeout or self.timeout
        logger.debug(f"Running: {command} {' '.join(args)} (cwd={cwd})")

        if command == "git":
            return self._run_git(args, cwd, timeout)

        try:
            completed = subprocess.run(
                [command, *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise CommandError(command, f"timed out after {timeout}s")
        except FileNotFoundError:
            raise CommandError(command, "executable not found")
        except OSError as e:
            raise CommandError(command, str(e))

        return CommandResult(
            command=command,
            args=list(args),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def _run_git(self, args: list[str], cwd: Optional[Path], timeout: float) -> CommandResult:
        git = Git(str(cwd) if cwd else None)
        try:
            status, stdout, stderr = git.execute(
                ["git", *args],
                with_extended_output=True,
                with_exceptions=False,
                kill_after_timeout=timeout,
            )
        except GitCommandNotFound:
            raise CommandError("git", "executable not found")

        return CommandResult(
            command="git",
            args=list(args),
            returncode=status if status is not None else 1,
            stdout=stdout or "",
            stderr=stderr or "",
        )
