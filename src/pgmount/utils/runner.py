"""
External command execution.

Discovery strategies and orchestrators never call subprocess directly. They
go through a CommandRunner so tests can substitute canned tool output.
"""
import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

NOT_FOUND = 127
TIMED_OUT = -1


@dataclass
class CommandResult:
    """Result of running an external tool."""

    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as shown in error messages."""
        return (self.stdout + self.stderr).strip()


class CommandRunner:
    """Runs commands via subprocess without a shell."""

    def __init__(self, timeout: Optional[float] = 60):
        self.timeout = timeout

    def run(self, cmd: Sequence[str], input: Optional[str] = None,
            timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command to completion.

        Args:
            cmd: Program and arguments
            input: Text written to the command's standard input. Never logged.
            timeout: Seconds before the command is killed

        Returns:
            CommandResult; a missing program yields return code 127 and a
            timeout yields -1.
        """
        argv: List[str] = list(cmd)
        logger.debug(f"Running: {' '.join(argv)}")
        try:
            process = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                stdout=_decode(e.stdout),
                stderr=f"Command timed out after {e.timeout}s",
                returncode=TIMED_OUT,
            )
        except FileNotFoundError:
            return CommandResult(stdout="", stderr=f"{argv[0]}: command not found", returncode=NOT_FOUND)
        except PermissionError as e:
            return CommandResult(stdout="", stderr=str(e), returncode=NOT_FOUND)

        return CommandResult(
            stdout=process.stdout or "",
            stderr=process.stderr or "",
            returncode=process.returncode,
        )

    def spawn(self, cmd: Sequence[str]) -> None:
        """Start a command and do not wait for it (file managers and the like)."""
        argv = list(cmd)
        logger.debug(f"Spawning: {' '.join(argv)}")
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
