import os
import threading
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest

from pgmount.utils.runner import CommandResult

# Set environment variables for testing
os.environ["PGMOUNT_NOTIFY"] = "false"
os.environ["PGMOUNT_FILE_MANAGER"] = ""
os.environ["PGMOUNT_POLL_INTERVAL"] = "0.05"
os.environ["PGMOUNT_SCAN_CACHE_TTL"] = "0"
os.environ["PGMOUNT_CONFIG"] = "/nonexistent/pgmount/config.yml"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_DIR"] = ""
os.environ["LOG_USE_COLOR"] = "false"

Response = Union[CommandResult, Callable[[List[str], Optional[str]], CommandResult]]


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", returncode=0)


def fail(stderr: str = "failed", returncode: int = 1) -> CommandResult:
    return CommandResult(stdout="", stderr=stderr, returncode=returncode)


class FakeRunner:
    """
    Stand-in for CommandRunner returning canned results.

    Responses are looked up by the full argv tuple first, then by the
    program name. Unknown commands behave like a missing executable.
    """

    def __init__(self, responses: Optional[Dict[object, Response]] = None):
        self.responses: Dict[object, Response] = dict(responses or {})
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.spawned: List[List[str]] = []
        self._lock = threading.Lock()

    def run(self, cmd: Sequence[str], input: Optional[str] = None,
            timeout: Optional[float] = None) -> CommandResult:
        argv = list(cmd)
        with self._lock:
            self.calls.append(argv)
            self.inputs.append(input)
        for key in (tuple(argv), argv[0]):
            if key in self.responses:
                response = self.responses[key]
                return response(argv, input) if callable(response) else response
        return CommandResult(stdout="", stderr=f"{argv[0]}: command not found", returncode=127)

    def spawn(self, cmd: Sequence[str]) -> None:
        with self._lock:
            self.spawned.append(list(cmd))

    def calls_to(self, program: str) -> List[List[str]]:
        with self._lock:
            return [c for c in self.calls if c[0] == program]


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def mount_base(tmp_path):
    base = tmp_path / "media"
    base.mkdir()
    return str(base)
