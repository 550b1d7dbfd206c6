"""
Shared fixtures: a command runner that records instead of executing, and a
tiny in-memory "system" whose facts steps can check and set.
"""

from __future__ import annotations
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from server_provisioner.command_runner import CommandResult, CommandRunner
from server_provisioner.errors import ActionFailed
from server_provisioner.settings import Settings
from server_provisioner.state_store import StateStore
from server_provisioner.step import RetryPolicy, step

Reply = Union[CommandResult, int, Callable[[List[str]], CommandResult]]


class RecordingRunner(CommandRunner):
    """
    Records every command and answers from a table of prefix -> reply.
    The longest matching prefix wins; unmatched commands succeed with rc 0.
    """

    def __init__(self, which: Optional[Dict[str, Optional[str]]] = None):
        super().__init__()
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self._replies: Dict[Tuple[str, ...], Reply] = {}
        self._which = which or {}

    def reply(self, prefix: Sequence[str], result: Reply) -> "RecordingRunner":
        self._replies[tuple(prefix)] = result
        return self

    def which(self, name: str) -> Optional[str]:
        return self._which.get(name)

    def run(self, cmd, *, cwd=None, env=None, timeout=None, input=None, redact=()):
        args = [str(c) for c in cmd]
        self.calls.append(args)
        self.envs.append(dict(env or {}))
        best: Optional[Tuple[str, ...]] = None
        for prefix in self._replies:
            if tuple(args[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return CommandResult(args=args, returncode=0)
        reply = self._replies[best]
        if callable(reply):
            return reply(args)
        if isinstance(reply, int):
            return CommandResult(args=args, returncode=reply)
        return CommandResult(args=args, returncode=reply.returncode, stdout=reply.stdout, stderr=reply.stderr)

    def called(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


class FakeSystem:
    """Facts that steps make true. `apply_log` records apply calls in order."""

    def __init__(self):
        self.facts: Dict[str, bool] = {}
        self.apply_log: List[str] = []
        self.failures: Dict[str, int] = {}  # step id -> number of applies that raise

    def step(self, sid: str, depends_on: Sequence[str] = (), *, max_attempts: int = 1, **kwargs):
        def check() -> bool:
            return self.facts.get(sid, False)

        def apply() -> None:
            self.apply_log.append(sid)
            if self.failures.get(sid, 0) > 0:
                self.failures[sid] -= 1
                raise ActionFailed(f"{sid} broke")
            self.facts[sid] = True

        return step(sid, check=check, apply=apply, depends_on=depends_on,
                    retry=RetryPolicy(max_attempts=max_attempts), **kwargs)


@pytest.fixture(autouse=True)
def restore_logging():
    """setup_logging() rewires the root logger; put it back after each test."""
    root = logging.getLogger()
    ours = logging.getLogger("provision")
    saved = (list(root.handlers), root.level, list(ours.handlers))
    yield
    for h in root.handlers + ours.handlers:
        if h not in saved[0] and h not in saved[2]:
            h.close()
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    ours.handlers[:] = saved[2]


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(tmp_path / ".provision" / "state.json")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        install_root=tmp_path / "aloft",
        systemd_dir=tmp_path / "systemd",
        game_archive=tmp_path / "upload" / "aloft.zip",
        manage_command=str(tmp_path / "bin" / "aloft-server"),
        retry_backoff=0,
        log_level="DEBUG",
    )
