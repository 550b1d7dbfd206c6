"""
compat.py — Wine compatibility layer
------------------------------------
Initialises the Wine prefix and installs runtime components through
winetricks. Prefix commands run as the service user so the prefix is owned
by the account the server runs under.
"""

from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set
from ..command_runner import CommandResult, CommandRunner
from ..logging_setup import get_logger

log = get_logger("provision.compat")


class WineCompatLayer:
    def __init__(self, runner: CommandRunner, user: Optional[str] = None):
        self.runner = runner
        self.user = user

    def _cmd(self, cmd: List[str], env: Dict[str, str]) -> List[str]:
        assignments = [f"{k}={v}" for k, v in env.items()]
        if self.user:
            return ["runuser", "-u", self.user, "--", "env", *assignments, *cmd]
        return ["env", *assignments, *cmd]

    @staticmethod
    def _env(prefix: Path, arch: Optional[str] = None) -> Dict[str, str]:
        env = {"WINEPREFIX": str(prefix), "WINEDEBUG": "-all"}
        if arch:
            env["WINEARCH"] = arch
        return env

    def is_installed(self) -> bool:
        return bool(self.runner.which("wine")) and bool(self.runner.which("winetricks"))

    def prefix_initialized(self, prefix: Path) -> bool:
        return (Path(prefix) / "system.reg").is_file()

    def initialize_prefix(self, prefix: Path, arch: str = "win64") -> CommandResult:
        log.info("Initialising Wine prefix %s (%s)", prefix, arch)
        return self.runner.run(self._cmd(["wineboot", "-u"], self._env(prefix, arch)))

    def installed_components(self, prefix: Path) -> Set[str]:
        res = self.runner.run(self._cmd(["winetricks", "list-installed"], self._env(prefix)))
        if not res.ok:
            return set()
        return {line.strip() for line in res.stdout.splitlines() if line.strip()}

    def install_runtime_components(self, prefix: Path, names: Sequence[str]) -> CommandResult:
        log.info("Installing runtime components into %s: %s", prefix, ", ".join(names))
        return self.runner.run(self._cmd(["winetricks", "-q", *names], self._env(prefix)))
