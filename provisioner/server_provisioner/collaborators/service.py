from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict
from ..command_runner import CommandResult, CommandRunner
from ..templates import render_systemd_unit
from ..logging_setup import get_logger

log = get_logger("provision.service")


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    description: str
    user: str
    working_directory: Path
    exec_start: str
    environment: Dict[str, str] = field(default_factory=dict)
    restart: str = "on-failure"
    restart_sec: int = 5


class SystemdServiceManager:
    """Service-registration collaborator backed by systemd."""

    def __init__(self, runner: CommandRunner, unit_dir: Path = Path("/etc/systemd/system")):
        self.runner = runner
        self.unit_dir = Path(unit_dir)

    def unit_path(self, name: str) -> Path:
        return self.unit_dir / f"{name}.service"

    def is_registered(self, spec: ServiceSpec) -> bool:
        path = self.unit_path(spec.name)
        if not path.is_file() or path.read_text(encoding="utf-8") != render_systemd_unit(spec):
            return False
        return self.runner.run(["systemctl", "is-enabled", "--quiet", spec.name]).ok

    def register_service(self, spec: ServiceSpec) -> CommandResult:
        path = self.unit_path(spec.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_systemd_unit(spec), encoding="utf-8")
        log.info("Wrote unit %s", path)
        res = self.runner.run(["systemctl", "daemon-reload"])
        if not res.ok:
            return res
        return self.enable(spec.name)

    def unregister_service(self, name: str) -> CommandResult:
        self.runner.run(["systemctl", "disable", "--now", name])
        self.unit_path(name).unlink(missing_ok=True)
        return self.runner.run(["systemctl", "daemon-reload"])

    def _ctl(self, verb: str, name: str) -> CommandResult:
        return self.runner.run(["systemctl", verb, name])

    def start(self, name: str) -> CommandResult:
        return self._ctl("start", name)

    def stop(self, name: str) -> CommandResult:
        return self._ctl("stop", name)

    def restart(self, name: str) -> CommandResult:
        return self._ctl("restart", name)

    def enable(self, name: str) -> CommandResult:
        return self._ctl("enable", name)

    def disable(self, name: str) -> CommandResult:
        return self._ctl("disable", name)

    def status(self, name: str) -> CommandResult:
        return self.runner.run(["systemctl", "status", "--no-pager", name])

    def is_active(self, name: str) -> bool:
        return self.runner.run(["systemctl", "is-active", "--quiet", name]).ok
