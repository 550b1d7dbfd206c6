from __future__ import annotations
from abc import ABC, abstractmethod
from typing import List, Sequence
from ..command_runner import CommandResult, CommandRunner
from ..errors import ConfigurationError
from ..logging_setup import get_logger

log = get_logger("provision.packages")


class PackageManager(ABC):
    """Package-manager collaborator. install() is idempotent by the manager's own semantics."""
    name = ""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    @abstractmethod
    def update(self) -> CommandResult:
        ...

    @abstractmethod
    def install(self, names: Sequence[str]) -> CommandResult:
        ...

    @abstractmethod
    def is_installed(self, name: str) -> bool:
        ...

    def missing(self, names: Sequence[str]) -> List[str]:
        return [n for n in names if not self.is_installed(n)]


class AptPackageManager(PackageManager):
    name = "apt"
    _env = {"DEBIAN_FRONTEND": "noninteractive"}

    def update(self) -> CommandResult:
        return self.runner.run(["apt-get", "update"], env=self._env)

    def install(self, names: Sequence[str]) -> CommandResult:
        return self.runner.run(["apt-get", "install", "-y", *names], env=self._env)

    def is_installed(self, name: str) -> bool:
        res = self.runner.run(["dpkg-query", "-W", "-f=${Status}", name])
        return res.ok and "install ok installed" in res.stdout

    def foreign_architectures(self) -> List[str]:
        res = self.runner.run(["dpkg", "--print-foreign-architectures"])
        return res.stdout.split() if res.ok else []

    def add_architecture(self, arch: str) -> CommandResult:
        return self.runner.run(["dpkg", "--add-architecture", arch])


class DnfPackageManager(PackageManager):
    name = "dnf"

    def update(self) -> CommandResult:
        # `dnf check-update` exits 100 when updates exist; makecache only refreshes metadata
        return self.runner.run(["dnf", "makecache"])

    def install(self, names: Sequence[str]) -> CommandResult:
        return self.runner.run(["dnf", "install", "-y", *names])

    def is_installed(self, name: str) -> bool:
        return self.runner.run(["rpm", "-q", name]).ok


def detect_package_manager(runner: CommandRunner, preferred: str = "auto") -> PackageManager:
    if preferred == "apt":
        return AptPackageManager(runner)
    if preferred == "dnf":
        return DnfPackageManager(runner)
    for binary, cls in (("apt-get", AptPackageManager), ("dnf", DnfPackageManager)):
        if runner.which(binary):
            log.info("Detected package manager: %s", cls.name)
            return cls(runner)
    raise ConfigurationError("Unsupported package manager: this host has neither apt-get nor dnf")
