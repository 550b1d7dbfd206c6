"""
delivery.py — getting the game files into place
-----------------------------------------------
Three ways to deliver the dedicated server files into the game directory:
extracting an uploaded archive, copying an unpacked directory, or asking
SteamCMD to install the app. SteamCMD itself is bootstrapped from Valve's
tarball. Every method treats the game executable in the destination as the
sign that delivery is complete.
"""

from __future__ import annotations
import shutil
import tarfile
import tempfile
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional
from ..command_runner import CommandResult, CommandRunner
from ..errors import ActionFailed, ConfigurationError
from ..logging_setup import get_logger
from ..settings import Settings

log = get_logger("provision.delivery")

# path-traversal safe extraction where the interpreter supports it
_TAR_FILTER = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}


def _copy_tree(src: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dest, dirs_exist_ok=True)


def _find_executable(root: Path, name: str) -> Optional[Path]:
    lowered = name.lower()
    matches = sorted((p for p in root.rglob("*") if p.is_file() and p.name.lower() == lowered),
                     key=lambda p: len(p.parts))
    return matches[0] if matches else None


class FileDelivery(ABC):

    def __init__(self, executable: str):
        self.executable = executable

    def is_present(self, dest: Path) -> bool:
        return (Path(dest) / self.executable).is_file()

    @abstractmethod
    def source_available(self) -> bool:
        ...

    @abstractmethod
    def deliver(self, dest: Path) -> CommandResult:
        """Place the files under `dest`. Raises ActionFailed when the source is missing."""


class ArchiveDelivery(FileDelivery):

    def __init__(self, archive: Path, executable: str):
        super().__init__(executable)
        self.archive = Path(archive)

    def source_available(self) -> bool:
        return self.archive.is_file()

    def deliver(self, dest: Path) -> CommandResult:
        if not self.source_available():
            raise ActionFailed(f"Game archive not found: {self.archive}")
        dest = Path(dest)
        log.info("Extracting %s", self.archive)
        with tempfile.TemporaryDirectory(prefix="provision-extract-") as tmp:
            try:
                shutil.unpack_archive(str(self.archive), tmp)
            except (shutil.ReadError, ValueError) as e:
                raise ActionFailed(f"Cannot extract {self.archive}: {e}") from e
            exe = _find_executable(Path(tmp), self.executable)
            if exe is None:
                raise ActionFailed(f"{self.executable} not found inside {self.archive}")
            # archives often wrap everything in one top-level folder
            _copy_tree(exe.parent, dest)
        log.info("Game files installed to %s", dest)
        return CommandResult(args=["unpack", str(self.archive), str(dest)], returncode=0)


class DirectoryCopyDelivery(FileDelivery):

    def __init__(self, source: Path, executable: str):
        super().__init__(executable)
        self.source = Path(source)

    def source_available(self) -> bool:
        return (self.source / self.executable).is_file()

    def deliver(self, dest: Path) -> CommandResult:
        if not self.source_available():
            raise ActionFailed(f"{self.executable} not found in source directory {self.source}")
        log.info("Copying %s -> %s", self.source, dest)
        _copy_tree(self.source, Path(dest))
        return CommandResult(args=["copy", str(self.source), str(dest)], returncode=0)


class SteamCmdDelivery(FileDelivery):

    def __init__(self, runner: CommandRunner, steamcmd_sh: Path, app_id: int, executable: str,
                 user: str = "anonymous", password: str = "", platform: str = "windows"):
        super().__init__(executable)
        self.runner = runner
        self.steamcmd_sh = Path(steamcmd_sh)
        self.app_id = app_id
        self.user = user
        self.password = password
        self.platform = platform

    def source_available(self) -> bool:
        return self.steamcmd_sh.is_file()

    def bootstrap(self, url: str, timeout: float = 60) -> None:
        """Download the SteamCMD tarball and unpack it next to steamcmd.sh."""
        target = self.steamcmd_sh.parent
        target.mkdir(parents=True, exist_ok=True)
        log.info("Downloading SteamCMD from %s", url)
        req = urllib.request.Request(url, headers={"User-Agent": "Mozilla/5.0"})
        with tempfile.TemporaryFile() as buf:
            try:
                with urllib.request.urlopen(req, timeout=timeout) as response:
                    shutil.copyfileobj(response, buf)
            except (urllib.error.URLError, OSError) as e:
                raise ActionFailed(f"Cannot download SteamCMD from {url}: {e}") from e
            buf.seek(0)
            try:
                with tarfile.open(fileobj=buf, mode="r:gz") as tar:
                    tar.extractall(target, **_TAR_FILTER)
            except (tarfile.TarError, OSError) as e:
                raise ActionFailed(f"Cannot unpack SteamCMD into {target}: {e}") from e
        if not self.source_available():
            raise ActionFailed(f"{self.steamcmd_sh.name} not found in {target} after unpacking")
        log.info("SteamCMD installed to %s", target)

    def _login(self) -> List[str]:
        if self.user == "anonymous" or not self.password:
            return ["+login", self.user]
        return ["+login", self.user, self.password]

    def deliver(self, dest: Path) -> CommandResult:
        if not self.source_available():
            raise ActionFailed(f"steamcmd.sh not found: {self.steamcmd_sh}")
        cmd = [
            str(self.steamcmd_sh),
            "+@sSteamCmdForcePlatformType", self.platform,
            "+force_install_dir", str(dest),
            *self._login(),
            "+app_update", str(self.app_id), "validate",
            "+quit",
        ]
        res = self.runner.run(cmd, cwd=self.steamcmd_sh.parent, redact=[self.password])
        res.raise_for_status(f"steamcmd app_update {self.app_id}")
        if not self.is_present(dest):
            raise ActionFailed(f"steamcmd finished but {self.executable} is missing in {dest}")
        return res


def make_delivery(settings: Settings, runner: CommandRunner) -> FileDelivery:
    method = settings.delivery_method
    if method == "archive":
        return ArchiveDelivery(settings.game_archive, settings.game_executable)
    if method == "copy":
        if settings.game_source_dir is None:
            raise ConfigurationError("DELIVERY_METHOD=copy requires GAME_SOURCE_DIR")
        return DirectoryCopyDelivery(settings.game_source_dir, settings.game_executable)
    if method == "steamcmd":
        return SteamCmdDelivery(runner, settings.steamcmd_script, settings.steam_app_id, settings.game_executable,
                                user=settings.steam_user, password=settings.steam_password)
    raise ConfigurationError(f"Unknown delivery method: {method}")
