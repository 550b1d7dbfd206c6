from __future__ import annotations
from pathlib import Path
from typing import List, Literal, Optional
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from .models import PortRange, WorldSettings


def _default_port_ranges() -> List[PortRange]:
    return [
        PortRange(proto="tcp", lo=27015, hi=27030),
        PortRange(proto="udp", lo=27015, hi=27030),
        PortRange(proto="tcp", lo=27036, hi=27037),
        PortRange(proto="udp", lo=27036, hi=27037),
    ]


class Settings(BaseSettings):
    install_root: Path = Field(default=Path("/opt/aloft-server"), alias="INSTALL_ROOT")
    server_user: str = Field(default="aloft", alias="SERVER_USER")

    package_manager: Literal["auto", "apt", "dnf"] = Field(default="auto", alias="PACKAGE_MANAGER")
    base_packages: List[str] = Field(
        default_factory=lambda: [
            "sudo", "curl", "wget", "tar", "unzip", "cabextract", "xvfb", "gnupg2", "ca-certificates",
        ],
        alias="BASE_PACKAGES",
    )
    compat_packages: List[str] = Field(default_factory=lambda: ["wine", "wine64", "winetricks"], alias="COMPAT_PACKAGES")
    compat_arch: str = Field(default="win64", alias="WINEARCH")
    runtime_components: List[str] = Field(default_factory=lambda: ["vcrun2019", "dotnet48"], alias="RUNTIME_COMPONENTS")

    delivery_method: Literal["archive", "copy", "steamcmd"] = Field(default="archive", alias="DELIVERY_METHOD")
    game_archive: Path = Field(default=Path("/root/tmp/aloft.zip"), alias="GAME_ARCHIVE")
    game_source_dir: Optional[Path] = Field(default=None, alias="GAME_SOURCE_DIR")
    game_executable: str = Field(default="Aloft.exe", alias="GAME_EXECUTABLE")
    steamcmd_sh: Optional[Path] = Field(default=None, alias="STEAMCMD_SH")
    steamcmd_url: str = Field(
        default="https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz", alias="STEAMCMD_URL"
    )
    steam_app_id: int = Field(default=1660080, alias="STEAM_APP_ID")
    steam_user: str = Field(default="anonymous", alias="STEAM_USER")
    steam_password: str = Field(default="", alias="STEAM_PASSWORD")

    service_name: str = Field(default="aloft-server", alias="SERVICE_NAME")
    systemd_dir: Path = Field(default=Path("/etc/systemd/system"), alias="SYSTEMD_DIR")
    # empty string: do not install the management command
    manage_command: str = Field(default="/usr/local/bin/aloft-server", alias="MANAGE_COMMAND")

    firewall_enabled: bool = Field(default=True, alias="FIREWALL_ENABLED")
    firewall_ranges: List[PortRange] = Field(default_factory=_default_port_ranges, alias="FIREWALL_RANGES")

    world: WorldSettings = Field(default_factory=WorldSettings, alias="WORLD")

    best_effort: bool = Field(default=False, alias="BEST_EFFORT")
    max_workers: int = Field(default=1, ge=1, alias="MAX_WORKERS")
    retry_attempts: int = Field(default=3, ge=1, alias="RETRY_ATTEMPTS")
    retry_backoff: float = Field(default=5.0, ge=0, alias="RETRY_BACKOFF")
    step_timeout: Optional[float] = Field(default=3600.0, alias="STEP_TIMEOUT")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    @model_validator(mode="after")
    def _check_delivery(self) -> "Settings":
        if self.delivery_method == "copy" and self.game_source_dir is None:
            raise ValueError("DELIVERY_METHOD=copy requires GAME_SOURCE_DIR")
        return self

    @property
    def game_dir(self) -> Path:
        return self.install_root / "game"

    @property
    def wine_prefix(self) -> Path:
        return self.install_root / "wineprefix"

    @property
    def logs_dir(self) -> Path:
        return self.install_root / "logs"

    @property
    def state_dir(self) -> Path:
        return self.install_root / ".provision"

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def server_conf(self) -> Path:
        return self.install_root / "server.conf"

    @property
    def start_script(self) -> Path:
        return self.install_root / "start-server.sh"

    @property
    def steamcmd_script(self) -> Path:
        return self.steamcmd_sh or self.install_root / "steamcmd" / "steamcmd.sh"

    @property
    def manage_command_path(self) -> Optional[Path]:
        return Path(self.manage_command) if self.manage_command else None
