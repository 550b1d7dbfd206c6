"""
recipes.py — the Aloft dedicated server recipe
----------------------------------------------
Builds the declarative step list for one installation root. Collaborators
are created lazily so that `plan` and `status` work on hosts where, for
example, no supported package manager exists; the error then surfaces from
the step that needs it.
"""

from __future__ import annotations
import os
import pwd
import sys
from functools import cached_property
from pathlib import Path
from typing import List, Optional

from .collaborators import (AptPackageManager, FileDelivery, PackageManager, ServiceSpec, SteamCmdDelivery,
                            SystemdServiceManager, UfwFirewall, WineCompatLayer, detect_package_manager,
                            make_delivery)
from .command_runner import CommandRunner
from .errors import ActionFailed
from .logging_setup import get_logger
from .settings import Settings
from .step import RetryPolicy, Step, step
from .templates import render_manage_command, render_server_conf, render_start_script, write_text

log = get_logger("provision.recipe")


def _uid(user: str) -> Optional[int]:
    try:
        return pwd.getpwnam(user).pw_uid
    except KeyError:
        return None


class AloftRecipe:
    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        *,
        packages: Optional[PackageManager] = None,
        compat: Optional[WineCompatLayer] = None,
        delivery: Optional[FileDelivery] = None,
        services: Optional[SystemdServiceManager] = None,
        firewall: Optional[UfwFirewall] = None,
    ):
        self.settings = settings
        self.runner = runner
        self._packages = packages
        self._compat = compat
        self._delivery = delivery
        self._services = services
        self._firewall = firewall

    # ------------------------------------------------------------------ #
    # collaborators
    # ------------------------------------------------------------------ #
    @cached_property
    def packages(self) -> PackageManager:
        return self._packages or detect_package_manager(self.runner, self.settings.package_manager)

    @cached_property
    def compat(self) -> WineCompatLayer:
        return self._compat or WineCompatLayer(self.runner, self.settings.server_user)

    @cached_property
    def delivery(self) -> FileDelivery:
        return self._delivery or make_delivery(self.settings, self.runner)

    @cached_property
    def services(self) -> SystemdServiceManager:
        return self._services or SystemdServiceManager(self.runner, self.settings.systemd_dir)

    @cached_property
    def firewall(self) -> UfwFirewall:
        return self._firewall or UfwFirewall(self.runner)

    def service_spec(self) -> ServiceSpec:
        s = self.settings
        return ServiceSpec(
            name=s.service_name,
            description="Aloft Dedicated Server",
            user=s.server_user,
            working_directory=s.game_dir,
            exec_start=f"/bin/bash {s.start_script}",
            environment={"WINEPREFIX": str(s.wine_prefix), "WINEDEBUG": "-all"},
        )

    # ------------------------------------------------------------------ #
    # checks and actions
    # ------------------------------------------------------------------ #
    def base_packages_installed(self) -> bool:
        return not self.packages.missing(self.settings.base_packages)

    def install_base_packages(self) -> None:
        self.packages.update().raise_for_status("package index update")
        self.packages.install(self.settings.base_packages).raise_for_status("base package install")

    def compat_layer_installed(self) -> bool:
        return self.compat.is_installed() and not self.packages.missing(self.settings.compat_packages)

    def install_compat_layer(self) -> None:
        pm = self.packages
        # 64-bit Wine on Debian/Ubuntu still needs the i386 multiarch packages
        if isinstance(pm, AptPackageManager) and "i386" not in pm.foreign_architectures():
            pm.add_architecture("i386").raise_for_status("dpkg --add-architecture i386")
            pm.update().raise_for_status("package index update")
        pm.install(self.settings.compat_packages).raise_for_status("Wine install")

    def user_exists(self) -> bool:
        return self.runner.run(["id", "-u", self.settings.server_user]).ok

    def create_user(self) -> None:
        s = self.settings
        self.runner.run(
            ["useradd", "--system", "--create-home", "--home-dir", str(s.install_root),
             "--shell", "/bin/bash", s.server_user]
        ).raise_for_status(f"useradd {s.server_user}")

    def _directories(self) -> List[Path]:
        s = self.settings
        return [s.install_root, s.game_dir, s.logs_dir, s.wine_prefix]

    def directories_ready(self) -> bool:
        uid = _uid(self.settings.server_user)
        return all(p.is_dir() and (uid is None or p.stat().st_uid == uid) for p in self._directories())

    def create_directories(self) -> None:
        for p in self._directories():
            p.mkdir(parents=True, exist_ok=True)
        self.chown(self.settings.install_root)

    def chown(self, path: Path) -> None:
        user = self.settings.server_user
        self.runner.run(["chown", "-R", f"{user}:{user}", str(path)]).raise_for_status(f"chown {path}")

    def prefix_initialized(self) -> bool:
        return self.compat.prefix_initialized(self.settings.wine_prefix)

    def init_prefix(self) -> None:
        s = self.settings
        self.compat.initialize_prefix(s.wine_prefix, s.compat_arch).raise_for_status("wineboot")

    def runtime_components_installed(self) -> bool:
        wanted = set(self.settings.runtime_components)
        return wanted <= self.compat.installed_components(self.settings.wine_prefix)

    def install_runtime_components(self) -> None:
        s = self.settings
        self.compat.install_runtime_components(s.wine_prefix, s.runtime_components).raise_for_status("winetricks")

    def steamcmd_installed(self) -> bool:
        return self.settings.steamcmd_script.is_file()

    def install_steamcmd(self) -> None:
        delivery = self.delivery
        if not isinstance(delivery, SteamCmdDelivery):
            raise ActionFailed("SteamCMD is only installed for DELIVERY_METHOD=steamcmd")
        delivery.bootstrap(self.settings.steamcmd_url)
        self.chown(self.settings.steamcmd_script.parent)

    def game_present(self) -> bool:
        return self.delivery.is_present(self.settings.game_dir)

    def deliver_game(self) -> None:
        self.delivery.deliver(self.settings.game_dir)
        self.chown(self.settings.game_dir)

    def _start_script(self) -> str:
        s = self.settings
        return render_start_script(game_dir=s.game_dir, server_conf=s.server_conf, logs_dir=s.logs_dir,
                                   wine_prefix=s.wine_prefix, executable=s.game_executable)

    def server_config_written(self) -> bool:
        s = self.settings
        script = s.start_script
        return (s.server_conf.is_file() and script.is_file()
                and script.read_text(encoding="utf-8") == self._start_script()
                and os.access(script, os.X_OK))

    def write_server_config(self) -> None:
        s = self.settings
        if not s.server_conf.exists():
            write_text(s.server_conf, render_server_conf(s.world))
        else:
            log.info("Keeping existing %s", s.server_conf)
        write_text(s.start_script, self._start_script(), mode=0o755)
        self.runner.run(["chown", f"{s.server_user}:{s.server_user}", str(s.server_conf), str(s.start_script)]) \
            .raise_for_status("chown server config")

    def service_registered(self) -> bool:
        return self.services.is_registered(self.service_spec())

    def register_service(self) -> None:
        self.services.register_service(self.service_spec()).raise_for_status("service registration")

    def unregister_service(self) -> None:
        self.services.unregister_service(self.settings.service_name)

    def _manage_command(self) -> str:
        s = self.settings
        return render_manage_command(python=sys.executable, install_root=s.install_root,
                                     service_name=s.service_name, systemd_dir=s.systemd_dir)

    def manage_command_installed(self) -> bool:
        path = self.settings.manage_command_path
        return (path is not None and path.is_file()
                and path.read_text(encoding="utf-8") == self._manage_command()
                and os.access(path, os.X_OK))

    def install_manage_command(self) -> None:
        write_text(self.settings.manage_command_path, self._manage_command(), mode=0o755)

    def firewall_open(self) -> bool:
        if not self.firewall.is_available():
            return False
        return all(self.firewall.has_rule(r.proto, r.lo, r.hi) for r in self.settings.firewall_ranges)

    def open_firewall(self) -> None:
        if not self.firewall.is_available():
            raise ActionFailed("ufw is not installed; open the game ports manually or set FIREWALL_ENABLED=false")
        for r in self.settings.firewall_ranges:
            self.firewall.allow_port_range(r.proto, r.lo, r.hi).raise_for_status(f"ufw allow {r.spec()}")

    # ------------------------------------------------------------------ #
    def steps(self) -> List[Step]:
        s = self.settings
        network = RetryPolicy(max_attempts=s.retry_attempts, backoff=s.retry_backoff)
        timeout = s.step_timeout
        delivery_deps = ["create-directories"]
        if s.delivery_method == "steamcmd":
            delivery_deps.append("install-steamcmd")

        steps = [
            step("install-packages", check=self.base_packages_installed, apply=self.install_base_packages,
                 retry=network, timeout=timeout, description="install base system packages"),
            step("install-compat-layer", check=self.compat_layer_installed, apply=self.install_compat_layer,
                 depends_on=["install-packages"], retry=network, timeout=timeout,
                 description="install Wine and winetricks"),
            step("create-service-user", check=self.user_exists, apply=self.create_user, timeout=timeout,
                 description=f"create system user {s.server_user}"),
            step("create-directories", check=self.directories_ready, apply=self.create_directories,
                 depends_on=["create-service-user"], timeout=timeout,
                 description=f"create {s.install_root} layout owned by {s.server_user}"),
            step("init-prefix", check=self.prefix_initialized, apply=self.init_prefix,
                 depends_on=["install-compat-layer", "create-directories"], timeout=timeout,
                 description=f"initialise {s.compat_arch} Wine prefix"),
            step("install-runtime-components", check=self.runtime_components_installed,
                 apply=self.install_runtime_components, depends_on=["init-prefix"], retry=network,
                 timeout=timeout, description="winetricks " + " ".join(s.runtime_components)),
            step("deliver-game", check=self.game_present, apply=self.deliver_game,
                 depends_on=delivery_deps, retry=network, timeout=timeout,
                 description=f"deliver game files ({s.delivery_method})"),
            step("write-server-config", check=self.server_config_written, apply=self.write_server_config,
                 depends_on=["create-directories"], timeout=timeout,
                 description="write server.conf and start-server.sh"),
            step("register-service", check=self.service_registered, apply=self.register_service,
                 depends_on=["install-runtime-components", "deliver-game", "write-server-config"],
                 rollback=self.unregister_service, timeout=timeout,
                 description=f"register systemd unit {s.service_name}"),
        ]
        if s.delivery_method == "steamcmd":
            steps.insert(
                [x.id for x in steps].index("deliver-game"),
                step("install-steamcmd", check=self.steamcmd_installed, apply=self.install_steamcmd,
                     depends_on=["create-directories"], retry=network, timeout=timeout,
                     description=f"download SteamCMD into {s.steamcmd_script.parent}"),
            )
        if s.manage_command_path is not None:
            steps.append(
                step("install-manage-command", check=self.manage_command_installed,
                     apply=self.install_manage_command, depends_on=["register-service"], timeout=timeout,
                     description=f"install management command {s.manage_command_path}")
            )
        if s.firewall_enabled:
            steps.append(
                step("open-firewall", check=self.firewall_open, apply=self.open_firewall,
                     depends_on=["install-packages"], timeout=timeout,
                     description="allow " + ", ".join(r.spec() for r in s.firewall_ranges))
            )
        return steps


def build_steps(settings: Settings, runner: CommandRunner) -> List[Step]:
    return AloftRecipe(settings, runner).steps()
