"""
templates.py — text artefacts written into the installation root
----------------------------------------------------------------
server.conf is sourced by start-server.sh; the start script switches
MODE from "create" to "load" after the world has been generated, so the
config is only ever written when it does not exist yet.
"""

from __future__ import annotations
from pathlib import Path
from .models import WorldSettings
from .logging_setup import get_logger

log = get_logger("provision.templates")


def _flag(value: bool) -> str:
    return "true" if value else "false"


def render_server_conf(world: WorldSettings) -> str:
    lines = [
        "# Aloft dedicated server configuration",
        '# MODE "create" generates the world on first start, then switches to "load"',
        f'MODE="{world.mode}"',
        "",
        "# World",
        f'MAP_NAME="{world.map_name}"',
        f'ISLANDS="{world.islands}"',
        f'CREATIVE="{_flag(world.creative)}"',
        "",
        "# Server",
        f'SERVER_NAME="{world.server_name}"',
        f'VISIBLE="{_flag(world.visible)}"',
        f'PRIVATE="{_flag(world.private_islands)}"',
        f'PLAYERS="{world.players}"',
        f'PORT="{world.port}"',
        f'ADMIN="{world.admin}"',
    ]
    return "\n".join(lines) + "\n"


def render_start_script(*, game_dir: Path, server_conf: Path, logs_dir: Path, wine_prefix: Path,
                        executable: str = "Aloft.exe") -> str:
    return f"""#!/bin/bash
cd "{game_dir}" || exit 1

source "{server_conf}"

export WINEPREFIX="{wine_prefix}"
export WINEDEBUG=-all

if [ "$MODE" = "create" ]; then
    log_file="{logs_dir}/create-$(date +%Y%m%d-%H%M%S).log"
    echo "Creating new world $MAP_NAME with $ISLANDS islands (creative=$CREATIVE)"
    wine {executable} -batchmode -nographics -server "create#$MAP_NAME#$ISLANDS#$CREATIVE#" log#ERROR# disablevideo#true# > "$log_file" 2>&1
    sed -i 's/^MODE="create"/MODE="load"/' "{server_conf}"
    echo "World created. Restarting to load it..."
    exec "$0"
fi

log_file="{logs_dir}/server-$(date +%Y%m%d-%H%M%S).log"
echo "Loading world $MAP_NAME as $SERVER_NAME, logging to $log_file"
exec wine {executable} -batchmode -nographics -server "load#$MAP_NAME#" "servername#$SERVER_NAME#" log#ERROR# \\
    "isvisible#$VISIBLE#" "privateislands#$PRIVATE#" "playercount#$PLAYERS#" "serverport#$PORT#" \\
    "admin#$ADMIN#" disablevideo#true# > "$log_file" 2>&1
"""


def render_systemd_unit(spec) -> str:
    """`spec` is a collaborators.service.ServiceSpec."""
    env = "".join(f'Environment="{k}={v}"\n' for k, v in sorted(spec.environment.items()))
    return (
        "[Unit]\n"
        f"Description={spec.description}\n"
        "After=network.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"User={spec.user}\n"
        f"WorkingDirectory={spec.working_directory}\n"
        f"{env}"
        f"ExecStart={spec.exec_start}\n"
        f"Restart={spec.restart}\n"
        f"RestartSec={spec.restart_sec}\n"
        "KillMode=process\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def render_manage_command(*, python: str, install_root: Path, service_name: str, systemd_dir: Path) -> str:
    """Wrapper installed on PATH that forwards to `server-provision service`."""
    return f"""#!/bin/sh
# Aloft server management: start|stop|restart|status|enable|disable|create-world
export SERVICE_NAME="{service_name}"
export SYSTEMD_DIR="{systemd_dir}"
exec "{python}" -m server_provisioner --install-root "{install_root}" service "$@"
"""


def write_text(path: Path, content: str, mode: int = 0o644) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(mode)
    log.info("Wrote %s", path)
