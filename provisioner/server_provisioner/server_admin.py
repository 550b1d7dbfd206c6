"""
server_admin.py — day-to-day operations on an installed server
--------------------------------------------------------------
What the `aloft-server` management command does besides plain systemctl
verbs: switching server.conf back to world creation, reading the join code
the game prints into its newest server log, and listing the effective
configuration.
"""

from __future__ import annotations
import re
from pathlib import Path
from typing import List, Optional
from .errors import ProvisionError
from .logging_setup import get_logger

log = get_logger("provision.admin")

SERVER_CODE_RE = re.compile(r"Server code: ([0-9]+)")
_MODE_RE = re.compile(r'^MODE="[^"]*"', re.MULTILINE)


def set_world_mode(server_conf: Path, mode: str) -> bool:
    """
    Rewrite the MODE line of server.conf. Returns False when the file
    already had that mode. The file is edited in place so its owner and
    the operator's other settings are kept.
    """
    server_conf = Path(server_conf)
    if not server_conf.is_file():
        raise ProvisionError(f"{server_conf} does not exist; run the provisioner first")
    text = server_conf.read_text(encoding="utf-8")
    updated, count = _MODE_RE.subn(f'MODE="{mode}"', text)
    if count == 0:
        raise ProvisionError(f"No MODE line in {server_conf}")
    if updated == text:
        return False
    server_conf.write_text(updated, encoding="utf-8")
    log.info("Set MODE=%s in %s", mode, server_conf)
    return True


def latest_server_log(logs_dir: Path) -> Optional[Path]:
    """Newest `server-*` log by modification time."""
    logs_dir = Path(logs_dir)
    if not logs_dir.is_dir():
        return None
    logs = [p for p in logs_dir.glob("server-*") if p.is_file()]
    if not logs:
        return None
    return max(logs, key=lambda p: p.stat().st_mtime)


def read_server_code(logs_dir: Path) -> Optional[str]:
    """Last join code printed into the newest server log, if any."""
    log_file = latest_server_log(logs_dir)
    if log_file is None:
        return None
    code = None
    with open(log_file, "r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            m = SERVER_CODE_RE.search(line)
            if m:
                code = m.group(1)
    return code


def config_lines(server_conf: Path) -> List[str]:
    """server.conf without comment lines."""
    server_conf = Path(server_conf)
    if not server_conf.is_file():
        return []
    return [line for line in server_conf.read_text(encoding="utf-8").splitlines() if not line.startswith("#")]
