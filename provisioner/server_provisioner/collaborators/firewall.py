from __future__ import annotations
from ..command_runner import CommandResult, CommandRunner


def _rule(proto: str, lo: int, hi: int) -> str:
    return f"{lo}:{hi}/{proto}" if lo != hi else f"{lo}/{proto}"


class UfwFirewall:
    """Firewall collaborator backed by ufw."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def is_available(self) -> bool:
        return bool(self.runner.which("ufw"))

    def allow_port_range(self, proto: str, lo: int, hi: int) -> CommandResult:
        return self.runner.run(["ufw", "allow", _rule(proto, lo, hi)])

    def has_rule(self, proto: str, lo: int, hi: int) -> bool:
        # `ufw status` lists nothing while ufw is inactive; `show added` lists the user rules either way
        res = self.runner.run(["ufw", "show", "added"])
        if not res.ok:
            return False
        wanted = ["ufw", "allow", _rule(proto, lo, hi)]
        return any(line.split() == wanted for line in res.stdout.splitlines())
