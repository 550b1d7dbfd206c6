from __future__ import annotations
import argparse
import json
import signal
import sys
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

import uvicorn

from .api import create_app
from .collaborators import SystemdServiceManager
from .command_runner import CommandRunner
from .errors import ConfigurationError, LockHeld, ProvisionError
from .executor import Executor
from .logging_setup import get_logger, setup_logging
from .recipes import build_steps
from .server_admin import config_lines, read_server_code, set_world_mode
from .settings import Settings
from .state_store import StateStore
from .step import Step

log = get_logger("provision.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_LOCKED = 3

StepsFactory = Callable[[Settings, CommandRunner], List[Step]]

SERVICE_ACTIONS = ("start", "stop", "restart", "status", "enable", "disable", "create-world")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="server-provision",
                                     description="Idempotent provisioning of an Aloft dedicated server")
    parser.add_argument("--install-root", help="Installation root (default: INSTALL_ROOT or /opt/aloft-server)")
    parser.add_argument("--log-level", help="Log level (default: LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    plan_p = sub.add_parser("plan", help="Show what a run would do, without changing anything")
    plan_p.add_argument("--json", action="store_true", help="Print the plan as JSON")
    plan_p.add_argument("--reverify", action="store_true", help="Re-check the effects of completed steps")

    run_p = sub.add_parser("run", help="Provision the server, resuming where the last run stopped")
    run_p.add_argument("--best-effort", action="store_true", default=None,
                       help="Keep running steps that do not depend on a failed one")
    run_p.add_argument("--workers", type=int, help="Run up to N independent steps concurrently")
    run_p.add_argument("--retry-failed", action="store_true", help="Re-arm steps that failed in earlier runs")
    run_p.add_argument("--reverify", action="store_true",
                       help="Re-plan completed steps whose effects no longer hold")

    status_p = sub.add_parser("status", help="Show recorded step states")
    status_p.add_argument("--json", action="store_true", help="Print status as JSON")

    reset_p = sub.add_parser("reset", help="Force one step back to pending")
    reset_p.add_argument("step_id")

    svc_p = sub.add_parser("service", help="Manage the installed server service")
    svc_p.add_argument("action", choices=SERVICE_ACTIONS)

    api_p = sub.add_parser("api", help="Run REST API (FastAPI)")
    api_p.add_argument("--host", default="127.0.0.1")
    api_p.add_argument("--port", type=int, default=8000)
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.install_root:
        overrides["install_root"] = args.install_root
    if args.log_level:
        overrides["log_level"] = args.log_level
    return Settings(**overrides)


@contextmanager
def _cancel_on_signals(executor: Executor) -> Iterator[None]:
    # flags only: the runner's poll loop terminates the child outside the handler
    def handler(signum, frame):
        executor.cancel(terminate=False)

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, h in previous.items():
            signal.signal(sig, h)


def _print_plan(plan: dict) -> None:
    for a in plan["actions"]:
        marker = "*" if a["will_change"] else " "
        print(f"{marker} {a['step_id']:<28} {a['action']:<14} {a['detail']}")
    for note in plan["notes"]:
        print(f"  {note}")


def _print_status(status: dict) -> None:
    print(f"state: {status['state']}{' (locked)' if status['locked'] else ''}")
    print(f"state file: {status['state_file']}")
    for s in status["steps"]:
        line = f"  {s['id']:<28} {s['status']:<10} attempts={s['attempts']}"
        if not s["declared"]:
            line += " (no longer declared)"
        if s["last_error"]:
            line += f"  last error: {s['last_error']}"
        print(line)


def _print_server_status(settings: Settings, services: SystemdServiceManager) -> bool:
    running = services.is_active(settings.service_name)
    if running:
        print("Server is running")
        print(f"Server logs are in {settings.logs_dir}")
        code = read_server_code(settings.logs_dir)
        print(f"Server code: {code}" if code else "Server code not found in logs yet")
    else:
        print("Server is not running")
    print("Current configuration:")
    for line in config_lines(settings.server_conf):
        print(f"  {line}")
    return running


def _service(settings: Settings, runner: CommandRunner, action: str) -> int:
    services = SystemdServiceManager(runner, settings.systemd_dir)
    if action == "status":
        return EXIT_OK if _print_server_status(settings, services) else EXIT_FAILED
    if action == "create-world":
        if set_world_mode(settings.server_conf, "create"):
            print("The server will create a new world on its next start.")
        else:
            print("server.conf is already set to create a new world.")
        print(f"Restart the server to create it: systemctl restart {settings.service_name}")
        return EXIT_OK
    res = getattr(services, action)(settings.service_name)
    if res.output:
        print(res.output)
    return EXIT_OK if res.ok else EXIT_FAILED


def _executor(settings: Settings, runner: CommandRunner, steps_factory: StepsFactory, **kwargs) -> Executor:
    return Executor(steps_factory(settings, runner), StateStore(settings.state_file), runner=runner, **kwargs)


def main(argv: Optional[List[str]] = None, *, steps_factory: StepsFactory = build_steps) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG
    setup_logging(settings)
    runner = CommandRunner()

    try:
        if args.cmd == "plan":
            plan = _executor(settings, runner, steps_factory).plan(reverify=args.reverify).to_dict()
            if args.json:
                print(json.dumps(plan, indent=2, ensure_ascii=False))
            else:
                _print_plan(plan)
            return EXIT_OK if plan["ok"] else EXIT_FAILED

        if args.cmd == "run":
            best_effort = settings.best_effort if args.best_effort is None else args.best_effort
            workers = args.workers if args.workers is not None else settings.max_workers
            executor = _executor(settings, runner, steps_factory, best_effort=best_effort, max_workers=workers)
            with _cancel_on_signals(executor):
                result = executor.run(retry_failed=args.retry_failed, reverify=args.reverify)
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
            return EXIT_OK if result.ok else EXIT_FAILED

        if args.cmd == "status":
            status = _executor(settings, runner, steps_factory).status()
            if args.json:
                print(json.dumps(status, indent=2, ensure_ascii=False))
            else:
                _print_status(status)
            return EXIT_OK

        if args.cmd == "reset":
            rec = _executor(settings, runner, steps_factory).reset(args.step_id)
            print(f"{args.step_id}: {rec.status.value}")
            return EXIT_OK

        if args.cmd == "service":
            return _service(settings, runner, args.action)

        if args.cmd == "api":
            app = create_app(settings, steps_factory=steps_factory)
            uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
            return EXIT_OK
    except ConfigurationError as e:
        log.error("%s", e)
        return EXIT_CONFIG
    except LockHeld as e:
        log.error("%s", e)
        return EXIT_LOCKED
    except ProvisionError as e:
        log.error("%s", e)
        return EXIT_FAILED

    return EXIT_CONFIG
