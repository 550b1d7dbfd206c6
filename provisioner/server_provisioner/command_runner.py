from __future__ import annotations
import os
import shutil
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set
from .errors import ActionFailed, CommandTimeout, RunCancelled
from .logging_setup import get_logger

log = get_logger("provision.proc")

_POLL_SECONDS = 0.2
_TERM_GRACE_SECONDS = 5.0


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(p for p in (self.stdout, self.stderr) if p)

    def raise_for_status(self, action: str) -> "CommandResult":
        if self.ok:
            return self
        tail = (self.stderr or self.stdout).strip()[-500:]
        msg = f"{action} failed (rc={self.returncode})"
        if tail:
            msg += f": {tail}"
        raise ActionFailed(msg, returncode=self.returncode, output=self.output[-4000:])


def _mask(cmd: Sequence[str], secrets: Sequence[str]) -> List[str]:
    hidden = {s for s in secrets if s}
    return ["<REDACTED>" if t in hidden else t for t in cmd]


def _kill_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


@dataclass
class _Deadline:
    at: Optional[float] = None


class CommandRunner:
    """
    Runs external programs on behalf of steps.

    Never raises for a non-zero exit; callers inspect CommandResult. Raises
    CommandTimeout when the call (or the enclosing step deadline) runs out and
    RunCancelled after cancel(). Processes run in their own session so the
    whole tree (wineserver, winetricks children, ...) is terminated together.
    """

    def __init__(self, *, default_timeout: Optional[float] = None, env: Optional[Dict[str, str]] = None):
        self.default_timeout = default_timeout
        self.env = dict(env or {})
        self._procs: Set[subprocess.Popen] = set()
        self._procs_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._local = threading.local()

    # ------------------------------------------------------------------ #
    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self, *, terminate: bool = True) -> None:
        """
        Flag the runner cancelled. Running commands notice the flag on their
        next poll; terminate=True also signals them right away.
        """
        self._cancelled.set()
        if terminate:
            self.terminate_all()

    def clear_cancel(self) -> None:
        self._cancelled.clear()

    @contextmanager
    def deadline(self, seconds: Optional[float]) -> Iterator[None]:
        """Bound every command started by this thread inside the block."""
        state = getattr(self._local, "deadline", None)
        if state is None:
            state = self._local.deadline = _Deadline()
        previous = state.at
        if seconds is not None:
            at = time.monotonic() + seconds
            state.at = at if previous is None else min(previous, at)
        try:
            yield
        finally:
            state.at = previous

    def _remaining(self) -> Optional[float]:
        state = getattr(self._local, "deadline", None)
        if state is None or state.at is None:
            return None
        return state.at - time.monotonic()

    # ------------------------------------------------------------------ #
    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        redact: Sequence[str] = (),
    ) -> CommandResult:
        args = [str(c) for c in cmd]
        shown = " ".join(_mask(args, redact))
        if self.cancelled:
            raise RunCancelled(f"not starting '{shown}': run cancelled")

        limit = timeout if timeout is not None else self.default_timeout
        remaining = self._remaining()
        if remaining is not None:
            if remaining <= 0:
                raise CommandTimeout(f"step deadline exceeded before '{shown}'")
            limit = remaining if limit is None else min(limit, remaining)

        full_env = os.environ.copy()
        full_env.update(self.env)
        full_env.update(env or {})

        log.info("Running: %s", shown)
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError:
            log.error("Executable not found: %s", args[0])
            return CommandResult(args=args, returncode=127, stderr=f"{args[0]}: command not found")
        except PermissionError as e:
            log.error("Cannot execute %s: %s", args[0], e)
            return CommandResult(args=args, returncode=126, stderr=str(e))

        with self._procs_lock:
            self._procs.add(proc)
        try:
            stdout, stderr = self._communicate(proc, input, started, limit, shown)
        finally:
            with self._procs_lock:
                self._procs.discard(proc)

        result = CommandResult(
            args=args,
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=time.monotonic() - started,
        )
        if result.stdout:
            log.debug("stdout: %s", result.stdout[-4000:])
        if result.stderr:
            log.debug("stderr: %s", result.stderr[-4000:])
        if not result.ok:
            log.warning("Command exited with rc=%s: %s", result.returncode, shown)
        return result

    def _communicate(self, proc, input, started, limit, shown):
        pending = input
        while True:
            try:
                out = proc.communicate(input=pending, timeout=_POLL_SECONDS)
            except subprocess.TimeoutExpired:
                pending = None
            else:
                # terminated by cancel() from another thread
                if self.cancelled and proc.returncode != 0:
                    raise RunCancelled(f"'{shown}' cancelled")
                return out
            if self.cancelled:
                log.warning("Cancelling: %s (pid=%s)", shown, proc.pid)
                self._terminate(proc)
                proc.communicate()
                raise RunCancelled(f"'{shown}' cancelled")
            if limit is not None and time.monotonic() - started >= limit:
                log.warning("Timed out after %.1fs, killing: %s (pid=%s)", limit, shown, proc.pid)
                _kill_group(proc, signal.SIGKILL)
                proc.communicate()
                raise CommandTimeout(f"'{shown}' timed out after {limit:.1f}s")

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        _kill_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=_TERM_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            log.warning("Killing pid=%s", proc.pid)
            _kill_group(proc, signal.SIGKILL)

    def terminate_all(self) -> None:
        with self._procs_lock:
            procs = list(self._procs)
        for proc in procs:
            self._terminate(proc)
