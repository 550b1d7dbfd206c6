"""CommandRunner against real processes (sh, true, false, sleep)."""

import logging
import threading
import time

import pytest

from server_provisioner.command_runner import CommandResult, CommandRunner
from server_provisioner.errors import ActionFailed, CommandTimeout, RunCancelled


@pytest.fixture
def real_runner():
    return CommandRunner()


class TestRun:
    def test_captures_output_and_rc(self, real_runner):
        res = real_runner.run(["sh", "-c", "echo out; echo err >&2; exit 3"])
        assert res.returncode == 3
        assert res.stdout.strip() == "out"
        assert res.stderr.strip() == "err"
        assert not res.ok

    def test_success(self, real_runner):
        assert real_runner.run(["true"]).ok

    def test_missing_executable_is_127(self, real_runner):
        res = real_runner.run(["definitely-not-a-real-binary-xyz"])
        assert res.returncode == 127

    def test_env_and_cwd(self, real_runner, tmp_path):
        res = real_runner.run(["sh", "-c", 'echo "$GREETING"; pwd'], env={"GREETING": "hello"}, cwd=tmp_path)
        lines = res.stdout.splitlines()
        assert lines[0] == "hello"
        assert lines[1] == str(tmp_path.resolve())

    def test_input(self, real_runner):
        assert real_runner.run(["cat"], input="piped").stdout == "piped"

    def test_secrets_are_masked_in_logs(self, real_runner, caplog):
        with caplog.at_level(logging.INFO, logger="provision.proc"):
            real_runner.run(["echo", "user", "hunter2"], redact=["hunter2"])
        assert "hunter2" not in caplog.text
        assert "<REDACTED>" in caplog.text


class TestTimeouts:
    def test_timeout_kills(self, real_runner):
        started = time.monotonic()
        with pytest.raises(CommandTimeout):
            real_runner.run(["sleep", "10"], timeout=0.5)
        assert time.monotonic() - started < 5

    def test_timeout_is_an_action_failure(self):
        assert issubclass(CommandTimeout, ActionFailed)

    def test_step_deadline_applies_to_every_command(self, real_runner):
        with real_runner.deadline(0.6):
            real_runner.run(["true"])
            with pytest.raises(CommandTimeout):
                real_runner.run(["sleep", "10"])

    def test_expired_deadline_refuses_to_start(self, real_runner):
        with real_runner.deadline(0):
            with pytest.raises(CommandTimeout):
                real_runner.run(["true"])

    def test_deadline_restored_after_block(self, real_runner):
        with real_runner.deadline(0):
            pass
        assert real_runner.run(["true"]).ok


class TestCancel:
    def test_cancel_terminates_in_flight(self, real_runner):
        timer = threading.Timer(0.5, real_runner.cancel)
        timer.start()
        started = time.monotonic()
        with pytest.raises(RunCancelled):
            real_runner.run(["sleep", "30"])
        assert time.monotonic() - started < 10
        timer.join()

    def test_flag_only_cancel_is_picked_up_by_poll_loop(self, real_runner):
        # what the signal handler does: no lock taken, the running call kills its own child
        timer = threading.Timer(0.5, lambda: real_runner.cancel(terminate=False))
        timer.start()
        started = time.monotonic()
        with pytest.raises(RunCancelled):
            real_runner.run(["sleep", "30"])
        assert time.monotonic() - started < 10
        timer.join()

    def test_no_new_commands_after_cancel(self, real_runner):
        real_runner.cancel()
        with pytest.raises(RunCancelled):
            real_runner.run(["true"])
        real_runner.clear_cancel()
        assert real_runner.run(["true"]).ok


class TestCommandResult:
    def test_raise_for_status(self):
        ok = CommandResult(args=["x"], returncode=0)
        assert ok.raise_for_status("x") is ok
        bad = CommandResult(args=["x"], returncode=2, stderr="disk full")
        with pytest.raises(ActionFailed) as e:
            bad.raise_for_status("copy")
        assert "copy failed (rc=2): disk full" in str(e.value)
        assert e.value.returncode == 2
