import json
import os

import pytest

from server_provisioner.errors import InvalidTransition, LockHeld, ProvisionError
from server_provisioner.models import StepStatus
from server_provisioner.state_store import StateStore

S = StepStatus


class TestLock:
    def test_second_store_cannot_acquire(self, store):
        other = StateStore(store.path)
        with store.locked():
            with pytest.raises(LockHeld):
                other.acquire()
        other.acquire()
        other.release()

    def test_lock_file_names_holder(self, store):
        import os
        with store.locked():
            assert store.lock_path.read_text().strip() == str(os.getpid())

    def test_mutation_requires_lock(self, store):
        with pytest.raises(ProvisionError):
            store.transition("a", S.RUNNING)
        with pytest.raises(ProvisionError):
            store.reset("a")


class TestTransitions:
    def test_unknown_step_is_pending(self, store):
        assert store.get("nope").status == S.PENDING
        assert store.get("nope").attempts == 0

    def test_running_counts_attempts(self, store):
        with store.locked():
            store.transition("a", S.RUNNING)
            store.transition("a", S.FAILED, "boom", max_attempts=3)
            _, new = store.transition("a", S.RUNNING, max_attempts=3)
        assert new.attempts == 2
        assert new.status == S.RUNNING

    def test_failed_keeps_error_completed_clears_it(self, store):
        with store.locked():
            store.transition("a", S.RUNNING)
            store.transition("a", S.FAILED, "boom")
            assert store.get("a").last_error == "boom"
            store.transition("a", S.COMPLETED)
        assert store.get("a").last_error is None

    def test_retry_budget_enforced(self, store):
        with store.locked():
            store.transition("a", S.RUNNING)
            store.transition("a", S.FAILED, "boom")
            with pytest.raises(InvalidTransition):
                store.transition("a", S.RUNNING, max_attempts=1)

    @pytest.mark.parametrize("path", [
        [S.RUNNING, S.PENDING],
        [S.COMPLETED, S.RUNNING],
        [S.FAILED],
    ])
    def test_disallowed_edges(self, store, path):
        with store.locked():
            with pytest.raises(InvalidTransition):
                for status in path:
                    store.transition("a", status, max_attempts=5)

    def test_pending_may_complete_directly(self, store):
        with store.locked():
            old, new = store.transition("a", S.COMPLETED)
        assert old.status == S.PENDING
        assert new.status == S.COMPLETED
        assert new.attempts == 0

    def test_reset_clears_budget(self, store):
        with store.locked():
            store.transition("a", S.RUNNING)
            store.transition("a", S.FAILED, "boom")
            old, new = store.reset("a")
        assert old.status == S.FAILED
        assert new.status == S.PENDING and new.attempts == 0 and new.last_error is None


class TestPersistence:
    def test_every_transition_is_on_disk(self, store):
        with store.locked():
            store.transition("a", S.RUNNING)
            data = json.loads(store.path.read_text())
        assert data["version"] == 1
        assert data["steps"]["a"]["status"] == "running"
        assert data["steps"]["a"]["attempts"] == 1

    def test_reload_in_new_store(self, store):
        with store.locked():
            store.transition("a", S.COMPLETED)
        fresh = StateStore(store.path)
        records = fresh.load()
        assert records["a"].status == S.COMPLETED

    def test_no_temp_file_left_behind(self, store):
        with store.locked():
            store.transition("a", S.COMPLETED)
        assert [p.name for p in store.path.parent.iterdir() if p.suffix == ".tmp"] == []

    def test_failed_write_leaves_memory_unchanged(self, store, monkeypatch):
        with store.locked():
            store.transition("a", S.RUNNING)

            def disk_full(fd):
                raise OSError(28, "No space left on device")
            monkeypatch.setattr(os, "fsync", disk_full)
            with pytest.raises(OSError):
                store.transition("a", S.COMPLETED)
            with pytest.raises(OSError):
                store.reset("a")
            assert store.get("a").status == S.RUNNING
            assert store.get("a").attempts == 1
            monkeypatch.undo()
        assert StateStore(store.path).load()["a"].status == S.RUNNING

    def test_missing_file_loads_empty(self, store):
        assert store.load() == {}
        assert not store.exists()

    def test_corrupt_file_raises(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        with pytest.raises(ProvisionError):
            store.load()
