import pytest
from fastapi.testclient import TestClient

from server_provisioner.api import create_app
from server_provisioner.executor import Executor
from server_provisioner.state_store import StateStore


@pytest.fixture
def steps(system):
    def build(settings, runner):
        return [system.step("a"), system.step("b", ["a"])]
    return build


@pytest.fixture
def client(settings, steps):
    return TestClient(create_app(settings, steps_factory=steps))


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_plan_is_dry(client, settings, system):
    body = client.get("/plan").json()
    assert body["ok"] is True
    assert [a["action"] for a in body["actions"]] == ["apply", "apply"]
    assert system.apply_log == []
    assert not settings.state_file.exists()


def test_status_after_run(client, settings, steps):
    Executor(steps(settings, None), StateStore(settings.state_file)).run()
    body = client.get("/status").json()
    assert body["ok"] is True
    assert body["data"]["state"] == "completed"


def test_reset(client, settings, steps):
    Executor(steps(settings, None), StateStore(settings.state_file)).run()
    r = client.post("/reset/b")
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "pending"
    assert StateStore(settings.state_file).load()["b"].status.value == "pending"


def test_reset_unknown_step(client):
    assert client.post("/reset/ghost").status_code == 404


def test_reset_while_running(client, settings):
    with StateStore(settings.state_file).locked():
        assert client.post("/reset/a").status_code == 409


def test_plan_with_invalid_steps(settings, system):
    def cyclic(settings, runner):
        return [system.step("a", ["a"])]
    client = TestClient(create_app(settings, steps_factory=cyclic))
    assert client.get("/plan").status_code == 422
