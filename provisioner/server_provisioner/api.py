from __future__ import annotations
from typing import Callable, List
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from .command_runner import CommandRunner
from .errors import ConfigurationError, LockHeld, UnknownStep
from .executor import Executor
from .logging_setup import get_logger
from .recipes import build_steps
from .settings import Settings
from .state_store import StateStore
from .step import Step

log = get_logger("provision.api")


class ActionResult(BaseModel):
    ok: bool
    detail: str | None = None
    data: dict | None = None


def create_app(
    settings: Settings,
    steps_factory: Callable[[Settings, CommandRunner], List[Step]] = build_steps,
) -> FastAPI:
    """Read-mostly API over one installation root. Runs are started from the CLI only."""
    app = FastAPI(title="Server Provisioner API", version="0.1.0")
    runner = CommandRunner()

    def executor() -> Executor:
        return Executor(steps_factory(settings, runner), StateStore(settings.state_file), runner=runner)

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/status", response_model=ActionResult)
    def status():
        return ActionResult(ok=True, data=executor().status())

    @app.get("/plan")
    def plan():
        # only checks run; nothing is mutated
        try:
            return executor().plan().to_dict()
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.post("/reset/{step_id}", response_model=ActionResult)
    def reset(step_id: str):
        try:
            rec = executor().reset(step_id)
        except UnknownStep as e:
            raise HTTPException(status_code=404, detail=str(e))
        except LockHeld as e:
            raise HTTPException(status_code=409, detail=str(e))
        log.info("Reset %s via API", step_id)
        return ActionResult(ok=True, detail="reset", data={"step_id": step_id, **rec.model_dump(mode="json")})

    return app
