from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Literal, Optional
from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunState(str, Enum):
    PLANNING = "planning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class StepRecord(BaseModel):
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StateFile(BaseModel):
    """On-disk layout of the state store (one file per installation root)."""
    version: int = 1
    steps: Dict[str, StepRecord] = Field(default_factory=dict)


class PortRange(BaseModel):
    proto: Literal["tcp", "udp"]
    lo: int = Field(ge=1, le=65535)
    hi: int = Field(ge=1, le=65535)

    @model_validator(mode="after")
    def _ordered(self) -> "PortRange":
        if self.hi < self.lo:
            raise ValueError(f"port range {self.lo}:{self.hi} is reversed")
        return self

    def spec(self) -> str:
        return f"{self.lo}:{self.hi}/{self.proto}" if self.lo != self.hi else f"{self.lo}/{self.proto}"


class WorldSettings(BaseModel):
    mode: Literal["create", "load"] = "create"
    map_name: str = "AloftWorld"
    islands: int = 500
    creative: bool = False
    server_name: str = "AloftDedicatedServer"
    visible: bool = True
    private_islands: bool = False
    players: int = 8
    port: int = 0  # 0: automatic
    admin: str = ""
