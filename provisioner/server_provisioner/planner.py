from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional


@dataclass
class PlanAction:
    step_id: str
    action: str          # skip|reapply|mark-complete|apply|error
    detail: str
    status: str
    depends_on: List[str] = field(default_factory=list)
    will_change: bool = False
    severity: str = "info"  # info|warn|error

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Plan:
    ok: bool
    actions: List[PlanAction]
    notes: List[str]

    @property
    def changes(self) -> List[PlanAction]:
        return [a for a in self.actions if a.will_change]

    def action_for(self, step_id: str) -> Optional[PlanAction]:
        return next((a for a in self.actions if a.step_id == step_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "actions": [a.to_dict() for a in self.actions],
            "notes": list(self.notes),
        }
