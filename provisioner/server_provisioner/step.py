from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Tuple

Predicate = Callable[[], bool]
Action = Callable[[], None]


@dataclass(frozen=True)
class RetryPolicy:
    """How often a step's apply is attempted and how long to wait in between."""
    max_attempts: int = 1
    backoff: float = 0.0
    multiplier: float = 2.0
    max_backoff: float = 600.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")

    def delay(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        return min(self.backoff * (self.multiplier ** (attempt - 1)), self.max_backoff)


@dataclass(frozen=True)
class Step:
    """
    A single idempotent unit of provisioning work.

    check:    read-only test, True when the goal state already holds
    apply:    performs the mutation, raises ActionFailed on failure
    verify:   post-apply test, defaults to check
    rollback: optional compensating action after retries are exhausted
    timeout:  deadline in seconds shared by all commands started by apply
    """
    id: str
    check: Predicate
    apply: Action
    depends_on: Tuple[str, ...] = ()
    verify: Optional[Predicate] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    rollback: Optional[Action] = None
    timeout: Optional[float] = None
    description: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("step id must not be empty")
        # accept any sequence for depends_on, store a tuple
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    def run_verify(self) -> bool:
        test = self.verify if self.verify is not None else self.check
        return bool(test())


def step(
    id: str,
    *,
    check: Predicate,
    apply: Action,
    depends_on: Sequence[str] = (),
    verify: Optional[Predicate] = None,
    retry: Optional[RetryPolicy] = None,
    rollback: Optional[Action] = None,
    timeout: Optional[float] = None,
    description: str = "",
) -> Step:
    """Convenience constructor: step("x", check=..., apply=..., depends_on=["y"])."""
    return Step(
        id=id,
        check=check,
        apply=apply,
        depends_on=tuple(depends_on),
        verify=verify,
        retry_policy=retry or RetryPolicy(),
        rollback=rollback,
        timeout=timeout,
        description=description,
    )
