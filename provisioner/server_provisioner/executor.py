"""
executor.py — runs provisioning steps against the state store
-------------------------------------------------------------
Planning -> Running -> {Succeeded, Failed, Aborted}. Steps run in
dependency order, are skipped when their check already holds, retried with
capped exponential backoff, rolled back best-effort when retries run out,
and every transition is recorded in the state store before it is reported.
"""

from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from .command_runner import CommandRunner
from .errors import ActionFailed, LockHeld, RunCancelled, UnknownStep
from .events import Event, EventSink, RunEvent, StepEvent, log_event
from .graph import DependencyGraph
from .logging_setup import get_logger
from .models import RunState, StepRecord, StepStatus
from .planner import Plan, PlanAction
from .state_store import StateStore
from .step import Step

log = get_logger("provision.executor")

# per-step outcomes of one run
APPLIED = "applied"
SATISFIED = "satisfied"
FAILED = "failed"
BLOCKED = "blocked"
SKIPPED = "skipped"
INTERRUPTED = "interrupted"


@dataclass
class RunResult:
    state: RunState
    outcomes: Dict[str, str] = field(default_factory=dict)

    def _with(self, outcome: str) -> List[str]:
        return [k for k, v in self.outcomes.items() if v == outcome]

    @property
    def ok(self) -> bool:
        return self.state == RunState.SUCCEEDED

    @property
    def applied(self) -> List[str]:
        return self._with(APPLIED)

    @property
    def failed(self) -> List[str]:
        return self._with(FAILED)

    @property
    def blocked(self) -> List[str]:
        return self._with(BLOCKED)

    @property
    def skipped(self) -> List[str]:
        return self._with(SKIPPED)

    def to_dict(self) -> dict:
        return {"state": self.state.value, "outcomes": dict(self.outcomes)}


class Executor:
    def __init__(
        self,
        steps: Iterable[Step],
        store: StateStore,
        *,
        runner: Optional[CommandRunner] = None,
        best_effort: bool = False,
        max_workers: int = 1,
        on_event: Union[EventSink, Iterable[EventSink], None] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.steps = list(steps)
        self.store = store
        self.runner = runner
        self.best_effort = best_effort
        self.max_workers = max_workers
        if on_event is None:
            extra: List[EventSink] = []
        elif callable(on_event):
            extra = [on_event]
        else:
            extra = list(on_event)
        self._sinks: List[EventSink] = [log_event] + extra
        self._sleep = sleep
        self._cancel = threading.Event()
        self.state: Optional[RunState] = None

    # ------------------------------------------------------------------ #
    # events / cancellation
    # ------------------------------------------------------------------ #
    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self, *, terminate: bool = True) -> None:
        """
        Stop scheduling steps and end in-flight commands. With terminate=False
        only the flags are set and the runner's poll loop kills its own
        children; that form is safe inside a signal handler.
        """
        if self._cancel.is_set():
            return
        self._cancel.set()
        if self.runner is not None:
            self.runner.cancel(terminate=terminate)
        if terminate:
            log.warning("Cancellation requested")

    def _emit(self, event: Event) -> None:
        for sink in self._sinks:
            try:
                sink(event)
            except Exception:
                log.exception("Event sink %r failed", sink)

    def _set_state(self, new: RunState, detail: Optional[str] = None) -> None:
        old, self.state = self.state, new
        self._emit(RunEvent(old_state=old, new_state=new, detail=detail))

    def _transition(self, step: Step, status: StepStatus, detail: Optional[str] = None) -> StepRecord:
        old, new = self.store.transition(step.id, status, detail, max_attempts=step.retry_policy.max_attempts)
        self._emit(StepEvent(step_id=step.id, old_status=old.status, new_status=new.status,
                             attempts=new.attempts, error=new.last_error if status == StepStatus.FAILED else None))
        return new

    def _reset(self, step_id: str) -> None:
        old, new = self.store.reset(step_id)
        self._emit(StepEvent(step_id=step_id, old_status=old.status, new_status=new.status, attempts=0))

    # ------------------------------------------------------------------ #
    # run
    # ------------------------------------------------------------------ #
    def run(self, *, retry_failed: bool = False, reverify: bool = False) -> RunResult:
        self.store.acquire()
        try:
            if self.runner is not None and not self.cancelled:
                self.runner.clear_cancel()
            self._set_state(RunState.PLANNING)
            try:
                graph = DependencyGraph.build(self.steps)
            except Exception as e:
                self._set_state(RunState.FAILED, str(e))
                raise
            self.store.load()
            if retry_failed:
                self._rearm_failed(graph)
            if reverify:
                self._reverify_completed(graph)

            plan = [sid for sid in graph.order() if self.store.get(sid).status != StepStatus.COMPLETED]
            log.info("Execution plan: %d of %d steps pending: %s", len(plan), len(graph), plan)

            result = RunResult(state=RunState.RUNNING)
            self._set_state(RunState.RUNNING)
            if self.max_workers > 1:
                self._run_parallel(graph, plan, result)
            else:
                self._run_sequential(graph, plan, result)

            snapshot = self.store.snapshot()
            if self.cancelled:
                final = RunState.ABORTED
            elif all(snapshot.get(sid, StepRecord()).status == StepStatus.COMPLETED for sid in graph.order()):
                final = RunState.SUCCEEDED
            else:
                final = RunState.FAILED
            result.state = final
            self._set_state(final, _summary(result))
            return result
        finally:
            self.store.release()

    def _rearm_failed(self, graph: DependencyGraph) -> None:
        for sid in graph.order():
            rec = self.store.get(sid)
            if rec.status == StepStatus.FAILED and rec.attempts >= graph.step(sid).retry_policy.max_attempts:
                log.info("Re-arming failed step %s (last error: %s)", sid, rec.last_error)
                self._reset(sid)

    def _reverify_completed(self, graph: DependencyGraph) -> None:
        for sid in graph.order():
            if self.store.get(sid).status != StepStatus.COMPLETED:
                continue
            try:
                intact = graph.step(sid).run_verify()
            except Exception as e:
                log.warning("Verify of %s raised %s; re-planning it", sid, e)
                intact = False
            if not intact:
                log.warning("Effects of completed step %s no longer hold; re-planning it", sid)
                self._reset(sid)

    def _run_sequential(self, graph: DependencyGraph, plan: List[str], result: RunResult) -> None:
        blocked: Set[str] = set()
        stop = False
        for sid in plan:
            if sid in blocked:
                result.outcomes[sid] = BLOCKED
                continue
            if self.cancelled or stop:
                result.outcomes[sid] = SKIPPED
                continue
            if not self._deps_completed(graph, sid):
                result.outcomes[sid] = BLOCKED
                continue
            outcome = self._execute(graph.step(sid))
            result.outcomes[sid] = outcome
            if outcome == FAILED:
                blocked |= graph.dependents_of(sid)
                stop = not self.best_effort

    def _run_parallel(self, graph: DependencyGraph, plan: List[str], result: RunResult) -> None:
        remaining = list(plan)
        blocked: Set[str] = set()
        stop = False
        in_flight: Dict = {}
        log.info("Parallel mode: up to %d concurrent steps", self.max_workers)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="step") as pool:
            while True:
                if not (stop or self.cancelled):
                    ready = [sid for sid in remaining if sid not in blocked and self._deps_completed(graph, sid)]
                    for sid in ready:
                        if len(in_flight) >= self.max_workers:
                            break
                        remaining.remove(sid)
                        in_flight[pool.submit(self._execute, graph.step(sid))] = sid
                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    sid = in_flight.pop(fut)
                    outcome = fut.result()
                    result.outcomes[sid] = outcome
                    if outcome == FAILED:
                        blocked |= graph.dependents_of(sid)
                        stop = stop or not self.best_effort

        for sid in remaining:
            result.outcomes[sid] = BLOCKED if sid in blocked else SKIPPED

    def _deps_completed(self, graph: DependencyGraph, sid: str) -> bool:
        return all(self.store.get(d).status == StepStatus.COMPLETED for d in graph.dependencies_of(sid))

    # ------------------------------------------------------------------ #
    # single step
    # ------------------------------------------------------------------ #
    def _execute(self, step: Step) -> str:
        policy = step.retry_policy
        rec = self.store.get(step.id)
        try:
            satisfied = bool(step.check())
        except RunCancelled:
            self._cancel.set()
            return INTERRUPTED
        except Exception as e:
            log.warning("Check of %s raised %s; treating as not satisfied", step.id, e)
            satisfied = False
        if satisfied:
            # also clears a failure from an earlier run once the host was fixed by hand
            self._transition(step, StepStatus.COMPLETED)
            log.info("%s: already satisfied, nothing to apply", step.id)
            return SATISFIED

        if rec.status == StepStatus.FAILED and rec.attempts >= policy.max_attempts:
            log.error("Step %s failed permanently in an earlier run (%s); reset it to retry.",
                      step.id, rec.last_error)
            return FAILED

        if rec.status == StepStatus.RUNNING:
            log.info("%s: resuming interrupted attempt %d", step.id, rec.attempts)
        else:
            rec = self._transition(step, StepStatus.RUNNING)

        while True:
            log.info("%s: applying (attempt %d/%d)", step.id, rec.attempts, policy.max_attempts)
            error = self._attempt(step)
            if self.cancelled:
                # in-flight step stays RUNNING so the next run retries it
                return INTERRUPTED
            if error is None:
                self._transition(step, StepStatus.COMPLETED)
                return APPLIED

            rec = self._transition(step, StepStatus.FAILED, error)
            if rec.attempts < policy.max_attempts:
                delay = policy.delay(rec.attempts)
                log.info("%s: retrying in %.1fs", step.id, delay)
                if self._wait(delay):
                    return INTERRUPTED
                rec = self._transition(step, StepStatus.RUNNING)
                continue

            log.error("%s: failed after %d attempt(s): %s", step.id, rec.attempts, error)
            self._rollback(step)
            return FAILED

    def _scope(self, step: Step):
        if self.runner is not None and step.timeout is not None:
            return self.runner.deadline(step.timeout)
        return nullcontext()

    def _attempt(self, step: Step) -> Optional[str]:
        """Run apply + verify once. Returns None on success, else the error message."""
        try:
            with self._scope(step):
                step.apply()
                if not step.run_verify():
                    return "verification failed after apply"
            return None
        except RunCancelled:
            self._cancel.set()
            return "cancelled"
        except ActionFailed as e:
            return str(e)
        except Exception as e:
            log.exception("%s: unexpected error during apply", step.id)
            return f"{type(e).__name__}: {e}"

    def _wait(self, seconds: float) -> bool:
        """Back off; returns True when cancelled meanwhile."""
        if seconds <= 0:
            return self.cancelled
        if self._sleep is not None:
            self._sleep(seconds)
            return self.cancelled
        return self._cancel.wait(seconds)

    def _rollback(self, step: Step) -> None:
        if step.rollback is None:
            return
        log.info("%s: rolling back", step.id)
        try:
            with self._scope(step):
                step.rollback()
        except Exception as e:
            log.error("%s: rollback failed: %s", step.id, e)

    # ------------------------------------------------------------------ #
    # dry plan / reset / status
    # ------------------------------------------------------------------ #
    def plan(self, *, reverify: bool = False) -> Plan:
        """Report what run() would do. Only check/verify are called; nothing is mutated."""
        graph = DependencyGraph.build(self.steps)
        existed = self.store.exists()
        self.store.load()
        actions: List[PlanAction] = []
        ok = True

        for sid in graph.order():
            step = graph.step(sid)
            rec = self.store.get(sid)
            base = dict(step_id=sid, status=rec.status.value, depends_on=list(step.depends_on))
            try:
                if rec.status == StepStatus.COMPLETED:
                    if reverify and not step.run_verify():
                        actions.append(PlanAction(action="reapply", detail="completed earlier but no longer verifies",
                                                  will_change=True, severity="warn", **base))
                    else:
                        actions.append(PlanAction(action="skip", detail="completed", **base))
                elif step.check():
                    actions.append(PlanAction(action="mark-complete", detail="already satisfied", **base))
                elif rec.status == StepStatus.FAILED and rec.attempts >= step.retry_policy.max_attempts:
                    actions.append(PlanAction(action="failed",
                                              detail=f"failed permanently: {rec.last_error}; reset to retry",
                                              severity="warn", **base))
                else:
                    actions.append(PlanAction(action="apply", detail=step.description or "apply",
                                              will_change=True, **base))
            except Exception as e:
                ok = False
                actions.append(PlanAction(action="error", detail=f"check raised {type(e).__name__}: {e}",
                                          severity="error", **base))

        changes = sum(1 for a in actions if a.will_change)
        notes = [f"{changes} of {len(actions)} steps would change the system"]
        if not existed:
            notes.append(f"no state recorded yet at {self.store.path}")
        return Plan(ok=ok, actions=actions, notes=notes)

    def reset(self, step_id: str) -> StepRecord:
        """Force one step back to PENDING. Requires the single-writer lock."""
        if step_id not in {s.id for s in self.steps}:
            raise UnknownStep(step_id)
        with self.store.locked():
            self.store.load()
            self._reset(step_id)
            return self.store.get(step_id)

    def status(self) -> dict:
        snapshot = self.store.load()
        order = [s.id for s in self.steps]
        try:
            order = DependencyGraph.build(self.steps).order()
        except Exception as e:
            log.warning("Step set is invalid (%s); listing steps in declaration order", e)
        ids = order + [k for k in snapshot if k not in order]
        entries = []
        for sid in ids:
            rec = snapshot.get(sid, StepRecord())
            entries.append({
                "id": sid,
                "status": rec.status.value,
                "attempts": rec.attempts,
                "last_error": rec.last_error,
                "timestamp": rec.timestamp.isoformat() if sid in snapshot else None,
                "declared": sid in order,
            })
        locked = self._locked_elsewhere()
        return {
            "state": _overall(snapshot, order, locked),
            "locked": locked,
            "state_file": str(self.store.path),
            "steps": entries,
        }

    def _locked_elsewhere(self) -> bool:
        if self.store.is_locked:
            return True
        if not self.store.lock_path.exists():
            return False
        other = StateStore(self.store.path)
        try:
            other.acquire()
        except (LockHeld, OSError):
            return True
        other.release()
        return False


def _overall(snapshot: Dict[str, StepRecord], order: List[str], locked: bool) -> str:
    statuses = [snapshot[sid].status for sid in order if sid in snapshot]
    if not statuses:
        return "not-started"
    if StepStatus.RUNNING in statuses:
        return "running" if locked else "interrupted"
    if StepStatus.FAILED in statuses:
        return "failed"
    if len(statuses) == len(order) and all(s == StepStatus.COMPLETED for s in statuses):
        return "completed"
    return "incomplete"


def _summary(result: RunResult) -> str:
    counts: Dict[str, int] = {}
    for outcome in result.outcomes.values():
        counts[outcome] = counts.get(outcome, 0) + 1
    return ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "nothing to do"
