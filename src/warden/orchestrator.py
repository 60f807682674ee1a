from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from warden.budget import ContextBudgetTracker
from warden.classifier import TaskClassifier
from warden.config import WardenConfig
from warden.models import (
    ActionRecord,
    Artifact,
    Decision,
    GitAction,
    GitActionKind,
    RejectionReason,
    RunLifecycle,
    RunStatus,
    Task,
    TDDState,
    WorkflowRun,
)
from warden.policy import ArtifactConventionValidator, GitSafetyGuard, GitSafetyPolicy
from warden.state import ActionLogStore
from warden.tdd import (
    Evidence,
    EvidenceError,
    EvidenceKind,
    InvalidTransitionError,
    TDDStateMachine,
    TransitionOutcome,
    TransitionResult,
)

logger = logging.getLogger(__name__)


class UnknownRunError(KeyError):
    """Raised when a run id is not known to the orchestrator."""


class TaskAlreadyAssignedError(RuntimeError):
    """Raised when a task is submitted while an active run already owns it."""


class RunBusyError(RuntimeError):
    """Raised when a run is locked by another caller and the call returns no Decision."""


@dataclass(slots=True)
class _RunSlot:
    run: WorkflowRun
    machine: TDDStateMachine
    lock: threading.Lock = field(default_factory=threading.Lock)


class WorkflowOrchestrator:
    def __init__(
        self,
        config: WardenConfig,
        *,
        action_log: ActionLogStore | None = None,
        classifier: TaskClassifier | None = None,
        git_guard: GitSafetyGuard | None = None,
        artifact_validator: ArtifactConventionValidator | None = None,
        budget: ContextBudgetTracker | None = None,
    ) -> None:
        config.validate()
        self.config = config
        self.rules = config.conventions.to_rule_set()
        self.classifier = classifier or TaskClassifier(config.profiles)
        self.git_guard = git_guard or GitSafetyGuard(
            GitSafetyPolicy(
                sensitive_patterns=tuple(config.policy.sensitive_patterns),
                override_token=config.policy.override_token,
                commit_message_pattern=config.policy.commit_message_pattern,
            )
        )
        self.artifact_validator = artifact_validator or ArtifactConventionValidator()
        self.budget = budget or ContextBudgetTracker(
            ceiling=config.budget.ceiling,
            high_water=config.budget.high_water,
        )
        self.action_log = action_log
        self._runs: dict[str, _RunSlot] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: WardenConfig, repo_root: Path) -> WorkflowOrchestrator:
        store = ActionLogStore(
            repo_root,
            backend_mode=config.state.backend,
            log_dir=config.state.log_dir,
        )
        return cls(config, action_log=store)

    def _is_non_code_task(self, task: Task) -> bool:
        non_code = {tag.lower() for tag in self.config.policy.non_code_tags}
        return bool(task.tags) and task.tags <= non_code

    def _slot(self, run_id: str) -> _RunSlot:
        with self._registry_lock:
            slot = self._runs.get(run_id)
        if slot is None:
            raise UnknownRunError(run_id)
        return slot

    @contextmanager
    def _acquire(self, slot: _RunSlot, *, wait: bool = False) -> Iterator[bool]:
        timeout = float(self.config.policy.busy_timeout_seconds)
        if wait:
            acquired = slot.lock.acquire()
        elif timeout > 0:
            acquired = slot.lock.acquire(timeout=timeout)
        else:
            acquired = slot.lock.acquire(blocking=False)
        if not acquired:
            logger.warning("Run %s is busy; concurrent call rejected", slot.run.run_id)
        try:
            yield acquired
        finally:
            if acquired:
                slot.lock.release()

    def _record(
        self,
        run: WorkflowRun,
        action_kind: str,
        decision: str,
        reason: str | None = None,
        detail: str = "",
    ) -> ActionRecord:
        record = ActionRecord(
            action_kind=action_kind, decision=decision, reason=reason, detail=detail
        )
        run.action_log.append(record)
        if self.action_log is not None:
            self.action_log.append(run.run_id, record)
        return record

    def _consume(self, run: WorkflowRun, units: float) -> None:
        run.budget_used = self.budget.record(run.run_id, units)

    def submit(self, task: Task) -> WorkflowRun:
        with self._registry_lock:
            active = [slot.run for slot in self._runs.values() if not slot.run.closed]
            for run in active:
                if run.task.task_id == task.task_id:
                    raise TaskAlreadyAssignedError(
                        f"Task {task.task_id} is already owned by run {run.run_id}."
                    )
            owned_exclusive = {run.profile.name for run in active if run.profile.exclusive}
            profile, score = self.classifier.best(task, exclude=owned_exclusive)

            run = WorkflowRun(run_id=f"run-{uuid4().hex[:12]}", task=task, profile=profile)
            if self._is_non_code_task(task):
                run.state = TDDState.DONE
                run.status = RunLifecycle.DONE
            machine = TDDStateMachine(self.config.policy.coverage_threshold, state=run.state)
            self._runs[run.run_id] = _RunSlot(run=run, machine=machine)

        self._record(
            run,
            "submit",
            "accepted",
            detail=f"profile={profile.name} score={score:g} state={run.state.value}",
        )
        logger.info(
            "Run %s opened for task %s with profile %s (score %g)",
            run.run_id,
            task.task_id,
            profile.name,
            score,
        )
        return run

    def request_action(self, run: WorkflowRun, action: GitAction | Artifact) -> Decision:
        slot = self._slot(run.run_id)
        with self._acquire(slot) as acquired:
            if not acquired:
                return Decision.reject(RejectionReason.BUSY, detail="run is busy, retry later")
            if isinstance(action, GitAction):
                action_kind = f"git:{action.kind.value}"
            elif isinstance(action, Artifact):
                action_kind = f"artifact:{getattr(action.kind, 'value', action.kind)}"
            else:
                raise TypeError(f"Unsupported action type: {type(action).__name__}")

            if slot.run.status is RunLifecycle.ABORTED:
                decision = Decision.reject(
                    RejectionReason.RUN_CLOSED,
                    detail=f"run is {slot.run.status.value}",
                )
            elif isinstance(action, GitAction):
                decision = self._decide_git_action(slot.run, action)
                self._consume(slot.run, self.config.budget.step_cost * max(1, len(action.targets)))
            else:
                decision = self.artifact_validator.validate(action, self.rules)
                self._consume(slot.run, self.config.budget.step_cost)

            self._record(
                slot.run,
                action_kind,
                "approved" if decision.approved else "rejected",
                reason=decision.reason.value if decision.reason else None,
                detail="; ".join(filter(None, [decision.detail, *decision.violations])),
            )
        if decision.approved:
            logger.info("Run %s: %s approved", run.run_id, action_kind)
        else:
            logger.warning(
                "Run %s: %s rejected (%s) %s",
                run.run_id,
                action_kind,
                decision.reason.value if decision.reason else "",
                decision.detail,
            )
        return decision

    def _decide_git_action(self, run: WorkflowRun, action: GitAction) -> Decision:
        decision = self.git_guard.validate(action)
        if (
            decision.approved
            and len(action.targets) > 1
            and self.budget.should_degrade(run.run_id)
        ):
            decision = Decision.reject(
                RejectionReason.DEFERRED,
                detail=(
                    "context budget high-water mark reached; split into single-file actions "
                    "or continue in a new run"
                ),
            )
        if decision.approved:
            run.pending_rejections.discard(action.kind)
        else:
            run.pending_rejections.add(action.kind)
        return decision

    def advance(self, run: WorkflowRun, evidence: Evidence) -> TransitionResult:
        slot = self._slot(run.run_id)
        with self._acquire(slot) as acquired:
            current = slot.run.state
            if not acquired:
                return TransitionResult(TransitionOutcome.BUSY, current, current, "run is busy")
            if slot.run.status is RunLifecycle.ABORTED:
                result = TransitionResult(
                    TransitionOutcome.RUN_CLOSED, current, current, "run was aborted"
                )
            elif (
                evidence.kind is EvidenceKind.COMPLETE
                and current is TDDState.COVERAGE_CHECKED
                and slot.run.pending_rejections
            ):
                pending = ", ".join(sorted(kind.value for kind in slot.run.pending_rejections))
                result = TransitionResult(
                    TransitionOutcome.PENDING_REJECTION,
                    current,
                    current,
                    f"rejected git actions must be corrected first: {pending}",
                )
            else:
                result = self._apply_evidence(slot, evidence)
            self._consume(slot.run, self.config.budget.step_cost)
            self._record(
                slot.run,
                f"advance:{evidence.kind.value}",
                "advanced" if result.advanced else "rejected",
                reason=None if result.advanced else result.outcome.value,
                detail=result.detail,
            )
        return result

    def _apply_evidence(self, slot: _RunSlot, evidence: Evidence) -> TransitionResult:
        current = slot.run.state
        try:
            result = slot.machine.apply(evidence)
        except InvalidTransitionError as exc:
            logger.warning("Run %s: %s", slot.run.run_id, exc)
            return TransitionResult(
                TransitionOutcome.INVALID_TRANSITION, current, current, str(exc)
            )
        except EvidenceError as exc:
            logger.warning("Run %s: invalid evidence: %s", slot.run.run_id, exc)
            return TransitionResult(TransitionOutcome.INVALID_EVIDENCE, current, current, str(exc))
        slot.run.state = slot.machine.state
        if slot.run.state is TDDState.DONE:
            slot.run.status = RunLifecycle.DONE
            logger.info("Run %s completed", slot.run.run_id)
        return result

    def abort(self, run_id: str, reason: str = "") -> RunStatus:
        slot = self._slot(run_id)
        with self._acquire(slot, wait=True):
            if not slot.run.closed:
                slot.run.status = RunLifecycle.ABORTED
                self._record(slot.run, "abort", "aborted", detail=reason)
                logger.info("Run %s aborted %s", run_id, reason)
        return self.get_run_status(run_id)

    def record_usage(self, run_id: str, units: float) -> bool:
        slot = self._slot(run_id)
        with self._acquire(slot) as acquired:
            if not acquired:
                raise RunBusyError(f"Run {run_id} is busy, retry later.")
            self._consume(slot.run, units)
        return self.budget.should_degrade(run_id)

    def submit_task(self, description: str, tags: Iterable[str] = ()) -> str:
        return self.submit(Task.create(description, tags)).run_id

    def advance_run(
        self,
        run_id: str,
        evidence_kind: EvidenceKind | str,
        evidence_payload: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        slot = self._slot(run_id)
        try:
            evidence = Evidence.of(evidence_kind, evidence_payload)
        except EvidenceError as exc:
            state = slot.run.state
            return TransitionResult(TransitionOutcome.INVALID_EVIDENCE, state, state, str(exc))
        return self.advance(slot.run, evidence)

    def request_git_action(
        self,
        run_id: str,
        kind: GitActionKind | str,
        targets: Iterable[str],
        flags: Mapping[str, Any] | None = None,
        message: str = "",
        override_token: str | None = None,
    ) -> Decision:
        action = GitAction.from_request(kind, targets, flags, message, override_token)
        return self.request_action(self._slot(run_id).run, action)

    def submit_artifact(self, run_id: str, kind: str, payload: Mapping[str, Any]) -> Decision:
        return self.request_action(self._slot(run_id).run, Artifact(kind=kind, payload=payload))

    def validate_artifact(self, kind: str, payload: Mapping[str, Any]) -> Decision:
        return self.artifact_validator.validate(Artifact(kind=kind, payload=payload), self.rules)

    def get_run_status(self, run_id: str) -> RunStatus:
        run = self._slot(run_id).run
        return RunStatus(
            run_id=run.run_id,
            profile=run.profile.name,
            state=run.state,
            status=run.status,
            action_log=tuple(run.action_log),
            budget_fraction=self.budget.fraction(run.run_id),
            degraded=self.budget.should_degrade(run.run_id),
        )

    def runs(self) -> list[WorkflowRun]:
        with self._registry_lock:
            return [slot.run for slot in self._runs.values()]
