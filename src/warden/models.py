from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _flag_value(name: str, value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ValueError(f"Git action flag '{name}' must be a boolean, got {value!r}.")


class TDDState(str, Enum):
    NO_TESTS = "no_tests"
    RED_CONFIRMED = "red_confirmed"
    GREEN_CONFIRMED = "green_confirmed"
    REFACTORING = "refactoring"
    COVERAGE_CHECKED = "coverage_checked"
    DONE = "done"


class RunLifecycle(str, Enum):
    ACTIVE = "active"
    DONE = "done"
    ABORTED = "aborted"


class GitActionKind(str, Enum):
    STAGE = "stage"
    COMMIT = "commit"
    PUSH = "push"


class ArtifactKind(str, Enum):
    SQL_TABLE = "sql-table"
    API = "api"
    SCHEMA_FIELD = "schema-field"


class RejectionReason(str, Enum):
    SENSITIVE_FILE = "sensitive_file"
    FORCE_PUSH_NOT_ALLOWED = "force_push_not_allowed"
    HOOK_SKIP_NOT_ALLOWED = "hook_skip_not_allowed"
    EMPTY_MESSAGE = "empty_message"
    MESSAGE_CONVENTION = "message_convention"
    CONVENTION_VIOLATIONS = "convention_violations"
    DEFERRED = "deferred"
    BUSY = "busy"
    RUN_CLOSED = "run_closed"


@dataclass(frozen=True, slots=True)
class Task:
    description: str
    tags: frozenset[str] = frozenset()
    task_id: str = field(default_factory=lambda: f"task-{uuid4().hex[:12]}")
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def create(cls, description: str, tags: Iterable[str] = ()) -> Task:
        normalized = frozenset(str(tag).strip().lower() for tag in tags if str(tag).strip())
        return cls(description=description, tags=normalized)


@dataclass(frozen=True, slots=True)
class AgentProfile:
    name: str
    capabilities: tuple[str, ...] = ()
    priority: float = 1.0
    exclusive: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "capabilities": list(self.capabilities),
            "priority": self.priority,
            "exclusive": self.exclusive,
        }


@dataclass(frozen=True, slots=True)
class GitAction:
    kind: GitActionKind
    targets: tuple[str, ...] = ()
    force: bool = False
    skip_hooks: bool = False
    message: str = ""
    override_token: str | None = None

    @classmethod
    def from_request(
        cls,
        kind: GitActionKind | str,
        targets: Iterable[str],
        flags: Mapping[str, Any] | None = None,
        message: str = "",
        override_token: str | None = None,
    ) -> GitAction:
        flags = flags or {}
        return cls(
            kind=GitActionKind(str(getattr(kind, "value", kind)).lower()),
            targets=tuple(str(target) for target in targets),
            force=_flag_value("force", flags.get("force")),
            skip_hooks=_flag_value("skip_hooks", flags.get("skip_hooks", flags.get("skipHooks"))),
            message=message,
            override_token=override_token,
        )


@dataclass(frozen=True, slots=True)
class Artifact:
    kind: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Decision:
    approved: bool
    reason: RejectionReason | None = None
    violations: tuple[str, ...] = ()
    detail: str = ""

    @classmethod
    def approve(cls, detail: str = "") -> Decision:
        return cls(approved=True, detail=detail)

    @classmethod
    def reject(
        cls,
        reason: RejectionReason,
        detail: str = "",
        violations: Iterable[str] = (),
    ) -> Decision:
        return cls(approved=False, reason=reason, violations=tuple(violations), detail=detail)

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "reason": self.reason.value if self.reason else None,
            "violations": list(self.violations),
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class ActionRecord:
    action_kind: str
    decision: str
    reason: str | None = None
    detail: str = ""
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action_kind": self.action_kind,
            "decision": self.decision,
            "reason": self.reason,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ActionRecord:
        return cls(
            action_kind=str(payload.get("action_kind", "")),
            decision=str(payload.get("decision", "")),
            reason=payload.get("reason"),
            detail=str(payload.get("detail", "")),
            timestamp=str(payload.get("timestamp", "")),
        )


@dataclass(slots=True)
class WorkflowRun:
    run_id: str
    task: Task
    profile: AgentProfile
    state: TDDState = TDDState.NO_TESTS
    status: RunLifecycle = RunLifecycle.ACTIVE
    action_log: list[ActionRecord] = field(default_factory=list)
    budget_used: float = 0.0
    pending_rejections: set[GitActionKind] = field(default_factory=set)

    @property
    def closed(self) -> bool:
        return self.status is not RunLifecycle.ACTIVE


@dataclass(frozen=True, slots=True)
class RunStatus:
    run_id: str
    profile: str
    state: TDDState
    status: RunLifecycle
    action_log: tuple[ActionRecord, ...]
    budget_fraction: float
    degraded: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "profile": self.profile,
            "state": self.state.value,
            "status": self.status.value,
            "action_log": [record.to_dict() for record in self.action_log],
            "budget_fraction": round(self.budget_fraction, 4),
            "degraded": self.degraded,
        }
