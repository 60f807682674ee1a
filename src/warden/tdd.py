from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from warden.models import TDDState

logger = logging.getLogger(__name__)

DEFAULT_COVERAGE_THRESHOLD = 80.0


class EvidenceKind(str, Enum):
    TEST_FAILED = "test_failed"
    TEST_PASSED = "test_passed"
    REFACTOR_STARTED = "refactor_started"
    COVERAGE = "coverage"
    COMPLETE = "complete"

    @classmethod
    def parse(cls, raw: EvidenceKind | str) -> EvidenceKind:
        if isinstance(raw, EvidenceKind):
            return raw
        text = str(raw).strip()
        if not text.isupper():
            text = re.sub(r"(?<!^)(?=[A-Z])", "_", text)
        normalized = text.lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            raise EvidenceError(f"Unknown evidence kind: {raw}") from exc


class TransitionOutcome(str, Enum):
    ADVANCED = "advanced"
    REQUIRES_FIX = "requires_fix"
    REGRESSION = "regression"
    INSUFFICIENT_COVERAGE = "insufficient_coverage"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_EVIDENCE = "invalid_evidence"
    PENDING_REJECTION = "pending_rejection"
    BUSY = "busy"
    RUN_CLOSED = "run_closed"


class InvalidTransitionError(RuntimeError):
    """Raised when evidence is applied to a state that cannot accept it."""

    def __init__(self, state: TDDState, evidence: EvidenceKind) -> None:
        super().__init__(f"Cannot apply '{evidence.value}' evidence in state '{state.value}'.")
        self.state = state
        self.evidence = evidence


class EvidenceError(ValueError):
    """Raised when an evidence payload is malformed."""


@dataclass(frozen=True, slots=True)
class Evidence:
    kind: EvidenceKind
    payload: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, kind: EvidenceKind | str, payload: Mapping[str, Any] | None = None) -> Evidence:
        return cls(kind=EvidenceKind.parse(kind), payload=dict(payload or {}))

    def flag(self, *names: str) -> bool:
        return any(bool(self.payload.get(name)) for name in names)

    def test_names(self, *names: str) -> set[str]:
        for name in names:
            value = self.payload.get(name)
            if value is None:
                continue
            if isinstance(value, str) or not hasattr(value, "__iter__"):
                raise EvidenceError(f"Evidence field '{name}' must be a list of test names.")
            return {str(item) for item in value}
        return set()


@dataclass(frozen=True, slots=True)
class TransitionResult:
    outcome: TransitionOutcome
    state: TDDState
    previous_state: TDDState
    detail: str = ""

    @property
    def advanced(self) -> bool:
        return self.outcome is TransitionOutcome.ADVANCED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "state": self.state.value,
            "previous_state": self.previous_state.value,
            "detail": self.detail,
        }


class TDDStateMachine:
    """Red, green, refactor and coverage gating for one unit of work.

    Out-of-order evidence raises InvalidTransitionError and leaves the state
    untouched. Recoverable outcomes (a setup error, a regression, low
    coverage) are returned as TransitionResult values instead.
    """

    def __init__(
        self,
        coverage_threshold: float = DEFAULT_COVERAGE_THRESHOLD,
        state: TDDState = TDDState.NO_TESTS,
    ) -> None:
        self.coverage_threshold = float(coverage_threshold)
        self.state = state
        self.red_tests: set[str] = set()
        self.baseline_passing: set[str] = set()
        self.coverage_percent: float | None = None

    def apply(self, evidence: Evidence) -> TransitionResult:
        handlers = {
            (TDDState.NO_TESTS, EvidenceKind.TEST_FAILED): self._confirm_red,
            (TDDState.RED_CONFIRMED, EvidenceKind.TEST_PASSED): self._confirm_green,
            (TDDState.GREEN_CONFIRMED, EvidenceKind.REFACTOR_STARTED): self._start_refactor,
            (TDDState.REFACTORING, EvidenceKind.TEST_PASSED): self._finish_refactor,
            (TDDState.REFACTORING, EvidenceKind.TEST_FAILED): self._rollback_refactor,
            (TDDState.GREEN_CONFIRMED, EvidenceKind.COVERAGE): self._check_coverage,
            (TDDState.COVERAGE_CHECKED, EvidenceKind.COMPLETE): self._complete,
        }
        handler = handlers.get((self.state, evidence.kind))
        if handler is None:
            raise InvalidTransitionError(self.state, evidence.kind)
        previous = self.state
        outcome, detail = handler(evidence)
        if self.state is not previous:
            logger.info("TDD transition %s -> %s", previous.value, self.state.value)
        return TransitionResult(outcome, self.state, previous, detail)

    def _move(self, target: TDDState) -> None:
        self.state = target

    def _confirm_red(self, evidence: Evidence) -> tuple[TransitionOutcome, str]:
        if evidence.flag("setup_error", "setupError"):
            return TransitionOutcome.REQUIRES_FIX, "test run failed on setup, fix the environment"
        if not evidence.flag("missing_impl", "missingImpl"):
            return (
                TransitionOutcome.REQUIRES_FIX,
                "failure is not attributable to missing implementation",
            )
        self.red_tests = evidence.test_names("failed", "tests")
        self.baseline_passing = evidence.test_names("passed") - self.red_tests
        self._move(TDDState.RED_CONFIRMED)
        return TransitionOutcome.ADVANCED, f"{len(self.red_tests)} failing test(s) recorded"

    def _confirm_green(self, evidence: Evidence) -> tuple[TransitionOutcome, str]:
        failed = evidence.test_names("failed")
        passed = evidence.test_names("passed")
        regressions = failed & self.baseline_passing
        if regressions:
            return (
                TransitionOutcome.REGRESSION,
                "previously passing tests now fail: " + ", ".join(sorted(regressions)),
            )
        still_failing = (self.red_tests - passed) | failed
        if still_failing:
            return (
                TransitionOutcome.REQUIRES_FIX,
                "tests still failing: " + ", ".join(sorted(still_failing)),
            )
        self.baseline_passing |= passed | self.red_tests
        self._move(TDDState.GREEN_CONFIRMED)
        return TransitionOutcome.ADVANCED, "all tests pass"

    def _start_refactor(self, evidence: Evidence) -> tuple[TransitionOutcome, str]:
        self._move(TDDState.REFACTORING)
        return TransitionOutcome.ADVANCED, "refactoring"

    def _finish_refactor(self, evidence: Evidence) -> tuple[TransitionOutcome, str]:
        if evidence.test_names("failed"):
            return self._rollback_refactor(evidence)
        self.baseline_passing |= evidence.test_names("passed")
        self._move(TDDState.GREEN_CONFIRMED)
        return TransitionOutcome.ADVANCED, "refactor kept all tests green"

    def _rollback_refactor(self, evidence: Evidence) -> tuple[TransitionOutcome, str]:
        failed = evidence.test_names("failed", "tests")
        self.red_tests = failed
        self.baseline_passing -= failed
        self._move(TDDState.RED_CONFIRMED)
        names = ", ".join(sorted(failed)) or "unnamed tests"
        return TransitionOutcome.REGRESSION, f"refactor broke tests: {names}"

    def _check_coverage(self, evidence: Evidence) -> tuple[TransitionOutcome, str]:
        raw = evidence.payload.get("percent", evidence.payload.get("coverage"))
        try:
            percent = float(raw)
        except (TypeError, ValueError) as exc:
            raise EvidenceError(f"Coverage evidence needs a numeric percent, got {raw!r}.") from exc
        if not 0.0 <= percent <= 100.0:
            raise EvidenceError(f"Coverage percent out of range: {percent}")
        self.coverage_percent = percent
        if percent < self.coverage_threshold:
            return (
                TransitionOutcome.INSUFFICIENT_COVERAGE,
                f"coverage {percent:.1f}% is below {self.coverage_threshold:.1f}%",
            )
        self._move(TDDState.COVERAGE_CHECKED)
        return TransitionOutcome.ADVANCED, f"coverage {percent:.1f}%"

    def _complete(self, evidence: Evidence) -> tuple[TransitionOutcome, str]:
        self._move(TDDState.DONE)
        return TransitionOutcome.ADVANCED, "done"
