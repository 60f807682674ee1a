import pytest

from warden.models import TDDState
from warden.tdd import (
    Evidence,
    EvidenceError,
    EvidenceKind,
    InvalidTransitionError,
    TDDStateMachine,
    TransitionOutcome,
)


def _green_machine() -> TDDStateMachine:
    machine = TDDStateMachine()
    machine.apply(Evidence.of("test_failed", {"missing_impl": True, "failed": ["test_add"]}))
    machine.apply(Evidence.of("test_passed", {"passed": ["test_add"]}))
    assert machine.state is TDDState.GREEN_CONFIRMED
    return machine


def test_missing_implementation_failure_confirms_red() -> None:
    machine = TDDStateMachine()
    result = machine.apply(Evidence.of("testFailed", {"missingImpl": True}))

    assert result.outcome is TransitionOutcome.ADVANCED
    assert result.previous_state is TDDState.NO_TESTS
    assert machine.state is TDDState.RED_CONFIRMED


def test_setup_error_keeps_no_tests_and_requires_fix() -> None:
    machine = TDDStateMachine()
    result = machine.apply(
        Evidence.of("test_failed", {"missing_impl": True, "setup_error": True})
    )

    assert result.outcome is TransitionOutcome.REQUIRES_FIX
    assert machine.state is TDDState.NO_TESTS


def test_failure_not_caused_by_missing_implementation_requires_fix() -> None:
    machine = TDDStateMachine()
    result = machine.apply(Evidence.of("test_failed", {"failed": ["test_x"]}))

    assert result.outcome is TransitionOutcome.REQUIRES_FIX
    assert machine.state is TDDState.NO_TESTS


def test_no_tests_to_green_is_invalid_and_idempotent() -> None:
    machine = TDDStateMachine()
    for _ in range(3):
        with pytest.raises(InvalidTransitionError):
            machine.apply(Evidence.of("test_passed", {"passed": ["test_add"]}))
        assert machine.state is TDDState.NO_TESTS


def test_regression_during_green_check_stays_red() -> None:
    machine = TDDStateMachine()
    machine.apply(
        Evidence.of(
            "test_failed",
            {"missing_impl": True, "failed": ["test_new"], "passed": ["test_old"]},
        )
    )
    result = machine.apply(
        Evidence.of("test_passed", {"passed": ["test_new"], "failed": ["test_old"]})
    )

    assert result.outcome is TransitionOutcome.REGRESSION
    assert "test_old" in result.detail
    assert machine.state is TDDState.RED_CONFIRMED


def test_red_tests_still_failing_require_fix() -> None:
    machine = TDDStateMachine()
    machine.apply(
        Evidence.of("test_failed", {"missing_impl": True, "failed": ["test_a", "test_b"]})
    )
    result = machine.apply(Evidence.of("test_passed", {"passed": ["test_a"]}))

    assert result.outcome is TransitionOutcome.REQUIRES_FIX
    assert "test_b" in result.detail
    assert machine.state is TDDState.RED_CONFIRMED


def test_refactor_regression_rolls_back_to_red() -> None:
    machine = _green_machine()
    machine.apply(Evidence.of(EvidenceKind.REFACTOR_STARTED))
    assert machine.state is TDDState.REFACTORING

    result = machine.apply(Evidence.of("test_passed", {"passed": [], "failed": ["test_add"]}))

    assert result.outcome is TransitionOutcome.REGRESSION
    assert machine.state is TDDState.RED_CONFIRMED
    assert machine.state is not TDDState.DONE


def test_failed_run_during_refactor_rolls_back_to_red() -> None:
    machine = _green_machine()
    machine.apply(Evidence.of("refactorStarted"))

    result = machine.apply(Evidence.of("testFailed", {"failed": ["test_add"]}))

    assert result.outcome is TransitionOutcome.REGRESSION
    assert result.previous_state is TDDState.REFACTORING
    assert machine.state is TDDState.RED_CONFIRMED
    assert machine.apply(Evidence.of("test_passed", {"passed": ["test_add"]})).advanced


def test_refactor_with_green_tests_returns_to_green() -> None:
    machine = _green_machine()
    machine.apply(Evidence.of("refactor_started"))
    result = machine.apply(Evidence.of("test_passed", {"passed": ["test_add"]}))

    assert result.advanced
    assert machine.state is TDDState.GREEN_CONFIRMED


def test_coverage_below_threshold_is_rejected() -> None:
    machine = _green_machine()
    result = machine.apply(Evidence.of("coverage", {"percent": 79.9}))

    assert result.outcome is TransitionOutcome.INSUFFICIENT_COVERAGE
    assert machine.state is TDDState.GREEN_CONFIRMED


def test_coverage_at_threshold_then_complete() -> None:
    machine = _green_machine()
    assert machine.apply(Evidence.of("coverage", {"percent": 80})).advanced
    assert machine.state is TDDState.COVERAGE_CHECKED

    assert machine.apply(Evidence.of("complete")).advanced
    assert machine.state is TDDState.DONE


def test_custom_coverage_threshold() -> None:
    machine = TDDStateMachine(coverage_threshold=95)
    machine.apply(Evidence.of("test_failed", {"missing_impl": True}))
    machine.apply(Evidence.of("test_passed"))

    assert machine.apply(Evidence.of("coverage", {"percent": 90})).outcome is (
        TransitionOutcome.INSUFFICIENT_COVERAGE
    )


def test_refactoring_cannot_skip_to_coverage() -> None:
    machine = _green_machine()
    machine.apply(Evidence.of("refactor_started"))

    with pytest.raises(InvalidTransitionError):
        machine.apply(Evidence.of("coverage", {"percent": 100}))
    assert machine.state is TDDState.REFACTORING


def test_malformed_evidence_is_rejected() -> None:
    machine = _green_machine()
    with pytest.raises(EvidenceError):
        machine.apply(Evidence.of("coverage", {"percent": "lots"}))
    with pytest.raises(EvidenceError):
        Evidence.of("tests_exploded")
    assert machine.state is TDDState.GREEN_CONFIRMED


def test_evidence_kind_parsing_accepts_common_spellings() -> None:
    assert EvidenceKind.parse("testPassed") is EvidenceKind.TEST_PASSED
    assert EvidenceKind.parse("TEST_PASSED") is EvidenceKind.TEST_PASSED
    assert EvidenceKind.parse("refactor-started") is EvidenceKind.REFACTOR_STARTED
