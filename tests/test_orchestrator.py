import threading
from pathlib import Path

import pytest

from warden.config import WardenConfig
from warden.models import (
    AgentProfile,
    Artifact,
    GitAction,
    GitActionKind,
    RejectionReason,
    RunLifecycle,
    Task,
    TDDState,
)
from warden.orchestrator import (
    RunBusyError,
    TaskAlreadyAssignedError,
    UnknownRunError,
    WorkflowOrchestrator,
)
from warden.state import ActionLogStore
from warden.tdd import Evidence, TransitionOutcome


def _config(**budget: float) -> WardenConfig:
    config = WardenConfig.default()
    config.state.backend = "memory"
    for key, value in budget.items():
        setattr(config.budget, key, value)
    return config


def _drive_to_coverage_checked(orchestrator: WorkflowOrchestrator, run_id: str) -> None:
    assert orchestrator.advance_run(run_id, "testFailed", {"missingImpl": True}).advanced
    assert orchestrator.advance_run(run_id, "test_passed", {"passed": ["test_a"]}).advanced
    assert orchestrator.advance_run(run_id, "coverage", {"percent": 91}).advanced


def test_submit_assigns_top_profile_and_starts_without_tests() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run = orchestrator.submit(Task.create("fix panic", ["go-file", "bugfix"]))

    assert run.profile.name == "go-developer"
    assert run.state is TDDState.NO_TESTS
    assert run.action_log[0].action_kind == "submit"


def test_documentation_task_is_done_immediately() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("update readme", ["docs", "markdown"])
    status = orchestrator.get_run_status(run_id)

    assert status.state is TDDState.DONE
    assert status.status is RunLifecycle.DONE
    assert status.profile == "documentation-writer"


def test_done_documentation_run_can_still_commit_its_output() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("update readme", ["docs", "markdown"])

    commit = orchestrator.request_git_action(run_id, "commit", ["README.md"], {}, "docs: usage")
    secret = orchestrator.request_git_action(run_id, "commit", [".env"], {}, "docs: env")

    assert commit.approved is True
    assert secret.reason is RejectionReason.SENSITIVE_FILE
    assert orchestrator.get_run_status(run_id).state is TDDState.DONE


def test_full_tdd_cycle_reaches_done() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("add endpoint", ["py-file", "feature"])
    _drive_to_coverage_checked(orchestrator, run_id)

    result = orchestrator.advance_run(run_id, "complete")

    assert result.advanced
    assert orchestrator.get_run_status(run_id).status is RunLifecycle.DONE


def test_invalid_transition_is_returned_and_logged() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("fix", ["go-file"])

    result = orchestrator.advance_run(run_id, "test_passed", {"passed": ["test_a"]})

    assert result.outcome is TransitionOutcome.INVALID_TRANSITION
    assert result.state is TDDState.NO_TESTS
    last = orchestrator.get_run_status(run_id).action_log[-1]
    assert last.decision == "rejected"
    assert last.reason == "invalid_transition"


def test_unknown_evidence_kind_is_invalid_evidence() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("fix", ["go-file"])

    result = orchestrator.advance_run(run_id, "tests_exploded")

    assert result.outcome is TransitionOutcome.INVALID_EVIDENCE


def test_force_push_is_rejected_without_override() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("fix", ["go-file", "bugfix"])

    decision = orchestrator.request_git_action(
        run_id, "push", ["src/main.go"], {"force": True}, "fix"
    )

    assert decision.reason is RejectionReason.FORCE_PUSH_NOT_ALLOWED
    record = orchestrator.get_run_status(run_id).action_log[-1]
    assert record.action_kind == "git:push"
    assert record.reason == "force_push_not_allowed"


def test_commit_of_env_file_is_rejected() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("config", ["go-file"])

    decision = orchestrator.request_git_action(run_id, "commit", [".env"], {}, "add secrets")

    assert decision.reason is RejectionReason.SENSITIVE_FILE


def test_pending_git_rejection_blocks_done_until_corrected() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("fix", ["go-file"])
    _drive_to_coverage_checked(orchestrator, run_id)
    orchestrator.request_git_action(run_id, "commit", ["main.go"], {}, "")

    blocked = orchestrator.advance_run(run_id, "complete")
    assert blocked.outcome is TransitionOutcome.PENDING_REJECTION
    assert blocked.state is TDDState.COVERAGE_CHECKED

    assert orchestrator.request_git_action(run_id, "commit", ["main.go"], {}, "fix: x").approved
    assert orchestrator.advance_run(run_id, "complete").state is TDDState.DONE


def test_artifacts_are_validated_against_configured_rules() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run = orchestrator.submit(Task.create("users table", ["schema"]))

    decision = orchestrator.request_action(
        run,
        Artifact(
            kind="sql-table",
            payload={
                "name": "users",
                "columns": [{"name": "id", "pk": True, "nullable": False, "comment": "ID"}],
            },
        ),
    )

    assert run.profile.name == "database-architect"
    assert decision.violations == ("table name does not match required prefix",)
    assert run.action_log[-1].action_kind == "artifact:sql-table"
    assert orchestrator.validate_artifact("sql-table", {"name": "users"}).approved is False


def test_exclusive_profile_owns_one_active_run() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    first = orchestrator.submit(Task.create("migration a", ["schema", "sql-file"]))
    second = orchestrator.submit(Task.create("migration b", ["schema", "sql-file"]))

    assert first.profile.name == "database-architect"
    assert second.profile.name != "database-architect"

    orchestrator.abort(first.run_id, "superseded")
    third = orchestrator.submit(Task.create("migration c", ["schema", "sql-file"]))
    assert third.profile.name == "database-architect"


def test_task_cannot_be_owned_by_two_active_runs() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    task = Task.create("fix", ["go-file"])
    run = orchestrator.submit(task)

    with pytest.raises(TaskAlreadyAssignedError):
        orchestrator.submit(task)

    orchestrator.abort(run.run_id)
    assert orchestrator.submit(task).run_id != run.run_id


def test_aborted_run_rejects_further_actions() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("fix", ["go-file"])
    status = orchestrator.abort(run_id, "user cancelled")

    assert status.status is RunLifecycle.ABORTED
    assert orchestrator.advance_run(run_id, "test_failed", {"missing_impl": True}).outcome is (
        TransitionOutcome.RUN_CLOSED
    )
    assert orchestrator.request_git_action(run_id, "stage", ["a.go"]).reason is (
        RejectionReason.RUN_CLOSED
    )


def test_degraded_budget_defers_multi_file_actions() -> None:
    orchestrator = WorkflowOrchestrator(_config(ceiling=10.0, high_water=0.5))
    run_id = orchestrator.submit_task("fix", ["go-file"])

    assert orchestrator.record_usage(run_id, 5) is True
    multi = orchestrator.request_git_action(run_id, "stage", ["a.go", "b.go"])
    single = orchestrator.request_git_action(run_id, "stage", ["a.go"])

    assert multi.reason is RejectionReason.DEFERRED
    assert single.approved is True
    assert orchestrator.get_run_status(run_id).degraded is True


def test_failed_tests_while_refactoring_return_run_to_red() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_id = orchestrator.submit_task("tidy handler", ["go-file"])
    assert orchestrator.advance_run(run_id, "testFailed", {"missingImpl": True}).advanced
    assert orchestrator.advance_run(run_id, "testPassed", {"passed": ["t1"]}).advanced
    assert orchestrator.advance_run(run_id, "refactorStarted").advanced

    result = orchestrator.advance_run(run_id, "testFailed", {"failed": ["t1"]})

    assert result.outcome is TransitionOutcome.REGRESSION
    assert orchestrator.get_run_status(run_id).state is TDDState.RED_CONFIRMED


def test_concurrent_call_on_same_run_is_busy() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run = orchestrator.submit(Task.create("fix", ["go-file"]))
    slot = orchestrator._slot(run.run_id)

    slot.lock.acquire()
    try:
        decision = orchestrator.request_action(run, GitAction(GitActionKind.STAGE, ("a.go",)))
        result = orchestrator.advance(run, Evidence.of("test_failed", {"missing_impl": True}))
    finally:
        slot.lock.release()

    assert decision.reason is RejectionReason.BUSY
    assert result.outcome is TransitionOutcome.BUSY
    assert run.state is TDDState.NO_TESTS


def test_usage_on_busy_run_is_refused_and_not_counted() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run = orchestrator.submit(Task.create("fix", ["go-file"]))
    slot = orchestrator._slot(run.run_id)

    slot.lock.acquire()
    try:
        with pytest.raises(RunBusyError):
            orchestrator.record_usage(run.run_id, 5)
    finally:
        slot.lock.release()

    assert orchestrator.budget.used(run.run_id) == 0.0
    assert run.budget_used == 0.0
    orchestrator.record_usage(run.run_id, 5)
    assert orchestrator.budget.used(run.run_id) == 5.0


def test_independent_runs_proceed_in_parallel_threads() -> None:
    orchestrator = WorkflowOrchestrator(_config())
    run_ids = [orchestrator.submit_task(f"task {index}", ["go-file"]) for index in range(8)]
    errors: list[BaseException] = []

    def _drive(run_id: str) -> None:
        try:
            _drive_to_coverage_checked(orchestrator, run_id)
            assert orchestrator.advance_run(run_id, "complete").advanced
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_drive, args=(run_id,)) for run_id in run_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert all(orchestrator.get_run_status(run_id).state is TDDState.DONE for run_id in run_ids)


def test_action_log_is_persisted(tmp_path: Path) -> None:
    config = _config()
    config.state.backend = "local"
    orchestrator = WorkflowOrchestrator.from_config(config, tmp_path)
    run_id = orchestrator.submit_task("fix", ["go-file"])
    orchestrator.request_git_action(run_id, "push", ["a.go"], {"force": True}, "fix")

    stored = ActionLogStore(tmp_path).read(run_id)

    assert [record.action_kind for record in stored] == ["submit", "git:push"]
    assert stored[-1].reason == "force_push_not_allowed"


def test_unknown_run_id_raises() -> None:
    orchestrator = WorkflowOrchestrator(_config())

    with pytest.raises(UnknownRunError):
        orchestrator.get_run_status("run-missing")


def test_single_profile_configuration_still_has_generalist_fallback() -> None:
    config = _config()
    config.profiles = [AgentProfile("go-developer", ("go-file",))]
    orchestrator = WorkflowOrchestrator(config)

    run = orchestrator.submit(Task.create("misc", ["yaml-file"]))

    assert run.profile.name == "go-developer"
    assert [profile.name for profile, _ in orchestrator.classifier.classify(run.task)] == [
        "go-developer",
        "generalist",
    ]
