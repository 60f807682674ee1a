from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click

from warden.classifier import TaskClassifier
from warden.config import ConfigurationError, WardenConfig, load_config, save_config
from warden.models import Decision, GitAction, Task
from warden.orchestrator import RunBusyError, WorkflowOrchestrator
from warden.state import ActionLogError, ActionLogStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, WardenConfig]:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value))
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    return repo_root, config


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _finish(decision: Decision) -> None:
    _echo_json(decision.to_dict())
    if not decision.approved:
        reason = decision.reason.value if decision.reason else "rejected"
        raise click.ClickException(f"Rejected ({reason}): {decision.detail}")


def _read_json_file(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read JSON from {path}: {exc}") from exc


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Warden CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option(
    "--state-backend",
    type=click.Choice(["local", "notes", "memory"]),
    default=None,
)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def init_command(state_backend: str | None, config_value: str) -> None:
    repo_root, config = _load(config_value)
    if state_backend:
        config.state.backend = state_backend  # type: ignore[assignment]
    config_path = _resolve_config_path(repo_root, config_value)
    save_config(config_path, config)
    (repo_root / ".warden").mkdir(parents=True, exist_ok=True)
    store = ActionLogStore(
        repo_root, backend_mode=config.state.backend, log_dir=config.state.log_dir
    )

    click.echo(f"Initialized Warden in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Action log backend: {store.backend_mode}")


@cli.command("profiles")
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def profiles_command(config_value: str) -> None:
    _, config = _load(config_value)
    _echo_json([profile.to_dict() for profile in config.profiles])


@cli.command("classify")
@click.argument("description")
@click.option("--tag", "tags", multiple=True)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def classify_command(description: str, tags: tuple[str, ...], config_value: str) -> None:
    _, config = _load(config_value)
    try:
        classifier = TaskClassifier(config.profiles)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    ranking = classifier.classify(Task.create(description, tags))
    _echo_json([{"profile": profile.name, "score": score} for profile, score in ranking])


@cli.command("check-git")
@click.argument("kind", type=click.Choice(["stage", "commit", "push"]))
@click.argument("targets", nargs=-1)
@click.option("--force", is_flag=True, default=False)
@click.option("--skip-hooks", is_flag=True, default=False)
@click.option("--message", "-m", default="")
@click.option("--override-token", default=None)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def check_git_command(
    kind: str,
    targets: tuple[str, ...],
    force: bool,
    skip_hooks: bool,
    message: str,
    override_token: str | None,
    config_value: str,
) -> None:
    _, config = _load(config_value)
    orchestrator = WorkflowOrchestrator(config)
    action = GitAction.from_request(
        kind,
        targets,
        {"force": force, "skip_hooks": skip_hooks},
        message,
        override_token,
    )
    _finish(orchestrator.git_guard.validate(action))


@cli.command("validate-artifact")
@click.argument("kind")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def validate_artifact_command(kind: str, payload_file: str, config_value: str) -> None:
    _, config = _load(config_value)
    payload = _read_json_file(payload_file)
    if not isinstance(payload, dict):
        raise click.ClickException("Artifact payload must be a JSON object.")
    _finish(WorkflowOrchestrator(config).validate_artifact(kind, payload))


def _decision_label(decision: Decision) -> str:
    if decision.approved:
        return "approved"
    return f"rejected ({decision.reason.value if decision.reason else ''})"


def _replay_step(
    orchestrator: WorkflowOrchestrator, run_id: str, index: int, step: dict[str, Any]
) -> str:
    if "advance" in step:
        result = orchestrator.advance_run(run_id, step["advance"], step.get("payload"))
        return f"[{index}] advance {step['advance']}: {result.outcome.value}"
    if "git" in step:
        git = step["git"]
        decision = orchestrator.request_git_action(
            run_id,
            git.get("kind", ""),
            git.get("targets", []),
            git.get("flags"),
            git.get("message", ""),
            git.get("override_token"),
        )
        return f"[{index}] git {git.get('kind')}: {_decision_label(decision)}"
    if "artifact" in step:
        artifact = step["artifact"]
        decision = orchestrator.submit_artifact(
            run_id, str(artifact.get("kind", "")), artifact.get("payload", {})
        )
        return f"[{index}] artifact {artifact.get('kind')}: {_decision_label(decision)}"
    if "usage" in step:
        degraded = orchestrator.record_usage(run_id, float(step["usage"]))
        return f"[{index}] usage {step['usage']}: degraded={degraded}"
    if "abort" in step:
        orchestrator.abort(run_id, str(step["abort"]))
        return f"[{index}] abort"
    raise click.ClickException(f"Step {index} has no recognised action.")


@cli.command("replay")
@click.argument("script_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def replay_command(script_file: str, config_value: str) -> None:
    """Drive one run through a scripted sequence of steps."""
    repo_root, config = _load(config_value)
    script = _read_json_file(script_file)
    if not isinstance(script, dict) or not isinstance(script.get("task"), dict):
        raise click.ClickException("Replay script needs a 'task' object.")

    task = script["task"]
    try:
        orchestrator = WorkflowOrchestrator.from_config(config, repo_root)
        run_id = orchestrator.submit_task(str(task.get("description", "")), task.get("tags", []))
        for index, step in enumerate(script.get("steps", []), start=1):
            if not isinstance(step, dict):
                raise click.ClickException(f"Step {index} must be an object.")
            click.echo(_replay_step(orchestrator, run_id, index, step))
    except (ActionLogError, RunBusyError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(orchestrator.get_run_status(run_id).to_dict())


@cli.command("log")
@click.argument("run_id", required=False)
@click.option("--config", "config_value", default="warden.toml", show_default=True)
def log_command(run_id: str | None, config_value: str) -> None:
    repo_root, config = _load(config_value)
    try:
        store = ActionLogStore(
            repo_root, backend_mode=config.state.backend, log_dir=config.state.log_dir
        )
        if run_id is None:
            _echo_json(store.run_ids())
            return
        _echo_json([record.to_dict() for record in store.read(run_id)])
    except ActionLogError as exc:
        raise click.ClickException(str(exc)) from exc
