from __future__ import annotations

import json
import logging
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from warden.models import AgentProfile
from warden.policy.conventions import ConventionRuleSet

logger = logging.getLogger(__name__)

StateBackendName = Literal["local", "notes", "memory"]
STATE_BACKENDS = {"local", "notes", "memory"}


class ConfigurationError(RuntimeError):
    """Raised when configuration is missing or invalid at startup."""


@dataclass(slots=True)
class PolicyConfig:
    sensitive_patterns: list[str] = field(
        default_factory=lambda: [
            ".env",
            ".env.*",
            "*.pem",
            "*.key",
            "*.p12",
            "id_rsa*",
            "credentials*",
            "secrets/*",
        ]
    )
    override_token: str = ""
    commit_message_pattern: str = ""
    coverage_threshold: float = 80.0
    non_code_tags: list[str] = field(
        default_factory=lambda: ["docs", "documentation", "markdown", "md-file"]
    )
    busy_timeout_seconds: float = 0.0


@dataclass(slots=True)
class BudgetConfig:
    ceiling: float = 100_000.0
    high_water: float = 0.8
    step_cost: float = 1.0


@dataclass(slots=True)
class ConventionsConfig:
    version: str = "1"
    table_name_pattern: str = r"^app_[a-z0-9_]+$"
    required_columns: list[str] = field(default_factory=list)
    system_columns: list[str] = field(
        default_factory=lambda: ["id", "created_at", "updated_at", "deleted_at"]
    )
    update_trigger_pattern: str = r"updated_at"
    api_types: list[str] = field(default_factory=lambda: ["admin", "app", "open"])
    write_method: str = "post"
    write_action_prefixes: list[str] = field(
        default_factory=lambda: [
            "create",
            "add",
            "update",
            "edit",
            "save",
            "delete",
            "remove",
            "submit",
            "import",
            "batch",
            "set",
            "enable",
            "disable",
        ]
    )
    status_field_pattern: str = r"(^|_)(status|state)$"
    field_name_pattern: str = r"^[a-z][a-z0-9_]*$"

    def to_rule_set(self) -> ConventionRuleSet:
        return ConventionRuleSet(
            version=self.version,
            table_name_pattern=self.table_name_pattern,
            required_columns=tuple(self.required_columns),
            system_columns=tuple(self.system_columns),
            update_trigger_pattern=self.update_trigger_pattern,
            api_types=tuple(self.api_types),
            write_method=self.write_method.lower(),
            write_action_prefixes=tuple(self.write_action_prefixes),
            status_field_pattern=self.status_field_pattern,
            field_name_pattern=self.field_name_pattern,
        )


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"
    log_dir: str = ".warden/logs"


def default_profiles() -> list[AgentProfile]:
    return [
        AgentProfile("go-developer", ("go-file", "go-mod", "bugfix", "feature", "refactor")),
        AgentProfile("python-developer", ("py-file", "bugfix", "feature", "refactor")),
        AgentProfile(
            "database-architect",
            ("schema", "sql-file", "migration"),
            priority=1.5,
            exclusive=True,
        ),
        AgentProfile("api-designer", ("api", "openapi", "yaml-file"), priority=1.5),
        AgentProfile("test-engineer", ("test", "tdd", "coverage")),
        AgentProfile("documentation-writer", ("docs", "documentation", "markdown", "md-file")),
        AgentProfile("generalist", ()),
    ]


@dataclass(slots=True)
class WardenConfig:
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    conventions: ConventionsConfig = field(default_factory=ConventionsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    profiles: list[AgentProfile] = field(default_factory=default_profiles)

    @classmethod
    def default(cls) -> WardenConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WardenConfig:
        try:
            config = cls(
                policy=PolicyConfig(**data.get("policy", {})),
                budget=BudgetConfig(**data.get("budget", {})),
                conventions=ConventionsConfig(**data.get("conventions", {})),
                state=StateConfig(**data.get("state", {})),
                profiles=(
                    [_profile_from_dict(item) for item in data["profiles"]]
                    if "profiles" in data
                    else default_profiles()
                ),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.state.backend not in STATE_BACKENDS:
            raise ConfigurationError(f"Unsupported state backend: {self.state.backend}")
        if not 0.0 <= float(self.policy.coverage_threshold) <= 100.0:
            raise ConfigurationError("coverage_threshold must be between 0 and 100.")
        if float(self.budget.ceiling) <= 0:
            raise ConfigurationError("budget ceiling must be positive.")
        if not 0.0 < float(self.budget.high_water) <= 1.0:
            raise ConfigurationError("budget high_water must be in (0, 1].")
        if not self.profiles:
            raise ConfigurationError("At least one agent profile must be configured.")
        names = [profile.name for profile in self.profiles]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError("Duplicate agent profile names: " + ", ".join(duplicates))
        negative = [profile.name for profile in self.profiles if profile.priority < 0]
        if negative:
            raise ConfigurationError(
                "Agent profile priority must not be negative: " + ", ".join(negative)
            )
        patterns = {
            "commit_message_pattern": self.policy.commit_message_pattern,
            "table_name_pattern": self.conventions.table_name_pattern,
            "update_trigger_pattern": self.conventions.update_trigger_pattern,
            "status_field_pattern": self.conventions.status_field_pattern,
            "field_name_pattern": self.conventions.field_name_pattern,
        }
        for key, pattern in patterns.items():
            if not pattern:
                continue
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigurationError(f"Invalid regular expression for {key}: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "policy": {
                "sensitive_patterns": list(self.policy.sensitive_patterns),
                "override_token": self.policy.override_token,
                "commit_message_pattern": self.policy.commit_message_pattern,
                "coverage_threshold": float(self.policy.coverage_threshold),
                "non_code_tags": list(self.policy.non_code_tags),
                "busy_timeout_seconds": float(self.policy.busy_timeout_seconds),
            },
            "budget": {
                "ceiling": float(self.budget.ceiling),
                "high_water": float(self.budget.high_water),
                "step_cost": float(self.budget.step_cost),
            },
            "conventions": {
                "version": self.conventions.version,
                "table_name_pattern": self.conventions.table_name_pattern,
                "required_columns": list(self.conventions.required_columns),
                "system_columns": list(self.conventions.system_columns),
                "update_trigger_pattern": self.conventions.update_trigger_pattern,
                "api_types": list(self.conventions.api_types),
                "write_method": self.conventions.write_method,
                "write_action_prefixes": list(self.conventions.write_action_prefixes),
                "status_field_pattern": self.conventions.status_field_pattern,
                "field_name_pattern": self.conventions.field_name_pattern,
            },
            "state": {
                "backend": self.state.backend,
                "log_dir": self.state.log_dir,
            },
            "profiles": [profile.to_dict() for profile in self.profiles],
        }


def _profile_from_dict(payload: Any) -> AgentProfile:
    if not isinstance(payload, dict) or not str(payload.get("name", "")).strip():
        raise ConfigurationError(f"Agent profile entry needs a name: {payload!r}")
    capabilities = payload.get("capabilities", [])
    if not isinstance(capabilities, list):
        raise ConfigurationError(f"Capabilities of '{payload['name']}' must be a list.")
    return AgentProfile(
        name=str(payload["name"]).strip(),
        capabilities=tuple(str(item).strip().lower() for item in capabilities),
        priority=float(payload.get("priority", 1.0)),
        exclusive=bool(payload.get("exclusive", False)),
    )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WardenConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["policy", "budget", "conventions", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for profile in data["profiles"]:
        lines.append("[[profiles]]")
        for key, value in profile.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WardenConfig:
    if not path.exists():
        logger.debug("No configuration at %s, using defaults", path)
        return WardenConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    logger.debug("Loaded configuration from %s", path)
    return WardenConfig.from_dict(data)


def save_config(path: Path, config: WardenConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
