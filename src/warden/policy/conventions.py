from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from warden.models import Artifact, ArtifactKind, Decision, RejectionReason

HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options")
WRITE_ONLY_METHODS = {"put", "patch", "delete"}
SCHEMA_REF_PREFIX = "#/components/schemas/"
API_PATH_PATTERN = re.compile(
    r"^/(?P<api_type>[A-Za-z0-9_-]+)/(?P<module>[A-Za-z0-9_-]+)/(?P<action>[A-Za-z0-9_-]+)$"
)
KIND_ALIASES = {
    "schema-table": ArtifactKind.SQL_TABLE,
    "table": ArtifactKind.SQL_TABLE,
    "api-path": ArtifactKind.API,
    "openapi": ArtifactKind.API,
    "field": ArtifactKind.SCHEMA_FIELD,
}


@dataclass(frozen=True, slots=True)
class ConventionRuleSet:
    """Versioned naming and documentation rules for generated artifacts."""

    version: str = "1"
    table_name_pattern: str = r"^app_[a-z0-9_]+$"
    required_columns: tuple[str, ...] = ()
    system_columns: tuple[str, ...] = ("id", "created_at", "updated_at", "deleted_at")
    update_trigger_pattern: str = r"updated_at"
    api_types: tuple[str, ...] = ("admin", "app", "open")
    write_method: str = "post"
    write_action_prefixes: tuple[str, ...] = (
        "create",
        "add",
        "update",
        "edit",
        "save",
        "delete",
        "remove",
        "submit",
    )
    status_field_pattern: str = r"(^|_)(status|state)$"
    field_name_pattern: str = r"^[a-z][a-z0-9_]*$"

    def is_status_field(self, name: str) -> bool:
        return bool(re.search(self.status_field_pattern, name, re.IGNORECASE))

    def is_side_effecting(self, action: str) -> bool:
        lowered = action.lower()
        return any(lowered.startswith(prefix.lower()) for prefix in self.write_action_prefixes)


def parse_artifact_kind(kind: ArtifactKind | str) -> ArtifactKind | None:
    if isinstance(kind, ArtifactKind):
        return kind
    normalized = str(kind).strip().lower().replace("_", "-")
    if normalized in KIND_ALIASES:
        return KIND_ALIASES[normalized]
    try:
        return ArtifactKind(normalized)
    except ValueError:
        return None


def _column_is_primary_key(column: Mapping[str, Any], table_pk: set[str]) -> bool:
    if column.get("pk") or column.get("primary_key"):
        return True
    return str(column.get("name", "")) in table_pk


def _trigger_names(payload: Mapping[str, Any]) -> list[str]:
    names: list[str] = []
    for trigger in payload.get("triggers") or []:
        if isinstance(trigger, Mapping):
            names.append(str(trigger.get("name", "")))
        else:
            names.append(str(trigger))
    return names


def _iter_refs(node: Any) -> Iterator[str]:
    if isinstance(node, Mapping):
        for key, value in node.items():
            if key == "$ref" and isinstance(value, str):
                yield value
            else:
                yield from _iter_refs(value)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_refs(item)


def _iter_properties(location: str, schema: Any) -> Iterator[tuple[str, str, Mapping[str, Any]]]:
    if not isinstance(schema, Mapping):
        return
    properties = schema.get("properties")
    if isinstance(properties, Mapping):
        for name, spec in properties.items():
            if not isinstance(spec, Mapping):
                continue
            field_location = f"{location}.{name}"
            yield field_location, str(name), spec
            yield from _iter_properties(field_location, spec)
    items = schema.get("items")
    if isinstance(items, Mapping):
        yield from _iter_properties(f"{location}[]", items)


class ArtifactConventionValidator:
    """Checks generated schema and API artifacts against a ConventionRuleSet.

    Violations accumulate across every rule so a caller sees the complete
    defect list from one call.
    """

    def validate(self, artifact: Artifact, rules: ConventionRuleSet) -> Decision:
        kind = parse_artifact_kind(artifact.kind)
        payload = artifact.payload if isinstance(artifact.payload, Mapping) else {}
        if kind is ArtifactKind.SQL_TABLE:
            violations = self._sql_table_violations(payload, rules)
        elif kind is ArtifactKind.API:
            violations = self._api_violations(payload, rules)
        elif kind is ArtifactKind.SCHEMA_FIELD:
            violations = self._schema_field_violations(payload, rules)
        else:
            violations = [f"unsupported artifact kind '{artifact.kind}'"]

        if violations:
            return Decision.reject(
                RejectionReason.CONVENTION_VIOLATIONS,
                detail=f"{len(violations)} convention violation(s) against rules v{rules.version}",
                violations=violations,
            )
        return Decision.approve(detail=f"conforms to rules v{rules.version}")

    def _sql_table_violations(
        self, payload: Mapping[str, Any], rules: ConventionRuleSet
    ) -> list[str]:
        violations: list[str] = []
        table_name = str(payload.get("name", "")).strip()
        if not re.match(rules.table_name_pattern, table_name):
            violations.append("table name does not match required prefix")

        columns = [item for item in payload.get("columns") or [] if isinstance(item, Mapping)]
        if not columns:
            violations.append("table has no columns")

        raw_pk = payload.get("primary_key") or []
        table_pk = {raw_pk} if isinstance(raw_pk, str) else {str(item) for item in raw_pk}
        comments = payload.get("comments")
        if not isinstance(comments, Mapping):
            comments = {}

        column_names: list[str] = []
        has_primary_key = False
        mutable_columns: list[str] = []
        system_columns = {name.lower() for name in rules.system_columns}
        for index, column in enumerate(columns):
            name = str(column.get("name", "")).strip()
            label = name or f"#{index + 1}"
            if not name:
                violations.append(f"column {label} has no name")
            column_names.append(name)
            is_pk = _column_is_primary_key(column, table_pk)
            has_primary_key = has_primary_key or is_pk
            if not isinstance(column.get("nullable"), bool):
                violations.append(f"column '{label}' does not declare nullability")
            comment = column.get("comment") or comments.get(name)
            if not str(comment or "").strip():
                violations.append(f"column '{label}' has no comment")
            if name and not is_pk and name.lower() not in system_columns:
                mutable_columns.append(name)

        if not has_primary_key:
            violations.append("table has no primary key column")

        for required in rules.required_columns:
            if required not in column_names:
                violations.append(f"required column '{required}' is missing")

        if mutable_columns and not payload.get("immutable", False):
            triggers = _trigger_names(payload)
            if not any(re.search(rules.update_trigger_pattern, name) for name in triggers):
                violations.append(
                    "table has mutable business columns but no update-timestamp trigger"
                )
        return violations

    def _api_violations(self, payload: Mapping[str, Any], rules: ConventionRuleSet) -> list[str]:
        violations: list[str] = []
        paths = payload.get("paths")
        if not isinstance(paths, Mapping) or not paths:
            violations.append("api definition declares no paths")
            paths = {}

        api_types = {item.lower() for item in rules.api_types}
        write_method = rules.write_method.lower()
        for path, path_item in paths.items():
            match = API_PATH_PATTERN.match(str(path))
            if match is None:
                violations.append(
                    f"path '{path}' does not match /{{api_type}}/{{module}}/{{action}}"
                )
                action = str(path).rstrip("/").rsplit("/", maxsplit=1)[-1]
            else:
                action = match.group("action")
                if match.group("api_type").lower() not in api_types:
                    violations.append(
                        f"path '{path}' uses unknown api type '{match.group('api_type')}'"
                    )
            if not isinstance(path_item, Mapping):
                continue
            for method in HTTP_METHODS:
                if method not in path_item:
                    continue
                side_effecting = method in WRITE_ONLY_METHODS or rules.is_side_effecting(action)
                if side_effecting and method != write_method:
                    violations.append(
                        f"{method.upper()} {path}: side-effecting action must use "
                        f"{write_method.upper()}"
                    )

        components = payload.get("components")
        if not isinstance(components, Mapping):
            components = {}
        schemas = components.get("schemas")
        if not isinstance(schemas, Mapping):
            schemas = {}
        seen: set[str] = set()
        for ref in _iter_refs(payload):
            if ref in seen:
                continue
            seen.add(ref)
            if not ref.startswith(SCHEMA_REF_PREFIX) or ref[len(SCHEMA_REF_PREFIX):] not in schemas:
                violations.append(f"schema reference '{ref}' is not defined in components")

        for schema_name, schema in schemas.items():
            for location, name, spec in _iter_properties(str(schema_name), schema):
                if rules.is_status_field(name):
                    violations.extend(self._status_field_violations(location, spec))
        return violations

    def _schema_field_violations(
        self, payload: Mapping[str, Any], rules: ConventionRuleSet
    ) -> list[str]:
        violations: list[str] = []
        name = str(payload.get("name", "")).strip()
        if not re.match(rules.field_name_pattern, name):
            violations.append(f"field name '{name}' does not match naming pattern")
        if not str(payload.get("description", "")).strip():
            violations.append(f"field '{name}' has no description")
        if name and rules.is_status_field(name):
            violations.extend(self._status_field_violations(name, payload))
        return violations

    @staticmethod
    def _status_field_violations(location: str, spec: Mapping[str, Any]) -> list[str]:
        values = spec.get("enum")
        if not isinstance(values, list) or not values:
            return [f"status field '{location}' declares no enumerated values"]
        description = str(spec.get("description", ""))
        undocumented = [str(value) for value in values if str(value) not in description]
        if undocumented:
            return [
                f"status field '{location}' description does not document values: "
                + ", ".join(undocumented)
            ]
        return []
