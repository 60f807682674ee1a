from __future__ import annotations

import fnmatch
import posixpath
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from warden.models import Decision, GitAction, GitActionKind, RejectionReason


@dataclass(frozen=True, slots=True)
class GitSafetyPolicy:
    sensitive_patterns: tuple[str, ...] = (".env", ".env.*", "*.pem", "*.key", "secrets/*")
    override_token: str = ""
    commit_message_pattern: str = ""

    def accepts_override(self, token: str | None) -> bool:
        if not token or not token.strip():
            return False
        if self.override_token:
            return token == self.override_token
        return True


def matches_sensitive_path(path: str, patterns: Iterable[str]) -> str | None:
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    basename = posixpath.basename(normalized)
    for pattern in patterns:
        if fnmatch.fnmatch(normalized, pattern) or fnmatch.fnmatch(basename, pattern):
            return pattern
    return None


class GitSafetyGuard:
    """Validates a proposed git action against the safety policy.

    Rules are evaluated in order and the first match wins, so a sensitive
    target is always reported ahead of any other problem with the action.
    """

    def __init__(self, policy: GitSafetyPolicy) -> None:
        self.policy = policy
        self._rules: list[Callable[[GitAction], Decision | None]] = [
            self._check_sensitive_files,
            self._check_force_push,
            self._check_hook_skip,
            self._check_empty_message,
            self._check_message_convention,
        ]

    def validate(self, action: GitAction) -> Decision:
        for rule in self._rules:
            decision = rule(action)
            if decision is not None:
                return decision
        return Decision.approve(detail=f"{action.kind.value} allowed")

    def _check_sensitive_files(self, action: GitAction) -> Decision | None:
        for target in action.targets:
            matched = matches_sensitive_path(target, self.policy.sensitive_patterns)
            if matched:
                return Decision.reject(
                    RejectionReason.SENSITIVE_FILE,
                    detail=f"'{target}' matches sensitive pattern '{matched}'",
                )
        return None

    def _check_force_push(self, action: GitAction) -> Decision | None:
        if action.kind is GitActionKind.PUSH and action.force:
            if not self.policy.accepts_override(action.override_token):
                return Decision.reject(
                    RejectionReason.FORCE_PUSH_NOT_ALLOWED,
                    detail="force push requires an explicit override token",
                )
        return None

    def _check_hook_skip(self, action: GitAction) -> Decision | None:
        if action.skip_hooks and not self.policy.accepts_override(action.override_token):
            return Decision.reject(
                RejectionReason.HOOK_SKIP_NOT_ALLOWED,
                detail="skipping hooks requires an explicit override token",
            )
        return None

    def _check_empty_message(self, action: GitAction) -> Decision | None:
        if action.kind is GitActionKind.COMMIT and not action.message.strip():
            return Decision.reject(RejectionReason.EMPTY_MESSAGE, detail="commit message is empty")
        return None

    def _check_message_convention(self, action: GitAction) -> Decision | None:
        pattern = self.policy.commit_message_pattern
        if action.kind is not GitActionKind.COMMIT or not pattern:
            return None
        subject = action.message.strip().splitlines()[0]
        if re.match(pattern, subject):
            return None
        return Decision.reject(
            RejectionReason.MESSAGE_CONVENTION,
            detail=f"commit subject '{subject}' does not match '{pattern}'",
        )
