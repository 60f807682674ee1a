from warden.policy.conventions import (
    ArtifactConventionValidator,
    ConventionRuleSet,
    parse_artifact_kind,
)
from warden.policy.git_safety import GitSafetyGuard, GitSafetyPolicy, matches_sensitive_path

__all__ = [
    "ArtifactConventionValidator",
    "ConventionRuleSet",
    "GitSafetyGuard",
    "GitSafetyPolicy",
    "matches_sensitive_path",
    "parse_artifact_kind",
]
