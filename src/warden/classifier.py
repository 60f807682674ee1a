from __future__ import annotations

from collections.abc import Collection, Sequence

from warden.config import ConfigurationError
from warden.models import AgentProfile, Task

GENERALIST = "generalist"


class TaskClassifier:
    """Ranks agent profiles for a task by weighted capability-tag overlap."""

    def __init__(self, profiles: Sequence[AgentProfile]) -> None:
        if not profiles:
            raise ConfigurationError("Task classifier requires at least one agent profile.")
        if any(profile.priority < 0 for profile in profiles):
            raise ConfigurationError("Agent profile priority must not be negative.")
        specialists = [profile for profile in profiles if profile.name != GENERALIST]
        generalist = next(
            (profile for profile in profiles if profile.name == GENERALIST),
            AgentProfile(GENERALIST, ()),
        )
        self.profiles: tuple[AgentProfile, ...] = (*specialists, generalist)
        self.generalist = generalist

    @staticmethod
    def score(task: Task, profile: AgentProfile) -> float:
        matches = len(task.tags.intersection(profile.capabilities))
        return matches * profile.priority

    def classify(self, task: Task) -> list[tuple[AgentProfile, float]]:
        ranked = sorted(
            ((profile, self.score(task, profile)) for profile in self.profiles[:-1]),
            key=lambda item: item[1],
            reverse=True,
        )
        return [*ranked, (self.generalist, 0.0)]

    def best(self, task: Task, exclude: Collection[str] = ()) -> tuple[AgentProfile, float]:
        for profile, score in self.classify(task):
            if profile.name not in exclude:
                return profile, score
        return self.generalist, 0.0
