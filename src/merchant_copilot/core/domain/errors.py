"""Exception hierarchy for the turn pipeline."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from merchant_copilot.core.domain.models import SkillResult


class CopilotError(Exception):
    """Base class for all merchant_copilot errors."""


class ConfigurationError(CopilotError):
    """Missing profile or invalid configuration."""


class PlanValidationError(CopilotError):
    """A constructed plan is not a DAG or references unknown task ids."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class CircularDependencyError(CopilotError):
    """
    Raised by the scheduler when no pending task is ready.

    Either the plan contains a cycle or a task depends on an id that is not
    part of the plan. Results completed before the abort stay available.
    """

    def __init__(self, completed: list["SkillResult"], pending: list[str]):
        super().__init__(
            "Circular dependency detected or missing dependencies "
            f"(pending: {', '.join(sorted(pending))})"
        )
        self.completed = completed
        self.pending = pending


class UnknownSkillError(CopilotError):
    """A task names an action with no registered skill."""


class LLMServiceError(CopilotError):
    """Text generation failed after all retry attempts."""
