"""Exceptions raised inside the scoped E2E engine."""


class E2EAgentError(Exception):
    """Base class for engine errors."""


class MappingLoadError(E2EAgentError, ValueError):
    """The module mapping file is invalid."""


class LoginError(E2EAgentError):
    """Login did not reach an authenticated page."""


class StepPlanningError(E2EAgentError):
    """The step planner could not produce a plan."""


class BugAnalysisError(E2EAgentError):
    """The bug analyzer failed or returned an unusable response."""
