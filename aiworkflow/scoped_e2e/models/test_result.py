"""Models for E2E run requests, results and bugs."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from aiworkflow.scoped_e2e.models.test_step import TestStep

DEFAULT_MAX_STEPS = 30
DEFAULT_MAX_STEPS_PER_FLOW = 15
DEFAULT_TIMEOUT_SECONDS = 300


class TestRunStatus(str, Enum):
    """Overall status of a run."""

    __test__ = False

    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class RunState(str, Enum):
    """Orchestrator state machine positions."""

    CREATED = "CREATED"
    SESSION_OPENED = "SESSION_OPENED"
    LOGGED_IN = "LOGGED_IN"
    NAVIGATED = "NAVIGATED"
    STEPS_PLANNED = "STEPS_PLANNED"
    STEPS_EXECUTING = "STEPS_EXECUTING"
    FLOW_CONSOLIDATED = "FLOW_CONSOLIDATED"
    COMPLETED = "COMPLETED"
    TIMED_OUT = "TIMED_OUT"
    ERROR = "ERROR"


class Severity(str, Enum):
    """Bug severity."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        """Ordering key, higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class E2ETestRequest(BaseModel):
    """Request to run an AI E2E test against a deployed application."""

    app_url: str = Field(..., description="Base URL of the application under test")
    app_description: str = Field(default="", description="What the app does")
    build_number: str | None = Field(default=None)
    branch: str | None = Field(default=None)
    max_steps: int = Field(default=DEFAULT_MAX_STEPS)
    max_steps_per_flow: int = Field(default=DEFAULT_MAX_STEPS_PER_FLOW)
    timeout_seconds: int = Field(default=DEFAULT_TIMEOUT_SECONDS)
    triggered_by: str = Field(default="manual")

    @field_validator("app_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("max_steps", "max_steps_per_flow", "timeout_seconds", mode="before")
    @classmethod
    def _default_when_not_positive(cls, value: object, info: ValidationInfo) -> object:
        if isinstance(value, int) and value <= 0:
            return _NUMERIC_DEFAULTS[str(info.field_name)]
        return value

    @property
    def step_budget(self) -> int:
        """Maximum number of steps planned for a single flow."""
        return min(self.max_steps_per_flow, self.max_steps)


_NUMERIC_DEFAULTS = {
    "max_steps": DEFAULT_MAX_STEPS,
    "max_steps_per_flow": DEFAULT_MAX_STEPS_PER_FLOW,
    "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
}


class BugFound(BaseModel):
    """One consolidated bug for a flow that had failing steps."""

    title: str
    summary: str
    technical_detail: str
    impact: str
    suggested_fix: str
    description: str = Field(default="", description="Full composed description")
    severity: Severity
    step_number: int = Field(..., description="First failed step of the flow")
    flow_id: str | None = None
    module_id: str | None = None
    page_url: str | None = None
    console_errors: str = ""
    expected_behavior: str = ""
    actual_behavior: str = ""
    work_item_id: int | None = Field(
        default=None, description="Set by the ticketing consumer"
    )
    attachment_url: str | None = Field(
        default=None, description="Set by the ticketing consumer"
    )
    screenshot_data: bytes | None = Field(default=None, exclude=True, repr=False)


class E2ETestResult(BaseModel):
    """Complete outcome of one E2E run."""

    test_run_id: str
    app_url: str
    app_description: str = ""
    started_at: datetime
    completed_at: datetime | None = None
    total_duration_ms: int = 0

    steps: list[TestStep] = Field(default_factory=list)
    bugs_found: list[BugFound] = Field(default_factory=list)

    total_steps: int = 0
    passed_steps: int = 0
    failed_steps: int = 0
    status: TestRunStatus = TestRunStatus.RUNNING
    summary: str = ""
    state_history: list[RunState] = Field(default_factory=lambda: [RunState.CREATED])

    triggered_by: str | None = None
    build_number: str | None = None
    branch: str | None = None

    @property
    def state(self) -> RunState:
        """Current orchestrator state."""
        return self.state_history[-1]

    def transition(self, state: RunState) -> None:
        """Record a state machine transition."""
        self.state_history.append(state)

    def complete(
        self, status: TestRunStatus, summary: str, completed_at: datetime
    ) -> None:
        """Set the terminal status; a run can only be completed once."""
        if self.status is not TestRunStatus.RUNNING:
            raise RuntimeError(
                f"Run {self.test_run_id} already completed with {self.status.value}"
            )
        if status is TestRunStatus.RUNNING:
            raise ValueError("RUNNING is not a terminal status")
        self.status = status
        self.summary = summary
        self.completed_at = completed_at
        self.total_duration_ms = int(
            (completed_at - self.started_at).total_seconds() * 1000
        )
