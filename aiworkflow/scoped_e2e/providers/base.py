"""Abstract collaborators used by the orchestrator: planner, analyzer, browser."""

from abc import ABC, abstractmethod
from types import TracebackType

from pydantic import BaseModel, Field

from aiworkflow.scoped_e2e.models.test_result import E2ETestResult
from aiworkflow.scoped_e2e.models.test_scope import TestScope
from aiworkflow.scoped_e2e.models.test_step import TestStep


class BugAnalysis(BaseModel):
    """Structured bug description returned by a BugAnalyzer."""

    title: str = Field(..., min_length=1, description="Short bug title")
    summary: str = Field(..., min_length=1, description="Non-technical summary")
    technical_detail: str = Field(
        ..., min_length=1, description="Detail for engineers and automated fixers"
    )
    impact: str = Field(..., min_length=1, description="Business impact")
    suggested_fix: str = Field(..., min_length=1, description="Where to start fixing")


class StepPlanner(ABC):
    """Plans browser steps for one flow."""

    @abstractmethod
    async def plan_steps(
        self,
        route: str,
        flow_context: str,
        page_snapshot: str,
        step_budget: int,
    ) -> list[TestStep]:
        """Plan the steps for a flow.

        Args:
            route: Full URL of the page the flow starts on
            flow_context: Natural-language description of the flow
            page_snapshot: Textual snapshot of the current page
            step_budget: Maximum number of steps to return

        Returns:
            Planned steps in execution order, possibly empty

        """


class BugAnalyzer(ABC):
    """Summarizes the failed steps of a flow into one bug description."""

    @abstractmethod
    async def analyze(
        self,
        flow_context: str,
        all_steps_summary: str,
        failed_steps_detail: str,
    ) -> BugAnalysis:
        """Analyze a flow's failures.

        Raises:
            BugAnalysisError: If no usable analysis could be produced

        """


class BrowserSession(ABC):
    """An isolated browsing context owned by a single run.

    Executes steps against the page; use as an async context manager so
    the context is closed on every exit path.
    """

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Navigate the page to ``url`` and wait for it to settle."""

    @abstractmethod
    async def page_snapshot(self) -> str:
        """Return a textual description of the current page for the planner."""

    @abstractmethod
    async def login(self, app_url: str, scope: TestScope) -> bool:
        """Log in with the scope's credentials; return True on success."""

    @abstractmethod
    async def execute(self, step: TestStep) -> TestStep:
        """Execute a step and return it with status, error, duration and screenshot.

        Step failures are reported through the returned status, not raised.
        """

    @abstractmethod
    async def current_url(self) -> str:
        """Return the URL of the page."""

    @abstractmethod
    async def console_errors(self) -> str:
        """Return console errors collected so far, newline separated."""

    @abstractmethod
    async def close(self) -> None:
        """Release the browsing context."""

    async def __aenter__(self) -> "BrowserSession":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


class BrowserSessionFactory(ABC):
    """Creates isolated browser sessions, one per run."""

    @abstractmethod
    async def new_session(self) -> BrowserSession:
        """Open a new isolated session."""


class ResultConsumer(ABC):
    """Downstream consumer of finished runs (ticketing, notification, reports)."""

    @abstractmethod
    async def consume(self, result: E2ETestResult) -> None:
        """Handle a finished run; must not mutate anything but bug ticket fields."""
