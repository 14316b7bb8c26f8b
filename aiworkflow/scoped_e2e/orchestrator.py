"""Run orchestrator: login, execute each flow's AI-planned steps, consolidate bugs."""

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from aiworkflow.scoped_e2e.bug_consolidator import BugConsolidator
from aiworkflow.scoped_e2e.errors import LoginError, StepPlanningError
from aiworkflow.scoped_e2e.models.test_result import (
    E2ETestRequest,
    E2ETestResult,
    RunState,
    TestRunStatus,
)
from aiworkflow.scoped_e2e.models.test_scope import ResolvedTestFlow, TestScope
from aiworkflow.scoped_e2e.models.test_step import StepStatus, TestStep
from aiworkflow.scoped_e2e.providers.base import (
    BrowserSession,
    BrowserSessionFactory,
    ResultConsumer,
    StepPlanner,
)
from aiworkflow.scoped_e2e.scope_resolver import ScopeResolver

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class Deadline:
    """Absolute point in time after which no new flow or step may start.

    Checks are cooperative: a single slow collaborator call can overrun the
    deadline by up to its own operation timeout.
    """

    def __init__(self, timeout_seconds: float, clock: Clock = time.monotonic) -> None:
        """Start the countdown now."""
        self._clock = clock
        self.expires_at = clock() + timeout_seconds

    def expired(self) -> bool:
        """Return True once the current time is past the deadline."""
        return self._clock() > self.expires_at

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.expires_at - self._clock())


class _Run:
    """Mutable state of one run; never shared between runs."""

    def __init__(self, result: E2ETestResult, deadline: Deadline) -> None:
        self.result = result
        self.deadline = deadline
        self.timed_out = False
        self.flows_started = 0

    @property
    def run_id(self) -> str:
        return self.result.test_run_id


def build_flow_context(flow: ResolvedTestFlow, scope_description: str) -> str:
    """Describe a flow for the step planner."""
    return (
        f'You are testing the "{flow.flow_name}" feature of the '
        f'"{flow.module_name}" module.\n\n'
        f"Feature description: {flow.description}\n"
        f"Route under test: {flow.route}\n\n"
        f"Steps hint: {flow.steps_hint or 'no specific hint'}\n\n"
        "Important notes:\n"
        "- Prefer semantic selectors (text content, role, aria-label, name, data-testid)\n"
        "- Avoid class-only CSS selectors; generated class names change between builds\n"
        "- Login is already done, do not plan login steps\n\n"
        f"{scope_description}"
    )


class ScopedTestOrchestrator:
    """Drives one E2E run per call; safe to share between concurrent runs."""

    def __init__(
        self,
        browser: BrowserSessionFactory,
        planner: StepPlanner,
        consolidator: BugConsolidator,
        consumers: Sequence[ResultConsumer] = (),
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize orchestrator with its collaborators."""
        self.browser = browser
        self.planner = planner
        self.consolidator = consolidator
        self.consumers = list(consumers)
        self.clock = clock

    async def run_scoped_test(
        self, request: E2ETestRequest, scope: TestScope
    ) -> E2ETestResult:
        """Execute every flow of ``scope`` and return the run result.

        Never raises: login failures, timeouts and unexpected errors are
        reported through the result status and summary.
        """
        result = E2ETestResult(
            test_run_id=uuid.uuid4().hex[:8],
            app_url=request.app_url,
            app_description=request.app_description,
            started_at=datetime.now(UTC),
            triggered_by=request.triggered_by,
            build_number=request.build_number,
            branch=request.branch,
        )
        run = _Run(result, Deadline(request.timeout_seconds, self.clock))

        logger.info(
            f"[{run.run_id}] Scoped test run started: {request.app_url} | "
            f"trigger={scope.trigger_type} | modules={list(scope.affected_module_names)} | "
            f"flows={scope.total_flows}"
        )

        try:
            await self._execute(request, scope, run)
            status = self._final_status(run)
            summary = self._build_summary(request, scope, run)
        except LoginError as e:
            logger.error(f"[{run.run_id}] Login failed, aborting run: {e}")
            status = TestRunStatus.ERROR
            summary = f"Login failed, no flows were tested: {e}"
        except Exception as e:
            logger.exception(f"[{run.run_id}] Scoped test run failed")
            status = TestRunStatus.ERROR
            summary = f"Test execution error: {type(e).__name__}: {e}"

        result.transition(_terminal_state(status))
        result.complete(status, summary, datetime.now(UTC))

        logger.info(
            f"[{run.run_id}] Scoped test run finished in {result.total_duration_ms}ms: "
            f"{result.status.value} - {result.summary}"
        )

        await self._publish(result)
        return result

    async def run_test(
        self, request: E2ETestRequest, resolver: ScopeResolver
    ) -> E2ETestResult:
        """Unscoped run: one synthetic flow covering the whole application."""
        scope = resolver.resolve_whole_app_scope(request.app_description)
        whole_app_request = request.model_copy(
            update={"max_steps_per_flow": request.max_steps}
        )
        return await self.run_scoped_test(whole_app_request, scope)

    async def _execute(
        self, request: E2ETestRequest, scope: TestScope, run: _Run
    ) -> None:
        session = await self.browser.new_session()
        async with session:
            run.result.transition(RunState.SESSION_OPENED)
            logger.info(f"[{run.run_id}] Browser session opened")

            logger.info(f"[{run.run_id}] Logging in as role {scope.test_role}")
            if not await session.login(request.app_url, scope):
                raise LoginError(
                    f"could not log in as {scope.login_username} "
                    f"(role {scope.test_role})"
                )
            run.result.transition(RunState.LOGGED_IN)

            for flow in scope.test_flows:
                if run.deadline.expired():
                    logger.warning(
                        f"[{run.run_id}] Deadline exceeded before flow '{flow.flow_name}'"
                    )
                    run.timed_out = True
                    break

                await self._run_flow(session, request, scope, flow, run)

                if run.timed_out:
                    break

    async def _run_flow(
        self,
        session: BrowserSession,
        request: E2ETestRequest,
        scope: TestScope,
        flow: ResolvedTestFlow,
        run: _Run,
    ) -> None:
        result = run.result
        run.flows_started += 1
        url = request.app_url + flow.route
        logger.info(
            f"[{run.run_id}] === Flow: {flow.flow_name} ({flow.route}), "
            f"{run.deadline.remaining():.0f}s left ==="
        )

        await session.navigate(url)
        result.transition(RunState.NAVIGATED)
        snapshot = await session.page_snapshot()

        budget = request.step_budget
        try:
            planned = await self.planner.plan_steps(
                url, build_flow_context(flow, scope.scope_description), snapshot, budget
            )
        except StepPlanningError as e:
            logger.warning(f"[{run.run_id}] Planning failed for '{flow.flow_name}': {e}")
            planned = []
        planned = planned[:budget]
        result.transition(RunState.STEPS_PLANNED)

        if not planned:
            logger.warning(
                f"[{run.run_id}] No steps planned for flow '{flow.flow_name}', skipping"
            )
            return

        logger.info(
            f"[{run.run_id}] Flow '{flow.flow_name}' planned {len(planned)} steps"
        )
        result.transition(RunState.STEPS_EXECUTING)

        flow_steps: list[TestStep] = []
        failed_steps: list[TestStep] = []

        for step in planned:
            if run.deadline.expired():
                logger.warning(
                    f"[{run.run_id}] Deadline exceeded during flow '{flow.flow_name}'"
                )
                run.timed_out = True
                break

            result.total_steps += 1
            step.step_number = result.total_steps
            step.status = StepStatus.PLANNED
            logger.info(
                f"[{run.run_id}] Step {step.step_number} ({flow.flow_name}): "
                f"{step.action.value} - {step.description}"
            )

            executed = await session.execute(step)
            executed.step_number = step.step_number
            result.steps.append(executed)
            flow_steps.append(executed)
            self._record_step(executed, result, failed_steps)

        if failed_steps:
            page_url, console_errors = await self._capture_page_state(session, run)
            bug = await self.consolidator.consolidate(
                flow, flow_steps, failed_steps, page_url, console_errors
            )
            result.bugs_found.append(bug)
            # the bug now owns the screenshot
            for failed in failed_steps:
                failed.release_screenshot()
            result.transition(RunState.FLOW_CONSOLIDATED)

        logger.info(f"[{run.run_id}] === Flow '{flow.flow_name}' done ===")

    def _record_step(
        self, step: TestStep, result: E2ETestResult, failed_steps: list[TestStep]
    ) -> None:
        match step.status:
            case StepStatus.PASSED:
                result.passed_steps += 1
                step.release_screenshot()
            case StepStatus.FAILED:
                result.failed_steps += 1
                failed_steps.append(step)
            case StepStatus.SKIPPED:
                step.release_screenshot()
            case StepStatus.PLANNED | StepStatus.RUNNING:
                step.status = StepStatus.FAILED
                step.error_message = step.error_message or (
                    "Step executor returned without a final status"
                )
                result.failed_steps += 1
                failed_steps.append(step)

    async def _capture_page_state(
        self, session: BrowserSession, run: _Run
    ) -> tuple[str | None, str]:
        try:
            return await session.current_url(), await session.console_errors()
        except Exception as e:  # noqa: BLE001
            logger.warning(f"[{run.run_id}] Could not capture page state: {e}")
            return None, ""

    def _final_status(self, run: _Run) -> TestRunStatus:
        if run.timed_out:
            return TestRunStatus.TIMEOUT
        if run.result.failed_steps > 0:
            return TestRunStatus.FAILED
        return TestRunStatus.PASSED

    def _build_summary(
        self, request: E2ETestRequest, scope: TestScope, run: _Run
    ) -> str:
        result = run.result
        summary = (
            f"Scoped AI test ({scope.trigger_type}): "
            f"{result.passed_steps}/{result.total_steps} steps passed, "
            f"{run.flows_started}/{scope.total_flows} flows run, "
            f"{len(result.bugs_found)} bugs found | "
            f"build: {request.build_number or 'manual'} | "
            f"branch: {request.branch or 'N/A'} | "
            f"triggered by: {request.triggered_by} | "
            f"affected modules: {', '.join(scope.affected_module_names)}"
        )
        if run.timed_out:
            summary += f" | timed out after {request.timeout_seconds}s"
        return summary

    async def _publish(self, result: E2ETestResult) -> None:
        for consumer in self.consumers:
            try:
                await consumer.consume(result)
            except Exception:
                logger.exception(
                    f"[{result.test_run_id}] Result consumer "
                    f"{type(consumer).__name__} failed"
                )


def _terminal_state(status: TestRunStatus) -> RunState:
    match status:
        case TestRunStatus.TIMEOUT:
            return RunState.TIMED_OUT
        case TestRunStatus.ERROR:
            return RunState.ERROR
        case TestRunStatus.PASSED | TestRunStatus.FAILED:
            return RunState.COMPLETED
        case TestRunStatus.RUNNING:
            raise ValueError("RUNNING is not a terminal status")
