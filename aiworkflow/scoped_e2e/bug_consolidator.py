"""Consolidate the failed steps of one flow into a single bug record."""

import asyncio
import logging
from collections.abc import Sequence
from typing import assert_never

from aiworkflow.scoped_e2e.models.test_result import BugFound, Severity
from aiworkflow.scoped_e2e.models.test_scope import ResolvedTestFlow
from aiworkflow.scoped_e2e.models.test_step import Action, StepStatus, TestStep
from aiworkflow.scoped_e2e.providers.base import BugAnalysis, BugAnalyzer

logger = logging.getLogger(__name__)

BUG_TITLE_PREFIX = "[AI Test Agent]"
DEFAULT_ANALYSIS_TIMEOUT = 120.0


def step_severity(step: TestStep) -> Severity:
    """Severity implied by the action of a failed step."""
    match step.action:
        case Action.CLICK | Action.NAVIGATE:
            return Severity.HIGH
        case Action.TYPE | Action.SELECT | Action.ASSERT | Action.WAIT:
            return Severity.MEDIUM
        case Action.SCREENSHOT:
            return Severity.LOW
        case _:
            assert_never(step.action)


def consolidated_severity(failed_steps: Sequence[TestStep]) -> Severity:
    """Most severe severity among the failed steps."""
    return max(
        (step_severity(step) for step in failed_steps),
        key=lambda severity: severity.rank,
        default=Severity.LOW,
    )


def summarize_steps(steps: Sequence[TestStep]) -> str:
    """One line per step with its pass/fail marker, for the analyzer."""
    lines = []
    for step in steps:
        marker = "PASS" if step.status is StepStatus.PASSED else "FAIL"
        outcome = f"error: {step.error_message}" if step.error_message else "ok"
        lines.append(
            f"Step {step.step_number} [{marker}] {step.action.value}: "
            f"{step.description} - {outcome}"
        )
    return "\n".join(lines) + "\n"


def describe_failed_steps(failed_steps: Sequence[TestStep]) -> str:
    """Detailed listing of the failed steps."""
    return "".join(
        f"- Step {step.step_number} [{step.action.value}]: {step.description}\n"
        f"  Target: {step.target}\n"
        f"  Error: {step.error_message}\n"
        for step in failed_steps
    )


def build_flow_summary(flow: ResolvedTestFlow) -> str:
    """Flow metadata block handed to the analyzer."""
    return (
        f"Module: {flow.module_name}\n"
        f"Flow: {flow.flow_name}\n"
        f"Description: {flow.description}\n"
        f"Route: {flow.route}\n"
    )


def fallback_analysis(flow: ResolvedTestFlow, failed_details: str) -> BugAnalysis:
    """Deterministic description used when AI analysis is unavailable."""
    return BugAnalysis(
        title=f"{flow.flow_name} test failed",
        summary=(
            f'The automated test of "{flow.flow_name}" did not pass; '
            "a developer should take a look."
        ),
        technical_detail=failed_details or f"Flow {flow.flow_id} reported failed steps.",
        impact="The feature may be broken and block users.",
        suggested_fix=f"Check the code behind route {flow.route}.",
    )


class BugConsolidator:
    """Produces exactly one BugFound for a flow with failed steps."""

    def __init__(
        self,
        analyzer: BugAnalyzer | None,
        analysis_timeout: float = DEFAULT_ANALYSIS_TIMEOUT,
    ) -> None:
        """Initialize consolidator with an optional AI analyzer."""
        self.analyzer = analyzer
        self.analysis_timeout = analysis_timeout

    async def consolidate(
        self,
        flow: ResolvedTestFlow,
        flow_steps: Sequence[TestStep],
        failed_steps: Sequence[TestStep],
        page_url: str | None = None,
        console_errors: str = "",
    ) -> BugFound:
        """Merge the failed steps of ``flow`` into one bug record.

        Args:
            flow: Flow the steps belong to
            flow_steps: Every executed step of the flow, for context
            failed_steps: The failed subset, must not be empty
            page_url: Page URL at the time of failure
            console_errors: Browser console errors

        Returns:
            The consolidated bug

        """
        if not failed_steps:
            raise ValueError(f"Flow {flow.flow_id} has no failed steps to consolidate")

        failed_details = describe_failed_steps(failed_steps)
        analysis = await self._analyze(flow, summarize_steps(flow_steps), failed_details)

        screenshot = next(
            (step.screenshot_data for step in failed_steps if step.screenshot_data),
            None,
        )

        description = (
            f"Summary\n{analysis.summary}\n\n"
            f"User impact\n{analysis.impact}\n\n"
            f"Technical detail\n{analysis.technical_detail}\n\n"
            f"Suggested fix\n{analysis.suggested_fix}"
        )

        bug = BugFound(
            title=f"{BUG_TITLE_PREFIX} {analysis.title}",
            summary=analysis.summary,
            technical_detail=analysis.technical_detail,
            impact=analysis.impact,
            suggested_fix=analysis.suggested_fix,
            description=description,
            severity=consolidated_severity(failed_steps),
            step_number=failed_steps[0].step_number,
            flow_id=flow.flow_id,
            module_id=flow.module_id,
            page_url=page_url,
            console_errors=console_errors,
            expected_behavior=analysis.summary,
            actual_behavior=analysis.technical_detail,
            screenshot_data=screenshot,
        )

        logger.warning(
            f"Flow '{flow.flow_name}' had {len(failed_steps)} failed steps, "
            f"consolidated into 1 bug: {bug.title}"
        )
        return bug

    async def _analyze(
        self, flow: ResolvedTestFlow, steps_summary: str, failed_details: str
    ) -> BugAnalysis:
        if self.analyzer is None:
            return fallback_analysis(flow, failed_details)

        try:
            analysis = await asyncio.wait_for(
                self.analyzer.analyze(
                    build_flow_summary(flow), steps_summary, failed_details
                ),
                timeout=self.analysis_timeout,
            )
            return BugAnalysis.model_validate(analysis)
        except Exception as e:  # noqa: BLE001
            logger.warning(
                f"AI bug analysis failed for flow '{flow.flow_name}', "
                f"using fallback description: {type(e).__name__}: {e}"
            )
            return fallback_analysis(flow, failed_details)
