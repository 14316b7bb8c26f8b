"""Claude-backed step planner and bug analyzer (Anthropic Messages API)."""

import json
import logging
from collections.abc import Mapping

import aiohttp
from pydantic import ValidationError

from aiworkflow.scoped_e2e.errors import BugAnalysisError, StepPlanningError
from aiworkflow.scoped_e2e.models.agent_config import ClaudeConfig
from aiworkflow.scoped_e2e.models.test_step import Action, StepStatus, TestStep
from aiworkflow.scoped_e2e.providers.base import BugAnalysis, BugAnalyzer, StepPlanner

logger = logging.getLogger(__name__)

PLAN_PROMPT = """You are a senior QA engineer planning E2E test steps for one feature of a web application.

## Page under test
{route}

## Feature context
{flow_context}

## Current page state
{page_snapshot}

## Your task
Plan the browser steps that verify this feature works: pages load, buttons
respond, forms submit and data appears or updates after each operation.

Generate at most {step_budget} steps.

Respond ONLY with JSON in this format:
{{
  "steps": [
    {{"action": "CLICK", "target": "button#add-new", "description": "Click the add button"}},
    {{"action": "TYPE", "target": "input[name='name']", "value": "Test User", "description": "Enter a name"}},
    {{"action": "ASSERT", "target": ".success-message", "description": "Verify the success message"}}
  ]
}}

Allowed actions: NAVIGATE, CLICK, TYPE, SELECT, ASSERT, WAIT, SCREENSHOT.

Selector rules:
- Prefer ids, data-testid and name attributes
- Then semantic selectors (button[type='submit'], a[href='/users'])
- Then text based selectors (button:has-text('Save'))
- Avoid class-only selectors and nth-child
"""

ANALYSIS_PROMPT = """You are a senior QA engineer analyzing the failures of an automated E2E test.
Decide whether the failed steps belong to the same bug and write ONE structured bug report.

## Test flow
{flow_context}

## All step results
{all_steps_summary}

## Failed step details
{failed_steps_detail}

## Output
Respond ONLY with JSON (no markdown code block):
{{
  "title": "Short plain-language bug title, at most 80 characters",
  "summary": "2-3 sentences for non-technical readers: which page, what was done, what was expected, what happened. No selectors, tags or timeouts.",
  "technicalDetail": "For developers and automated fixers: route and page components, the full operation sequence with each result, expected vs actual behavior, likely code locations.",
  "impact": "Business impact on users in 1-2 sentences",
  "suggestedFix": "Where a developer should start looking and likely fix directions"
}}
"""


def extract_json(text: str) -> str:
    """Pull the JSON document out of a model response.

    Handles fenced ```json blocks and free text surrounding a single object.
    """
    fence = text.find("```json")
    if fence >= 0:
        start = text.find("\n", fence) + 1
        end = text.find("```", start)
        return text[start:end if end >= 0 else None].strip()

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start : end + 1]
    return text


class ClaudeClient:
    """Minimal Anthropic Messages API client."""

    def __init__(self, config: ClaudeConfig) -> None:
        """Initialize client with configuration."""
        self.config = config
        self.base_url = config.base_url.rstrip("/")

    async def complete(self, prompt: str) -> str:
        """Send a single-turn prompt and return the text of the response.

        Raises:
            RuntimeError: On a non-200 response or a response without text

        """
        url = f"{self.base_url}/v1/messages"
        headers = {
            "x-api-key": self.config.api_key,
            "anthropic-version": self.config.anthropic_version,
            "content-type": "application/json",
        }
        payload = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        logger.info(f"Calling Claude API with model: {self.config.model}")

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, headers=headers, json=payload) as response:
                if response.status != 200:
                    text = await response.text()
                    raise RuntimeError(
                        f"Claude API request failed: {response.status} {text}"
                    )

                data: Mapping[str, object] = await response.json()

        text = _first_text_block(data)
        logger.info(f"Claude API response received ({len(text)} chars)")
        return text


def _first_text_block(data: Mapping[str, object]) -> str:
    content = data.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type", "text") == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    return text
    raise RuntimeError("Empty response from Claude API")


class ClaudeStepPlanner(StepPlanner):
    """Plans flow steps with Claude."""

    def __init__(self, client: ClaudeClient) -> None:
        """Initialize planner with a Claude client."""
        self.client = client

    async def plan_steps(
        self,
        route: str,
        flow_context: str,
        page_snapshot: str,
        step_budget: int,
    ) -> list[TestStep]:
        """Ask Claude for a plan.

        An API failure yields a two-step smoke plan for the route; a
        response that cannot be parsed yields no steps.
        """
        prompt = PLAN_PROMPT.format(
            route=route,
            flow_context=flow_context,
            page_snapshot=page_snapshot,
            step_budget=step_budget,
        )

        try:
            response = await self.client.complete(prompt)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to plan test steps: {e}")
            return default_steps(route)

        try:
            steps = parse_steps(response)
        except StepPlanningError as e:
            logger.error(f"Failed to parse test steps from AI response: {e}")
            return []

        logger.info(f"AI planned {len(steps)} test steps")
        return steps[:step_budget]


def parse_steps(response: str) -> list[TestStep]:
    """Parse the planner's JSON answer into planned steps.

    Raises:
        StepPlanningError: If the answer is not a valid step list

    """
    try:
        parsed = json.loads(extract_json(response))
    except json.JSONDecodeError as e:
        raise StepPlanningError(f"Response is not JSON: {e}") from e

    steps_data = parsed.get("steps") if isinstance(parsed, dict) else None
    if not isinstance(steps_data, list):
        raise StepPlanningError("Response has no 'steps' list")

    steps = []
    for index, item in enumerate(steps_data, start=1):
        if not isinstance(item, dict):
            raise StepPlanningError(f"Step {index} is not an object")
        try:
            action = Action(str(item.get("action", "")).upper())
        except ValueError as e:
            raise StepPlanningError(f"Step {index} has an unknown action") from e

        value = item.get("value")
        steps.append(
            TestStep(
                step_number=index,
                action=action,
                target=str(item.get("target") or ""),
                value=str(value) if value not in (None, "") else None,
                description=str(item.get("description") or ""),
                status=StepStatus.PLANNED,
            )
        )
    return steps


def default_steps(route: str) -> list[TestStep]:
    """Smoke plan used when the planner cannot reach the model."""
    return [
        TestStep(
            step_number=1,
            action=Action.NAVIGATE,
            target=route,
            description="Navigate to the page under test",
        ),
        TestStep(
            step_number=2,
            action=Action.ASSERT,
            target="body",
            description="Verify the page body is present",
        ),
    ]


class ClaudeBugAnalyzer(BugAnalyzer):
    """Summarizes failed steps into a structured bug with Claude."""

    def __init__(self, client: ClaudeClient) -> None:
        """Initialize analyzer with a Claude client."""
        self.client = client

    async def analyze(
        self,
        flow_context: str,
        all_steps_summary: str,
        failed_steps_detail: str,
    ) -> BugAnalysis:
        """Ask Claude for the five bug fields."""
        prompt = ANALYSIS_PROMPT.format(
            flow_context=flow_context,
            all_steps_summary=all_steps_summary,
            failed_steps_detail=failed_steps_detail,
        )

        try:
            response = await self.client.complete(prompt)
        except Exception as e:
            raise BugAnalysisError(f"Claude request failed: {e}") from e

        return parse_bug_analysis(response)


def parse_bug_analysis(response: str) -> BugAnalysis:
    """Parse the analyzer's JSON answer.

    Raises:
        BugAnalysisError: If the answer is not JSON or misses a field

    """
    try:
        parsed = json.loads(extract_json(response))
    except json.JSONDecodeError as e:
        raise BugAnalysisError(f"Bug analysis is not JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise BugAnalysisError("Bug analysis is not a JSON object")

    fields = {
        "title": parsed.get("title"),
        "summary": parsed.get("summary"),
        "technical_detail": parsed.get("technicalDetail", parsed.get("technical_detail")),
        "impact": parsed.get("impact"),
        "suggested_fix": parsed.get("suggestedFix", parsed.get("suggested_fix")),
    }
    missing = [
        name
        for name, value in fields.items()
        if not isinstance(value, str) or not value.strip()
    ]
    if missing:
        raise BugAnalysisError(f"Bug analysis is missing fields: {missing}")

    try:
        return BugAnalysis.model_validate(fields)
    except ValidationError as e:
        raise BugAnalysisError(f"Invalid bug analysis: {e}") from e
