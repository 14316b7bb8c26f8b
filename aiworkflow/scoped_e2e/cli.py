"""CLI entry point for scoped AI E2E runs."""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import typer

from aiworkflow.scoped_e2e.bug_consolidator import BugConsolidator
from aiworkflow.scoped_e2e.change_analyzer import (
    analyze_changed_files,
    detect_changed_files,
)
from aiworkflow.scoped_e2e.mapping_loader import load_module_mapping
from aiworkflow.scoped_e2e.models.agent_config import BrowserConfig, ClaudeConfig
from aiworkflow.scoped_e2e.models.test_result import (
    E2ETestRequest,
    E2ETestResult,
    TestRunStatus,
)
from aiworkflow.scoped_e2e.models.test_scope import TestScope
from aiworkflow.scoped_e2e.orchestrator import ScopedTestOrchestrator
from aiworkflow.scoped_e2e.providers.base import ResultConsumer
from aiworkflow.scoped_e2e.providers.claude import (
    ClaudeBugAnalyzer,
    ClaudeClient,
    ClaudeStepPlanner,
)
from aiworkflow.scoped_e2e.providers.playwright_browser import PlaywrightBrowser
from aiworkflow.scoped_e2e.providers.report import JsonReportWriter
from aiworkflow.scoped_e2e.scope_resolver import ScopeResolver

# Configure logging - force reconfiguration
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
    force=True,  # Force reconfiguration even if already set up
)
logger = logging.getLogger(__name__)

app = typer.Typer()


@app.command()
def scope(
    mapping_file: Path = typer.Option(..., help="Path to the module mapping YAML"),  # noqa: B008
    changed_file: list[str] | None = typer.Option(  # noqa: B008
        None, help="Changed file path (repeatable)"
    ),
    repo_path: Path | None = typer.Option(  # noqa: B008
        None, help="Git repository to diff instead of --changed-file"
    ),
    base_ref: str | None = typer.Option(None, help="Base git reference"),
    head_ref: str | None = typer.Option(None, help="Head git reference"),
    deployment: bool = typer.Option(
        False, help="Resolve every critical module (deployment trigger)"
    ),
) -> None:
    """Print the test scope resolved for a change as JSON."""
    resolver = _load_resolver(mapping_file)

    try:
        test_scope = asyncio.run(
            _resolve_scope(
                resolver, changed_file, repo_path, base_ref, head_ref, deployment
            )
        )
    except (RuntimeError, ValueError) as e:
        logger.error(f"Failed to resolve test scope: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(json.dumps(test_scope.model_dump(mode="json"), indent=2))


@app.command()
def run(  # noqa: PLR0913
    app_url: str = typer.Option(..., help="Base URL of the application under test"),
    mapping_file: Path = typer.Option(..., help="Path to the module mapping YAML"),  # noqa: B008
    changed_file: list[str] | None = typer.Option(  # noqa: B008
        None, help="Changed file path (repeatable)"
    ),
    repo_path: Path | None = typer.Option(  # noqa: B008
        None, help="Git repository to diff instead of --changed-file"
    ),
    base_ref: str | None = typer.Option(None, help="Base git reference"),
    head_ref: str | None = typer.Option(None, help="Head git reference"),
    deployment: bool = typer.Option(
        False, help="Test every critical module (deployment trigger)"
    ),
    unscoped: bool = typer.Option(
        False, help="Ignore the mapping and explore the whole application"
    ),
    app_description: str = typer.Option("", help="Short description of the app"),
    build_number: str | None = typer.Option(None, help="CI build number"),
    branch: str | None = typer.Option(None, help="Branch under test"),
    triggered_by: str = typer.Option("manual", help="Who or what started the run"),
    max_steps: int = typer.Option(30, help="Maximum steps per run"),
    max_steps_per_flow: int = typer.Option(15, help="Maximum steps per flow"),
    timeout_seconds: int = typer.Option(300, help="Run deadline in seconds"),
    claude_config: str = typer.Option(
        "{}", help="JSON configuration for the Claude API"
    ),
    browser_config: str = typer.Option(
        "{}", help="JSON configuration for the Playwright browser"
    ),
    output_dir: Path | None = typer.Option(  # noqa: B008
        None, help="Directory for JSON reports and bug screenshots"
    ),
) -> None:
    """Resolve the scope of a change and run it against the application."""
    logger.info("=" * 80)
    logger.info("Scoped AI E2E Test - Starting")
    logger.info("=" * 80)
    logger.info(f"App URL: {app_url}")
    logger.info(f"Mapping file: {mapping_file}")

    resolver = _load_resolver(mapping_file)

    try:
        claude = _create_claude_config(claude_config)
        browser = _create_browser_config(browser_config)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    request = E2ETestRequest(
        app_url=app_url,
        app_description=app_description,
        build_number=build_number,
        branch=branch,
        max_steps=max_steps,
        max_steps_per_flow=max_steps_per_flow,
        timeout_seconds=timeout_seconds,
        triggered_by=triggered_by,
    )

    consumers: list[ResultConsumer] = []
    if output_dir is not None:
        consumers.append(JsonReportWriter(output_dir, screenshots=True))

    try:
        result = asyncio.run(
            _run(
                request,
                resolver,
                claude,
                browser,
                consumers,
                changed_file,
                repo_path,
                base_ref,
                head_ref,
                deployment,
                unscoped,
            )
        )
    except (RuntimeError, ValueError) as e:
        logger.error(f"Failed to start test run: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    logger.info("=" * 80)
    logger.info(f"Run {result.test_run_id}: {result.status.value}")
    logger.info("=" * 80)
    for bug in result.bugs_found:
        logger.error(f"✗ [{bug.severity.value}] {bug.title}")
        if bug.page_url:  # pragma: no cover
            logger.error(f"  Page: {bug.page_url}")

    typer.echo(json.dumps(result.model_dump(mode="json"), indent=2))

    if result.status is not TestRunStatus.PASSED:
        logger.error(
            f"Test run {result.status.value}: "
            f"{result.failed_steps}/{result.total_steps} steps failed"
        )
        raise typer.Exit(code=1)


def _load_resolver(mapping_file: Path) -> ScopeResolver:
    try:
        mapping = load_module_mapping(mapping_file)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Failed to load module mapping: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    logger.info(f"Loaded {len(mapping.modules)} modules from {mapping_file}")
    return ScopeResolver(mapping)


async def _resolve_scope(
    resolver: ScopeResolver,
    changed_files: list[str] | None,
    repo_path: Path | None,
    base_ref: str | None,
    head_ref: str | None,
    deployment: bool,
) -> TestScope:
    """Pick the trigger from the options and resolve its scope."""
    if deployment:
        return resolver.resolve_deployment_scope()

    files = list(changed_files or [])
    if repo_path is not None:
        if not base_ref or not head_ref:
            raise ValueError("--repo-path requires --base-ref and --head-ref")
        files.extend(await detect_changed_files(repo_path, base_ref, head_ref))

    module_ids = analyze_changed_files(resolver.mapping, files)
    return resolver.resolve_scope(module_ids, files or None)


async def _run(  # noqa: PLR0913
    request: E2ETestRequest,
    resolver: ScopeResolver,
    claude: ClaudeConfig,
    browser_config: BrowserConfig,
    consumers: list[ResultConsumer],
    changed_files: list[str] | None,
    repo_path: Path | None,
    base_ref: str | None,
    head_ref: str | None,
    deployment: bool,
    unscoped: bool,
) -> E2ETestResult:
    client = ClaudeClient(claude)
    browser = PlaywrightBrowser(browser_config)
    orchestrator = ScopedTestOrchestrator(
        browser,
        ClaudeStepPlanner(client),
        BugConsolidator(ClaudeBugAnalyzer(client)),
        consumers,
    )

    try:
        if unscoped:
            return await orchestrator.run_test(request, resolver)

        test_scope = await _resolve_scope(
            resolver, changed_files, repo_path, base_ref, head_ref, deployment
        )
        logger.info(
            f"Scope: {test_scope.trigger_type}, {test_scope.total_flows} flows, "
            f"modules {list(test_scope.affected_module_names)}"
        )
        return await orchestrator.run_scoped_test(request, test_scope)
    finally:
        await browser.close()


def _create_claude_config(config_json: str) -> ClaudeConfig:
    """Create Claude configuration from JSON and the environment."""
    config_dict = _parse_json_option("claude-config", config_json)
    if "ANTHROPIC_API_KEY" in os.environ:
        config_dict["api_key"] = os.environ["ANTHROPIC_API_KEY"]
    if not config_dict.get("api_key"):
        raise ValueError("Claude API key missing: set ANTHROPIC_API_KEY or api_key")
    return ClaudeConfig(**config_dict)


def _create_browser_config(config_json: str) -> BrowserConfig:
    """Create browser configuration from JSON and the environment."""
    config_dict = _parse_json_option("browser-config", config_json)
    if os.environ.get("E2E_CHROMIUM_PATH"):
        config_dict["executable_path"] = os.environ["E2E_CHROMIUM_PATH"]
    return BrowserConfig(**config_dict)


def _parse_json_option(name: str, config_json: str) -> dict:
    try:
        config_dict = json.loads(config_json)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {name}: {e}")
    if not isinstance(config_dict, dict):
        raise ValueError(f"{name} must be a JSON object")
    return config_dict


if __name__ == "__main__":  # pragma: no cover
    app()
