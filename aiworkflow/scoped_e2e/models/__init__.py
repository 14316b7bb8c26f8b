"""Data models for module mappings, scopes, steps, results and configuration."""

from aiworkflow.scoped_e2e.models.agent_config import BrowserConfig, ClaudeConfig
from aiworkflow.scoped_e2e.models.module_mapping import (
    LoginConfig,
    ModuleDefinition,
    ModuleMapping,
    RoleAccount,
    TestFlowDefinition,
)
from aiworkflow.scoped_e2e.models.test_result import (
    BugFound,
    E2ETestRequest,
    E2ETestResult,
    RunState,
    Severity,
    TestRunStatus,
)
from aiworkflow.scoped_e2e.models.test_scope import (
    ResolvedTestFlow,
    TestScope,
    TriggerType,
)
from aiworkflow.scoped_e2e.models.test_step import Action, StepStatus, TestStep

__all__ = [
    "Action",
    "BrowserConfig",
    "BugFound",
    "ClaudeConfig",
    "E2ETestRequest",
    "E2ETestResult",
    "LoginConfig",
    "ModuleDefinition",
    "ModuleMapping",
    "ResolvedTestFlow",
    "RoleAccount",
    "RunState",
    "Severity",
    "StepStatus",
    "TestFlowDefinition",
    "TestRunStatus",
    "TestScope",
    "TestStep",
    "TriggerType",
]
