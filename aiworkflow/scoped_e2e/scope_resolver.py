"""Resolve affected modules into an ordered, executable test scope."""

import logging
from collections.abc import Iterable, Sequence

from aiworkflow.scoped_e2e.change_analyzer import (
    all_module_ids,
    critical_module_ids,
    matches_any_pattern,
)
from aiworkflow.scoped_e2e.models.module_mapping import (
    LoginConfig,
    ModuleDefinition,
    ModuleMapping,
    TestFlowDefinition,
)
from aiworkflow.scoped_e2e.models.test_scope import (
    ResolvedTestFlow,
    TestScope,
    TriggerType,
)

logger = logging.getLogger(__name__)

ADMIN_ROLE = "ADMIN"

SMOKE_MODULE_ID = "smoke"
SMOKE_MODULE_NAME = "Basic smoke test"
SMOKE_FLOW = ResolvedTestFlow(
    flow_id="smoke-home",
    flow_name="Home page smoke check",
    description="Verify the application home page loads",
    route="/",
    priority=1,
    steps_hint="Open the home page -> confirm it loaded -> check the main UI elements exist",
    module_id=SMOKE_MODULE_ID,
    module_name=SMOKE_MODULE_NAME,
    required_role=ADMIN_ROLE,
)
SMOKE_DESCRIPTION = (
    "The affected modules could not be determined. Run a basic smoke test: "
    "verify the home page loads and its basic features work."
)

WHOLE_APP_MODULE_ID = "app"


class ScopeResolver:
    """Turns affected module ids into a prioritized TestScope."""

    def __init__(self, mapping: ModuleMapping) -> None:
        """Initialize resolver with the module mapping table."""
        self.mapping = mapping

    def resolve_scope(
        self,
        affected_module_ids: Iterable[str] | None,
        changed_files: Sequence[str] | None = None,
        trigger_type: TriggerType = "push",
    ) -> TestScope:
        """Resolve the flows to run for a set of affected modules.

        Flows that declare their own file patterns are only kept when
        ``changed_files`` is given and one of the files matches. Whenever
        nothing survives, the smoke scope is returned instead.

        Args:
            affected_module_ids: Module ids from the change analyzer
            changed_files: Changed paths for flow-level filtering, or None
                to keep every flow of the affected modules
            trigger_type: Trigger type recorded on a non-smoke scope

        Returns:
            A scope with at least one flow

        """
        module_ids = list(dict.fromkeys(affected_module_ids or ()))
        if not module_ids:
            logger.info("No affected modules, using the smoke test scope")
            return self.smoke_scope()

        known = set(all_module_ids(self.mapping))
        unknown = [module_id for module_id in module_ids if module_id not in known]
        if unknown:
            logger.warning(f"Module ids {unknown} are not in the mapping table, ignoring")

        wanted = set(module_ids)
        modules = [m for m in self.mapping.modules if m.id in wanted]
        if not modules:
            return self.smoke_scope()

        flows: list[ResolvedTestFlow] = []
        for module in modules:
            for flow in module.test_flows:
                if not self._flow_selected(flow, changed_files):
                    logger.debug(
                        f"Flow '{flow.name}' file patterns matched no changed file, skipping"
                    )
                    continue
                flows.append(_resolve_flow(module, flow))

        if not flows:
            logger.info(
                f"Every flow of modules {module_ids} was filtered out, "
                "using the smoke test scope"
            )
            return self.smoke_scope()

        # sorted() is stable: equal priorities keep module/declaration order
        flows = sorted(flows, key=lambda f: f.priority)

        contributing_ids = {flow.module_id for flow in flows}
        contributing = [m for m in modules if m.id in contributing_ids]
        role = determine_test_role(m.required_role for m in contributing)

        scope = self._build_scope(
            trigger_type=trigger_type,
            flows=flows,
            module_ids=[m.id for m in modules],
            module_names=[m.name for m in modules],
            description=build_scope_description(contributing, flows),
            role=role,
        )

        logger.info(
            f"Resolved scope: {len(modules)} modules, "
            f"{scope.total_flows} flows, role={role}"
        )
        return scope

    def resolve_deployment_scope(self) -> TestScope:
        """Resolve every flow of every critical module."""
        critical_ids = critical_module_ids(self.mapping)
        logger.info(f"Deployment trigger: resolving {len(critical_ids)} critical modules")
        return self.resolve_scope(critical_ids, None, trigger_type="deployment")

    def resolve_whole_app_scope(self, app_description: str = "") -> TestScope:
        """Scope with one synthetic flow covering the whole application."""
        flow = ResolvedTestFlow(
            flow_id="whole-app",
            flow_name="Whole application",
            description=app_description or "Explore and verify the application",
            route="",
            priority=1,
            steps_hint=(
                "Navigate to the main pages, exercise create/read/update/delete "
                "operations, submit forms and check that data is displayed"
            ),
            module_id=WHOLE_APP_MODULE_ID,
            module_name="Whole application",
            required_role=ADMIN_ROLE,
        )
        return self._build_scope(
            trigger_type="smoke",
            flows=[flow],
            module_ids=[WHOLE_APP_MODULE_ID],
            module_names=[flow.module_name],
            description=app_description or flow.description,
            role=ADMIN_ROLE,
        )

    def smoke_scope(self) -> TestScope:
        """Canonical single-flow smoke scope, logged in as ADMIN."""
        return self._build_scope(
            trigger_type="smoke",
            flows=[SMOKE_FLOW],
            module_ids=[SMOKE_MODULE_ID],
            module_names=[SMOKE_MODULE_NAME],
            description=SMOKE_DESCRIPTION,
            role=ADMIN_ROLE,
            default_credentials=True,
        )

    def _flow_selected(
        self, flow: TestFlowDefinition, changed_files: Sequence[str] | None
    ) -> bool:
        if not flow.file_patterns or not changed_files:
            return True
        return matches_any_pattern(changed_files, flow.file_patterns)

    def _build_scope(
        self,
        *,
        trigger_type: TriggerType,
        flows: Sequence[ResolvedTestFlow],
        module_ids: Sequence[str],
        module_names: Sequence[str],
        description: str,
        role: str,
        default_credentials: bool = False,
    ) -> TestScope:
        login: LoginConfig = self.mapping.login
        if default_credentials:
            username, password = login.test_username, login.test_password
        else:
            username, password = login.username_for(role), login.password_for(role)

        return TestScope(
            trigger_type=trigger_type,
            test_flows=tuple(flows),
            affected_module_ids=tuple(module_ids),
            affected_module_names=tuple(module_names),
            scope_description=description,
            test_role=role,
            login_url=login.url,
            login_username=username,
            login_password=password,
            login_username_field=login.username_field,
            login_password_field=login.password_field,
            login_submit_button=login.submit_button,
            login_success_redirect=login.success_redirect,
        )


def determine_test_role(required_roles: Iterable[str]) -> str:
    """Pick the role to log in as.

    ADMIN can reach every page, so it wins whenever any module needs it;
    otherwise the first role encountered is used.
    """
    roles = list(dict.fromkeys(required_roles))
    if ADMIN_ROLE in roles:
        return ADMIN_ROLE
    return roles[0] if roles else ADMIN_ROLE


def build_scope_description(
    modules: Sequence[ModuleDefinition], flows: Sequence[ResolvedTestFlow]
) -> str:
    """Describe the scope in natural language for the step planner."""
    selected = {(flow.module_id, flow.flow_id) for flow in flows}
    lines = [
        "## Test scope for this run",
        "",
        "Code change analysis found the following modules affected; "
        "they need to be tested end to end:",
        "",
    ]

    for module in modules:
        marker = " [critical module]" if module.critical else ""
        lines.append(f"### {module.name} ({module.id}){marker}")
        for flow in module.test_flows:
            if (module.id, flow.id) not in selected:
                continue
            lines.append(f"- **{flow.name}** ({flow.route}): {flow.description}")
            if flow.steps_hint:
                lines.append(f"  Steps hint: {flow.steps_hint}")
        lines.append("")

    lines.append(
        "Plan concrete test steps following the order and hints of the flows above."
    )
    lines.append(
        "Focus on: pages load, buttons are clickable, forms submit, "
        "data is displayed correctly."
    )
    return "\n".join(lines) + "\n"


def _resolve_flow(module: ModuleDefinition, flow: TestFlowDefinition) -> ResolvedTestFlow:
    return ResolvedTestFlow(
        flow_id=flow.id,
        flow_name=flow.name,
        description=flow.description,
        route=flow.route,
        priority=flow.priority,
        steps_hint=flow.steps_hint,
        module_id=module.id,
        module_name=module.name,
        required_role=module.required_role,
    )
