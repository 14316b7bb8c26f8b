"""Tests for scope resolver."""

import pytest

from aiworkflow.scoped_e2e.change_analyzer import analyze_changed_files
from aiworkflow.scoped_e2e.models.module_mapping import ModuleMapping
from aiworkflow.scoped_e2e.scope_resolver import (
    SMOKE_FLOW,
    ScopeResolver,
    build_scope_description,
    determine_test_role,
)


@pytest.fixture
def mapping() -> ModuleMapping:
    """Create a mapping with role accounts and flow-level patterns."""
    return ModuleMapping.model_validate(
        {
            "login": {
                "url": "/login",
                "test-username": "admin",
                "test-password": "admin-pw",
                "role-accounts": {
                    "SALES": {"username": "sales", "password": "sales-pw"},
                    "HR": {"username": "hr"},
                },
            },
            "modules": [
                {
                    "id": "order",
                    "name": "Orders",
                    "critical": True,
                    "required-role": "SALES",
                    "file-patterns": ["**/views/order/**"],
                    "test-flows": [
                        {
                            "id": "order-create",
                            "name": "Create order",
                            "route": "/orders/new",
                            "priority": 2,
                        },
                        {
                            "id": "order-list",
                            "name": "Order list",
                            "route": "/orders",
                            "priority": 1,
                            "steps-hint": "Open the list and check rows",
                        },
                    ],
                },
                {
                    "id": "user",
                    "name": "Users",
                    "required-role": "HR",
                    "file-patterns": ["**/views/user/**"],
                    "test-flows": [
                        {
                            "id": "user-list",
                            "name": "User list",
                            "route": "/users",
                            "priority": 1,
                        },
                        {
                            "id": "user-export",
                            "name": "User export",
                            "route": "/users/export",
                            "priority": 3,
                            "file-patterns": ["**/UserExport*"],
                        },
                    ],
                },
                {
                    "id": "report",
                    "name": "Reports",
                    "critical": True,
                    "file-patterns": ["**/report/**"],
                    "test-flows": [
                        {
                            "id": "report-export",
                            "name": "Report export",
                            "route": "/reports",
                            "file-patterns": ["**/ReportExport*"],
                        }
                    ],
                },
                {
                    "id": "settings",
                    "name": "Settings",
                    "file-patterns": ["**/settings/**"],
                },
            ],
        }
    )


@pytest.fixture
def resolver(mapping: ModuleMapping) -> ScopeResolver:
    """Create resolver."""
    return ScopeResolver(mapping)


def test_resolve_scope_changed_order_view(
    mapping: ModuleMapping, resolver: ScopeResolver
) -> None:
    """A changed order view yields both order flows in priority order."""
    changed = ["views/order/X.java"]

    scope = resolver.resolve_scope(analyze_changed_files(mapping, changed), changed)

    assert scope.trigger_type == "push"
    assert [f.flow_id for f in scope.test_flows] == ["order-list", "order-create"]
    assert scope.affected_module_ids == ("order",)
    assert scope.affected_module_names == ("Orders",)
    assert scope.test_role == "SALES"
    assert scope.login_username == "sales"
    assert scope.login_password == "sales-pw"


def test_resolve_scope_no_modules_returns_smoke(resolver: ScopeResolver) -> None:
    """No affected modules yields the single smoke flow logged in as ADMIN."""
    for affected in ([], None):
        scope = resolver.resolve_scope(affected, ["README.md"])

        assert scope.trigger_type == "smoke"
        assert scope.test_flows == (SMOKE_FLOW,)
        assert scope.test_flows[0].route == "/"
        assert scope.test_role == "ADMIN"
        assert scope.login_username == "admin"
        assert scope.login_password == "admin-pw"


def test_resolve_scope_unknown_ids_return_smoke(resolver: ScopeResolver) -> None:
    """Ids missing from the mapping are treated as no match."""
    scope = resolver.resolve_scope(["ghost"])

    assert scope.trigger_type == "smoke"


def test_resolve_scope_ignores_unknown_ids(
    resolver: ScopeResolver, caplog: pytest.LogCaptureFixture
) -> None:
    """Unknown ids are logged and dropped; known ids still resolve."""
    with caplog.at_level("WARNING"):
        scope = resolver.resolve_scope(["ghost", "user"], None)

    assert scope.affected_module_ids == ("user",)
    assert "['ghost'] are not in the mapping table" in caplog.text


def test_resolve_scope_flow_patterns_filter_everything(
    resolver: ScopeResolver,
) -> None:
    """Flow patterns matching no changed file remove the flow; empty scope becomes smoke."""
    scope = resolver.resolve_scope(["report"], ["src/report/Other.java"])

    assert scope.trigger_type == "smoke"
    assert [f.flow_id for f in scope.test_flows] == ["smoke-home"]


def test_resolve_scope_flow_patterns_keep_matching_flow(
    resolver: ScopeResolver,
) -> None:
    """A flow with patterns is kept when one changed file matches."""
    scope = resolver.resolve_scope(["report"], ["src/report/ReportExportView.java"])

    assert [f.flow_id for f in scope.test_flows] == ["report-export"]


def test_resolve_scope_without_changed_files_keeps_pattern_flows(
    resolver: ScopeResolver,
) -> None:
    """Without a changed-file list, flows with patterns are kept."""
    scope = resolver.resolve_scope(["user"])

    assert [f.flow_id for f in scope.test_flows] == ["user-list", "user-export"]


def test_resolve_scope_multiple_modules_stable_order(resolver: ScopeResolver) -> None:
    """Equal priorities keep module order; ADMIN-free roles take the first role."""
    scope = resolver.resolve_scope(["order", "user"], ["src/views/user/UserView.java"])

    assert [f.flow_id for f in scope.test_flows] == [
        "order-list",
        "user-list",
        "order-create",
    ]
    assert scope.test_role == "SALES"


def test_resolve_scope_admin_wins(resolver: ScopeResolver) -> None:
    """ADMIN is chosen when any contributing module needs it."""
    scope = resolver.resolve_scope(["user", "report"])

    assert scope.test_role == "ADMIN"
    assert scope.login_username == "admin"


def test_resolve_scope_role_password_falls_back(resolver: ScopeResolver) -> None:
    """Role accounts without a password use the default password."""
    scope = resolver.resolve_scope(["user"])

    assert scope.test_role == "HR"
    assert scope.login_username == "hr"
    assert scope.login_password == "admin-pw"


def test_resolve_scope_module_without_flows(resolver: ScopeResolver) -> None:
    """A module without flows contributes nothing and yields smoke when alone."""
    assert resolver.resolve_scope(["settings"]).trigger_type == "smoke"

    scope = resolver.resolve_scope(["settings", "order"])
    assert scope.affected_module_ids == ("order", "settings")
    assert scope.test_role == "SALES"


def test_resolve_scope_is_deterministic(resolver: ScopeResolver) -> None:
    """Identical inputs resolve to equal scopes."""
    first = resolver.resolve_scope(["order", "user"], ["src/views/order/A.java"])
    second = resolver.resolve_scope(["order", "user"], ["src/views/order/A.java"])

    assert first == second


def test_resolve_deployment_scope(resolver: ScopeResolver) -> None:
    """Deployment scope covers every flow of the critical modules."""
    scope = resolver.resolve_deployment_scope()

    assert scope.trigger_type == "deployment"
    assert scope.affected_module_ids == ("order", "report")
    assert [f.flow_id for f in scope.test_flows] == [
        "order-list",
        "order-create",
        "report-export",
    ]


def test_resolve_deployment_scope_without_critical_modules() -> None:
    """Deployment without critical modules falls back to smoke."""
    resolver = ScopeResolver(ModuleMapping())

    assert resolver.resolve_deployment_scope().trigger_type == "smoke"


def test_resolve_whole_app_scope(resolver: ScopeResolver) -> None:
    """The whole-app scope has one flow on the application root."""
    scope = resolver.resolve_whole_app_scope("Order management system")

    assert scope.total_flows == 1
    assert scope.test_flows[0].route == ""
    assert scope.test_flows[0].description == "Order management system"
    assert scope.test_role == "ADMIN"


def test_determine_test_role() -> None:
    """determine_test_role prefers ADMIN, then the first role, then ADMIN."""
    assert determine_test_role(["SALES", "ADMIN"]) == "ADMIN"
    assert determine_test_role(["HR", "SALES"]) == "HR"
    assert determine_test_role([]) == "ADMIN"


def test_build_scope_description(mapping: ModuleMapping, resolver: ScopeResolver) -> None:
    """The description lists modules, critical markers and selected flows."""
    scope = resolver.resolve_scope(["order"])
    description = build_scope_description([mapping.modules[0]], scope.test_flows)

    assert "### Orders (order) [critical module]" in description
    assert "**Order list** (/orders)" in description
    assert "Steps hint: Open the list and check rows" in description
    assert description == scope.scope_description


def test_scope_json_hides_password(resolver: ScopeResolver) -> None:
    """The login password is excluded from serialized scopes."""
    dumped = resolver.resolve_scope(["order"]).model_dump(mode="json")

    assert "login_password" not in dumped
    assert dumped["login_username"] == "sales"
