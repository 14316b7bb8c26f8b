"""Models for the module mapping table loaded from e2e-module-mapping.yaml."""

from pydantic import BaseModel, ConfigDict, Field


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class _MappingModel(BaseModel):
    """Base for mapping models: kebab-case YAML keys, immutable after load."""

    model_config = ConfigDict(
        alias_generator=_kebab, populate_by_name=True, frozen=True
    )


class RoleAccount(_MappingModel):
    """Credential override for a single role."""

    username: str | None = Field(default=None, description="Login username")
    password: str | None = Field(default=None, description="Login password")


class LoginConfig(_MappingModel):
    """Login page parameters and test credentials."""

    url: str = Field(default="/login", description="Login route")
    username_field: str = Field(
        default="input[name='username']", description="Username field selector"
    )
    password_field: str = Field(
        default="input[name='password']", description="Password field selector"
    )
    submit_button: str = Field(
        default="button[type='submit']", description="Submit button selector"
    )
    success_redirect: str = Field(
        default="/", description="URL marker expected after a successful login"
    )
    test_username: str = Field(default="admin", description="Default username")
    test_password: str = Field(default="admin", description="Default password")
    role_accounts: dict[str, RoleAccount] = Field(
        default_factory=dict, description="Per-role credential overrides"
    )

    def username_for(self, role: str) -> str:
        """Return the username to log in with for ``role``."""
        account = self.role_accounts.get(role)
        if account is not None and account.username is not None:
            return account.username
        return self.test_username

    def password_for(self, role: str) -> str:
        """Return the password to log in with for ``role``."""
        account = self.role_accounts.get(role)
        if account is not None and account.password is not None:
            return account.password
        return self.test_password


class TestFlowDefinition(_MappingModel):
    """A single user scenario inside a module."""

    __test__ = False

    id: str = Field(..., description="Flow identifier")
    name: str = Field(..., description="Human-readable flow name")
    description: str = Field(default="", description="What the flow verifies")
    route: str = Field(default="/", description="Route appended to the app URL")
    priority: int = Field(default=5, description="Lower runs earlier")
    steps_hint: str | None = Field(
        default=None, description="Free-text hint for the step planner"
    )
    file_patterns: list[str] | None = Field(
        default=None, description="Optional flow-level file globs"
    )


class ModuleDefinition(_MappingModel):
    """A business module and the flows that cover it."""

    id: str = Field(..., description="Module identifier (e.g. 'order')")
    name: str = Field(..., description="Module display name")
    critical: bool = Field(
        default=False, description="Always tested on deployment triggers"
    )
    file_patterns: list[str] = Field(
        default_factory=list, description="Source file globs owned by the module"
    )
    required_role: str = Field(default="ADMIN", description="Role needed to test")
    test_flows: list[TestFlowDefinition] = Field(
        default_factory=list, description="Ordered test flows"
    )


class ModuleMapping(_MappingModel):
    """Complete mapping table: login parameters and module definitions."""

    login: LoginConfig = Field(default_factory=LoginConfig)
    modules: list[ModuleDefinition] = Field(default_factory=list)
