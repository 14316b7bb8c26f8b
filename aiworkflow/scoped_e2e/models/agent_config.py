"""Configuration models for the AI and browser collaborators."""

from pydantic import BaseModel, Field


class ClaudeConfig(BaseModel):
    """Configuration for the Anthropic Messages API."""

    api_key: str = Field(..., description="Anthropic API key")
    model: str = Field(
        default="claude-sonnet-4-20250514", description="Model used for planning"
    )
    max_tokens: int = Field(default=4096, description="Max tokens per response")
    timeout_seconds: float = Field(default=60, description="Per-request timeout")
    base_url: str = Field(
        default="https://api.anthropic.com", description="Anthropic API base URL"
    )
    anthropic_version: str = Field(default="2023-06-01")


class BrowserConfig(BaseModel):
    """Configuration for the Playwright browser."""

    headless: bool = Field(default=True)
    executable_path: str | None = Field(
        default=None, description="System Chromium to use instead of the bundled one"
    )
    viewport_width: int = Field(default=1280)
    viewport_height: int = Field(default=720)
    locale: str = Field(default="en-US")
    launch_timeout_ms: int = Field(default=30000)
    navigation_timeout_ms: int = Field(default=15000)
    action_timeout_ms: int = Field(default=10000)
    assert_timeout_ms: int = Field(default=5000)
    settle_ms: int = Field(
        default=500, description="Pause after interactions for the UI to update"
    )
    snapshot_text_limit: int = Field(default=3000)
    snapshot_elements_limit: int = Field(default=4000)
