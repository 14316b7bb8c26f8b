"""Playwright-backed browser sessions."""

import asyncio
import logging
import time
from typing import assert_never

from playwright.async_api import (
    Browser,
    BrowserContext,
    ConsoleMessage,
    Locator,
    Page,
    Playwright,
    async_playwright,
)

from aiworkflow.scoped_e2e.models.agent_config import BrowserConfig
from aiworkflow.scoped_e2e.models.test_scope import TestScope
from aiworkflow.scoped_e2e.models.test_step import Action, StepStatus, TestStep
from aiworkflow.scoped_e2e.providers.base import BrowserSession, BrowserSessionFactory

logger = logging.getLogger(__name__)

INTERACTIVE_ELEMENTS_SCRIPT = """
() => {
    const selectors = [
        'a', 'button', 'input', 'select', 'textarea', '[role="button"]', '[onclick]',
        'vaadin-button', 'vaadin-text-field', 'vaadin-integer-field',
        'vaadin-number-field', 'vaadin-password-field', 'vaadin-combo-box',
        'vaadin-select', 'vaadin-date-picker', 'vaadin-checkbox', 'vaadin-grid',
        'vaadin-tab'
    ].join(', ');
    const elements = [];
    document.querySelectorAll(selectors).forEach((el) => {
        elements.push({
            tag: el.tagName.toLowerCase(),
            type: el.type || '',
            id: el.id || '',
            name: el.name || '',
            label: el.label || el.getAttribute('aria-label') || '',
            text: (el.textContent || '').trim().substring(0, 80),
            placeholder: el.placeholder || '',
            href: el.href || '',
            disabled: el.disabled || el.hasAttribute('disabled') || false,
            visible: el.offsetParent !== null
        });
    });
    return JSON.stringify(elements, null, 2);
}
"""

DISMISS_OVERLAYS_SCRIPT = """
() => {
    document.querySelectorAll('vaadin-connection-indicator, [loading]')
        .forEach((el) => el.removeAttribute('loading'));
    document.querySelectorAll('.vaadin-overlay-content, vaadin-dialog-overlay')
        .forEach((el) => { if (el.parentNode) el.parentNode.removeChild(el); });
}
"""

# Vaadin fields keep the real <input> in their shadow root
SHADOW_FILL_SCRIPT = """
([selector, value]) => {
    let field = null;
    try {
        field = document.querySelector(selector);
    } catch (e) {
        return false;
    }
    if (!field) return false;

    const tag = field.tagName.toLowerCase();
    const input = (tag === 'input' || tag === 'textarea')
        ? field
        : field.inputElement || (field.shadowRoot && field.shadowRoot.querySelector('input'))
            || field.querySelector('input');
    if (!input) return false;

    input.value = value;
    input.dispatchEvent(new Event('input', { bubbles: true, composed: true }));
    input.dispatchEvent(new Event('change', { bubbles: true, composed: true }));
    if (field !== input) {
        field.value = value;
        field.dispatchEvent(new CustomEvent('value-changed', {
            detail: { value: value }, bubbles: true, composed: true
        }));
    }
    return true;
}
"""

OVERLAY_SETTLE_MS = 300


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters, marking the cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


def resolve_url(base_url: str, target: str) -> str:
    """Resolve a relative path against the application URL."""
    if target.startswith("/") and "://" not in target:
        return base_url.rstrip("/") + target
    return target


class PlaywrightSession(BrowserSession):
    """One browser context and page, owned by a single run."""

    def __init__(self, context: BrowserContext, page: Page, config: BrowserConfig) -> None:
        """Initialize session around an already opened page."""
        self.context = context
        self.page = page
        self.config = config
        self.base_url = ""
        self._console_errors: list[str] = []
        page.on("console", self._on_console)

    def _on_console(self, message: ConsoleMessage) -> None:
        if message.type == "error":
            self._console_errors.append(message.text)

    async def navigate(self, url: str) -> None:
        """Navigate and wait for network idle."""
        full_url = resolve_url(self.base_url, url)
        logger.debug(f"Navigating to: {full_url}")
        await self.page.goto(full_url, timeout=self.config.navigation_timeout_ms)
        await self.page.wait_for_load_state(
            "networkidle", timeout=self.config.navigation_timeout_ms
        )
        await self.page.wait_for_timeout(self.config.settle_ms)

    async def page_snapshot(self) -> str:
        """Visible text plus the interactive elements of the page."""
        text = await self.page.locator("body").inner_text()
        elements = await self.page.evaluate(INTERACTIVE_ELEMENTS_SCRIPT)
        return (
            "== Page text ==\n"
            f"{truncate(text, self.config.snapshot_text_limit)}\n\n"
            "== Interactive elements ==\n"
            f"{truncate(str(elements), self.config.snapshot_elements_limit)}\n"
        )

    async def login(self, app_url: str, scope: TestScope) -> bool:
        """Fill the login form and check that the browser left the login page."""
        self.base_url = app_url
        login_url = resolve_url(app_url, scope.login_url)
        logger.info(f"Logging in at {login_url} as {scope.login_username}")

        try:
            await self.navigate(login_url)
            await self._fill(scope.login_username_field, scope.login_username)
            await self._fill(scope.login_password_field, scope.login_password)
            await self._click(self.page.locator(scope.login_submit_button).first)
            await self.page.wait_for_load_state(
                "networkidle", timeout=self.config.navigation_timeout_ms
            )
        except Exception as e:  # noqa: BLE001
            logger.error(f"Login interaction failed: {e}")
            return False

        current = self.page.url
        success = is_logged_in(current, login_url, scope.login_success_redirect)
        if success:
            logger.info(f"Login succeeded, now at {current}")
        else:
            logger.warning(f"Login did not leave the login page: {current}")
        return success

    async def execute(self, step: TestStep) -> TestStep:
        """Run one step, screenshot the page and time it."""
        start = time.monotonic()
        step.status = StepStatus.RUNNING

        try:
            await self._perform(step)
            step.status = StepStatus.PASSED
        except Exception as e:  # noqa: BLE001
            step.status = StepStatus.FAILED
            step.error_message = str(e) or type(e).__name__
            logger.warning(f"Step {step.step_number} failed: {step.error_message}")

        try:
            step.screenshot_data = await self.page.screenshot(full_page=False)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Screenshot for step {step.step_number} failed: {e}")

        step.duration_ms = int((time.monotonic() - start) * 1000)
        return step

    async def _perform(self, step: TestStep) -> None:
        timeout = self.config.action_timeout_ms
        locator = self.page.locator(step.target).first if step.target else None

        match step.action:
            case Action.NAVIGATE:
                await self.navigate(step.target)
            case Action.CLICK:
                await self._click(_require(locator, step))
                await self.page.wait_for_timeout(self.config.settle_ms)
            case Action.TYPE:
                _require(locator, step)
                await self._fill(step.target, step.value or "")
            case Action.SELECT:
                await _require(locator, step).select_option(
                    step.value or "", timeout=timeout
                )
            case Action.WAIT:
                await _require(locator, step).wait_for(timeout=timeout)
                await self.page.wait_for_timeout(self.config.settle_ms)
            case Action.ASSERT:
                try:
                    await _require(locator, step).wait_for(
                        state="visible", timeout=self.config.assert_timeout_ms
                    )
                except Exception as e:
                    raise AssertionError(
                        f"Element not visible within "
                        f"{self.config.assert_timeout_ms}ms: {step.target}"
                    ) from e
            case Action.SCREENSHOT:
                pass
            case _:
                assert_never(step.action)

    async def _click(self, locator: Locator) -> None:
        """Click, dispatching the event directly when an overlay intercepts it."""
        try:
            await locator.click(timeout=self.config.action_timeout_ms)
        except Exception as e:
            if "intercepts pointer events" not in str(e):
                raise
            logger.warning("Click intercepted by an overlay, dismissing overlays")
            await self.page.evaluate(DISMISS_OVERLAYS_SCRIPT)
            await self.page.wait_for_timeout(OVERLAY_SETTLE_MS)
            await locator.dispatch_event("click")

    async def _fill(self, selector: str, value: str) -> None:
        """Fill a field, setting shadow-DOM inputs directly when fill() fails.

        Raises:
            RuntimeError: If neither fill() nor the shadow-DOM fallback worked

        """
        try:
            await self.page.locator(selector).first.fill(
                value, timeout=self.config.action_timeout_ms
            )
            return
        except Exception as e:
            logger.warning(f"fill() failed on {selector} ({e}), trying shadow DOM")
            filled = await self.page.evaluate(SHADOW_FILL_SCRIPT, [selector, value])
            if filled is not True:
                raise RuntimeError(f"Could not type into {selector}: {e}") from e
        await self.page.wait_for_timeout(OVERLAY_SETTLE_MS)

    async def current_url(self) -> str:
        """Return the URL of the page."""
        return self.page.url

    async def console_errors(self) -> str:
        """Return console errors collected so far."""
        return "\n".join(self._console_errors)

    async def close(self) -> None:
        """Close the browser context."""
        try:
            await self.context.close()
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to close browser context: {e}")


def _require(locator, step: TestStep):
    if locator is None:
        raise ValueError(f"{step.action.value} step has no target selector")
    return locator


def is_logged_in(current_url: str, login_url: str, success_redirect: str) -> bool:
    """Decide whether a login attempt succeeded from the resulting URL.

    The browser must have left the login page; a success redirect other
    than the root must also appear in the URL.
    """
    login_path = login_url.split("://", 1)[-1]
    login_path = login_path[login_path.find("/"):] if "/" in login_path else ""
    if login_path and login_path != "/" and login_path in current_url:
        return False
    if success_redirect and success_redirect != "/":
        return success_redirect in current_url
    return True


class PlaywrightBrowser(BrowserSessionFactory):
    """Shared Chromium instance handing out one context per run."""

    def __init__(self, config: BrowserConfig) -> None:
        """Initialize browser factory; Chromium is launched on first use."""
        self.config = config
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._browser is None:
                logger.info(f"Launching Chromium (headless={self.config.headless})")
                self._playwright = await async_playwright().start()
                launch_args = {
                    "headless": self.config.headless,
                    "timeout": self.config.launch_timeout_ms,
                }
                if self.config.executable_path:
                    logger.info(f"Using system Chromium: {self.config.executable_path}")
                    launch_args["executable_path"] = self.config.executable_path
                self._browser = await self._playwright.chromium.launch(**launch_args)
            return self._browser

    async def new_session(self) -> PlaywrightSession:
        """Open a fresh context and page."""
        browser = await self._ensure_browser()
        context = await browser.new_context(
            viewport={
                "width": self.config.viewport_width,
                "height": self.config.viewport_height,
            },
            locale=self.config.locale,
        )
        try:
            page = await context.new_page()
            page.set_default_timeout(self.config.action_timeout_ms)
            return PlaywrightSession(context, page, self.config)
        except BaseException:
            await context.close()
            raise

    async def close(self) -> None:
        """Shut down Chromium and the Playwright driver."""
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logger.info("Playwright resources released")
