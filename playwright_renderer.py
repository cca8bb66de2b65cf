#!/usr/bin/env python3
"""
Playwright-based page renderer for JavaScript-populated category pages.

Some storefronts inject their product grid from the browser after load, so
the raw HTML has no images in it. This module renders such pages in a
headless browser, scrolls down to trigger lazy loading and hands the final
HTML back to the scraper.
"""

import asyncio
from typing import Dict, Optional

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)


class RenderError(Exception):
    """Rendering a page failed."""

    def __init__(self, message: str, timed_out: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.timed_out = timed_out
        self.status = status


class PlaywrightRenderer:
    """Headless browser renderer for JavaScript-rendered sites."""

    # Headers Chromium manages itself
    BROWSER_MANAGED_HEADERS = {'user-agent', 'accept-encoding'}

    def __init__(self, logger, user_agent: str, extra_headers: Optional[Dict[str, str]] = None,
                 timeout_ms: int = 15_000, scroll_steps: int = 8, scroll_delay_ms: int = 350):
        """Initialize the renderer.

        Args:
            logger: Logger instance for debug output
            user_agent: User agent of the browser context
            extra_headers: Headers added to every request
            timeout_ms: Navigation timeout
            scroll_steps: How many times to scroll down after load
            scroll_delay_ms: Pause between scrolls
        """
        self.logger = logger
        self.user_agent = user_agent
        self.extra_headers = {
            k: v for k, v in (extra_headers or {}).items()
            if k.lower() not in self.BROWSER_MANAGED_HEADERS
        }
        self.timeout_ms = timeout_ms
        self.scroll_steps = scroll_steps
        self.scroll_delay_ms = scroll_delay_ms
        self.browser: Optional[Browser] = None
        self.playwright = None

    async def __aenter__(self):
        """Start Playwright and browser."""
        self.playwright = await async_playwright().start()
        self.browser = await self.playwright.chromium.launch(
            headless=True,
            args=[
                '--disable-blink-features=AutomationControlled',
                '--disable-dev-shm-usage',
                '--no-sandbox',
                '--disable-setuid-sandbox',
            ]
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close browser and Playwright."""
        if self.browser:
            await self.browser.close()
        if self.playwright:
            await self.playwright.stop()

    async def render(self, url: str) -> tuple[str, str]:
        """Render ``url`` and return (html, final_url).

        Raises:
            RenderError: on navigation timeout, browser error or HTTP error status
        """
        page = await self.browser.new_page(user_agent=self.user_agent)
        try:
            await page.set_extra_http_headers(self.extra_headers)
            response = await page.goto(url, wait_until='networkidle', timeout=self.timeout_ms)
            if response is not None and response.status >= 400:
                raise RenderError(f"HTTP {response.status}", status=response.status)

            # Smooth-scroll to bottom to trigger lazy-loading
            for _ in range(self.scroll_steps):
                await page.evaluate("window.scrollBy(0, window.innerHeight * 1.2)")
                await asyncio.sleep(self.scroll_delay_ms / 1000.0)

            # Wait for network to stabilize after scrolling
            try:
                await page.wait_for_load_state('networkidle', timeout=self.timeout_ms)
            except PlaywrightTimeoutError:
                self.logger.debug(f"Network did not settle after scrolling {url}")

            return await page.content(), page.url

        except PlaywrightTimeoutError as e:
            raise RenderError(f"Timed out rendering {url}: {e}", timed_out=True) from e
        except PlaywrightError as e:
            raise RenderError(f"Browser error rendering {url}: {e}") from e
        finally:
            await page.close()
