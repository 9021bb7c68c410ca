"""Browser device profile and Playwright context painting."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from playwright.async_api import Browser, BrowserContext

from catalog_etl.config import USER_AGENT


@dataclass
class DeviceProfile:
    """Device profile presented to the portal."""

    user_agent: str = USER_AGENT
    viewport_width: int = 1920
    viewport_height: int = 1080
    device_scale_factor: float = 1.0
    locale: str = "ar-SA"
    timezone_id: str = "Asia/Riyadh"
    platform: str = "Win32"
    accept_language: str = "ar,en-US;q=0.9,en;q=0.8"
    sec_ch_ua: str = '"Chromium";v="122", "Not(A:Brand";v="24", "Google Chrome";v="122"'
    sec_ch_ua_platform: str = '"Windows"'

    def to_playwright_context(self) -> Dict[str, Any]:
        """Convert to Playwright context kwargs."""
        return {
            "user_agent": self.user_agent,
            "viewport": {
                "width": self.viewport_width,
                "height": self.viewport_height,
            },
            "device_scale_factor": self.device_scale_factor,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
        }

    def browser_headers(self) -> Dict[str, str]:
        """Headers a same-origin XHR from this browser would carry."""
        return {
            "accept": "application/json, text/plain, */*",
            "accept-language": self.accept_language,
            "sec-ch-ua": self.sec_ch_ua,
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": self.sec_ch_ua_platform,
            "sec-fetch-dest": "empty",
            "sec-fetch-mode": "cors",
            "sec-fetch-site": "same-origin",
        }


DEFAULT_PROFILE = DeviceProfile()


def _init_script(profile: DeviceProfile) -> str:
    return f"""
    () => {{
        Object.defineProperty(navigator, 'webdriver', {{
            get: () => undefined,
        }});

        Object.defineProperty(navigator, 'platform', {{
            get: () => '{profile.platform}',
        }});

        Object.defineProperty(navigator, 'languages', {{
            get: () => ['ar', 'en-US', 'en'],
        }});

        window.chrome = window.chrome || {{ runtime: {{}} }};
    }}
    """


async def create_stealth_context(
    browser: Browser,
    *,
    profile: DeviceProfile | None = None,
    **kwargs: Any,
) -> BrowserContext:
    """Create a browser context painted with a device profile.

    Parameters
    ----------
    browser : Browser
        Playwright browser instance
    profile : DeviceProfile, optional
        Profile to apply (``DEFAULT_PROFILE`` if not provided)
    **kwargs
        Additional context kwargs

    Returns
    -------
    BrowserContext
        Configured browser context
    """
    profile = profile or DEFAULT_PROFILE

    context_kwargs = profile.to_playwright_context()
    context_kwargs.update(kwargs)

    context = await browser.new_context(**context_kwargs)
    await context.add_init_script(_init_script(profile))
    return context
