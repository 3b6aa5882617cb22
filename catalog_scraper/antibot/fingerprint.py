"""Device fingerprints and stealth browser contexts."""
from __future__ import annotations

import json
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext

STEALTH_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
    "--window-size=1920,1080",
]


@dataclass
class DeviceFingerprint:
    """Coherent set of browser properties presented to the target site."""

    user_agent: str
    viewport_width: int
    viewport_height: int
    device_scale_factor: float
    locale: str
    timezone_id: str
    platform: str
    languages: tuple
    webgl_vendor: str
    webgl_renderer: str
    hardware_concurrency: int = 8
    device_memory: int = 8

    def to_playwright_context(self) -> Dict[str, Any]:
        """Convert to Playwright ``new_context`` kwargs."""
        return {
            "user_agent": self.user_agent,
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "device_scale_factor": self.device_scale_factor,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
            "extra_http_headers": {"Accept-Language": ",".join(self.languages)},
        }


class FingerprintPainter:
    """Builds and applies the automation-marker overrides for a context."""

    DESKTOP_FINGERPRINTS: List[DeviceFingerprint] = [
        DeviceFingerprint(
            user_agent=(
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
            ),
            viewport_width=1920,
            viewport_height=1080,
            device_scale_factor=1.0,
            locale="en-US",
            timezone_id="America/New_York",
            platform="Win32",
            languages=("en-US", "en"),
            webgl_vendor="Google Inc. (NVIDIA)",
            webgl_renderer="ANGLE (NVIDIA, NVIDIA GeForce GTX 1660 Direct3D11 vs_5_0 ps_5_0, D3D11)",
        ),
        DeviceFingerprint(
            user_agent=(
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
            ),
            viewport_width=1440,
            viewport_height=900,
            device_scale_factor=2.0,
            locale="en-US",
            timezone_id="America/Los_Angeles",
            platform="MacIntel",
            languages=("en-US", "en"),
            webgl_vendor="Google Inc. (Apple)",
            webgl_renderer="ANGLE (Apple, Apple M1 Pro, OpenGL 4.1)",
            hardware_concurrency=10,
            device_memory=16,
        ),
        DeviceFingerprint(
            user_agent=(
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36"
            ),
            viewport_width=1536,
            viewport_height=864,
            device_scale_factor=1.25,
            locale="en-GB",
            timezone_id="Europe/London",
            platform="Win32",
            languages=("en-GB", "en"),
            webgl_vendor="Google Inc. (Intel)",
            webgl_renderer="ANGLE (Intel, Intel(R) UHD Graphics 620 Direct3D11 vs_5_0 ps_5_0, D3D11)",
            hardware_concurrency=4,
        ),
    ]

    def random_fingerprint(self) -> DeviceFingerprint:
        return random.choice(self.DESKTOP_FINGERPRINTS)

    def build_init_script(self, fingerprint: DeviceFingerprint, *, canvas_noise: Optional[int] = None) -> str:
        """Render the init script applied to every page of the context.

        The script removes ``navigator.webdriver``, pins navigator properties
        to the fingerprint, spoofs the WebGL vendor/renderer and adds a small
        per-context noise to canvas reads.
        """
        noise = canvas_noise if canvas_noise is not None else random.randint(1, 3)
        languages = json.dumps(list(fingerprint.languages))
        return f"""
(() => {{
    Object.defineProperty(navigator, 'webdriver', {{ get: () => undefined }});
    Object.defineProperty(navigator, 'platform', {{ get: () => {json.dumps(fingerprint.platform)} }});
    Object.defineProperty(navigator, 'languages', {{ get: () => {languages} }});
    Object.defineProperty(navigator, 'hardwareConcurrency', {{ get: () => {fingerprint.hardware_concurrency} }});
    Object.defineProperty(navigator, 'deviceMemory', {{ get: () => {fingerprint.device_memory} }});
    Object.defineProperty(navigator, 'plugins', {{
        get: () => [
            {{ name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' }},
            {{ name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' }},
            {{ name: 'Native Client', filename: 'internal-nacl-plugin', description: '' }},
        ],
    }});
    window.chrome = window.chrome || {{ runtime: {{}} }};

    const originalQuery = window.navigator.permissions && window.navigator.permissions.query;
    if (originalQuery) {{
        window.navigator.permissions.query = (parameters) => (
            parameters.name === 'notifications'
                ? Promise.resolve({{ state: Notification.permission }})
                : originalQuery.call(window.navigator.permissions, parameters)
        );
    }}

    const spoofWebGL = (proto) => {{
        const getParameter = proto.getParameter;
        proto.getParameter = function (parameter) {{
            if (parameter === 37445) return {json.dumps(fingerprint.webgl_vendor)};
            if (parameter === 37446) return {json.dumps(fingerprint.webgl_renderer)};
            return getParameter.call(this, parameter);
        }};
    }};
    spoofWebGL(WebGLRenderingContext.prototype);
    if (window.WebGL2RenderingContext) spoofWebGL(WebGL2RenderingContext.prototype);

    const toDataURL = HTMLCanvasElement.prototype.toDataURL;
    HTMLCanvasElement.prototype.toDataURL = function (...args) {{
        const ctx = this.getContext('2d');
        if (ctx && this.width && this.height) {{
            const pixel = ctx.getImageData(0, 0, 1, 1);
            pixel.data[0] = (pixel.data[0] + {noise}) % 256;
            ctx.putImageData(pixel, 0, 0);
        }}
        return toDataURL.apply(this, args);
    }};
}})();
"""

    async def paint_context(self, context: BrowserContext, fingerprint: DeviceFingerprint) -> None:
        await context.add_init_script(self.build_init_script(fingerprint))


async def create_stealth_context(
    browser: Browser,
    *,
    fingerprint: DeviceFingerprint | None = None,
    **kwargs: Any,
) -> BrowserContext:
    """Create a browser context with fingerprint overrides applied once.

    Parameters
    ----------
    browser : Browser
        Playwright browser instance
    fingerprint : DeviceFingerprint, optional
        Specific fingerprint to use (random if not provided)
    **kwargs
        Additional context kwargs (``storage_state``, ``proxy``...)

    Returns
    -------
    BrowserContext
        Configured browser context
    """
    painter = FingerprintPainter()
    fingerprint = fingerprint or painter.random_fingerprint()
    context_kwargs = fingerprint.to_playwright_context()
    context_kwargs.update({key: value for key, value in kwargs.items() if value is not None})
    context = await browser.new_context(**context_kwargs)
    await painter.paint_context(context, fingerprint)
    return context
