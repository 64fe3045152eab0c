from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)

SCRAPERAPI_ENDPOINT = "https://api.scraperapi.com/"


class RenderClient:
    """Client for a ScraperAPI-compatible service that executes page scripts.

    The service loads the URL in a real browser, optionally waits for a CSS
    selector, lets the page settle for `wait_ms`, and returns the DOM as HTML.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        *,
        endpoint: str = SCRAPERAPI_ENDPOINT,
    ) -> None:
        self.settings = settings
        self.client = client
        self.endpoint = endpoint

    async def render(
        self,
        url: str,
        *,
        wait_ms: Optional[int] = None,
        selector: Optional[str] = None,
        render_js: bool = True,
    ) -> str:
        self.settings.require("scraperapi_key")

        params = {
            "api_key": self.settings.scraperapi_key,
            "url": url,
        }
        if render_js:
            params["render"] = "true"
        if wait_ms:
            params["wait"] = str(wait_ms)
        if selector:
            params["wait_for_selector"] = selector

        logger.info(
            "Rendering %s (wait=%sms, selector=%s)", url, wait_ms or 0, selector or "-"
        )
        response = await self.client.get(
            self.endpoint,
            params=params,
            headers={"Accept": "text/html,application/xhtml+xml"},
            timeout=self.settings.render_timeout,
        )
        response.raise_for_status()
        return response.text
