"""
Scraping API Gateway Module

Async client for an HTTP scraping-proxy API that renders pages remotely.
The API accepts a target URL, a rendering flag, a proxy tier, a wait
condition and an optional JavaScript scenario, and answers with the rendered
HTML plus the results of any `evaluate` instructions.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from auction_scraper.config import GatewayConfig, config
from auction_scraper.errors import ConnectivityError, GatewayError, GatewayTimeoutError, NavigationError
from auction_scraper.fetchers.base import ActionKind, PageAction, ResultsPage, ResultsSelectors
from auction_scraper.models import ExecutionSession, FetchResult


logger = logging.getLogger(__name__)

# The API only accepts numeric session ids up to this bound
MAX_API_SESSION_ID = 10_000_000


def session_id_for(session: ExecutionSession) -> int:
    """Map a session token onto the API's numeric session id space."""
    return int(session.token[-12:], 16) % MAX_API_SESSION_ID


def build_scenario(actions: list[PageAction]) -> dict:
    """Translate page actions into the API's js_scenario instructions."""
    instructions: list[dict] = []
    for action in actions:
        if action.kind is ActionKind.CLICK:
            instructions.append({"click": action.selector})
        elif action.kind is ActionKind.WAIT:
            instructions.append({"wait": action.ms})
        elif action.kind is ActionKind.EVALUATE:
            instructions.append({"evaluate": action.script})
        elif action.kind is ActionKind.SCROLL:
            if action.selector:
                instructions.append({
                    "evaluate": (
                        f"(document.querySelector({json.dumps(action.selector)}) || document.body)"
                        ".scrollIntoView();"
                    )
                })
            else:
                instructions.append({"scroll_y": 100000})
    return {"instructions": instructions}


class ScrapingApiConnection:
    """A connection to the scraping API bound to one execution session."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: ExecutionSession,
        settings: GatewayConfig,
    ):
        self._client = client
        self._session = session
        self._settings = settings

    def _params(self, url: str) -> dict:
        params = {
            "api_key": self._settings.api_key,
            "url": url,
            "render_js": "true",
            "premium_proxy": "true" if self._settings.premium_proxy else "false",
            "country_code": self._settings.country_code,
            "block_ads": "true" if self._settings.block_ads else "false",
            "json_response": "true",
            "session_id": str(session_id_for(self._session)),
        }
        profile = self._session.fingerprint
        if profile is not None:
            params["window_width"] = str(profile.viewport_width)
            params["window_height"] = str(profile.viewport_height)
        return params

    async def fetch(
        self,
        url: str,
        actions: list[PageAction] | None = None,
        wait_for: str | None = None,
        timeout: float | None = None,
    ) -> FetchResult:
        """
        Render a URL through the API.

        Args:
            url: Target page
            actions: Optional in-page scenario
            wait_for: CSS selector to wait for before returning
            timeout: Request timeout in seconds

        Returns:
            FetchResult with rendered HTML and evaluate results
        """
        params = self._params(url)
        if actions:
            params["js_scenario"] = json.dumps(build_scenario(actions))
        if wait_for:
            params["wait_for"] = wait_for
        if timeout:
            # The API answers 400 above its own ceiling
            params["timeout"] = str(min(int(timeout * 1000), self._settings.api_max_timeout_ms))

        start_time = time.time()
        try:
            response = await self._client.get(self._settings.api_url, params=params, timeout=timeout)
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"Scraping API timed out for {url}") from e
        except httpx.ConnectError as e:
            raise ConnectivityError(f"Scraping API unreachable: {e}") from e

        if response.status_code in (401, 402):
            raise ConnectivityError(f"Scraping API rejected credentials ({response.status_code})")
        if not response.is_success:
            raise GatewayError(response.status_code, response.text[:200])

        payload = response.json()
        status_code = int(payload.get("initial-status-code") or 200)
        if status_code == 403 or status_code >= 500:
            raise GatewayError(status_code, f"target answered {status_code} for {url}")

        html = payload.get("body") or ""
        if not html:
            raise NavigationError(f"Navigation failed: empty body for {url}")

        report = payload.get("js_scenario_report") or {}
        if report:
            logger.debug(f"Scenario execution: {report.get('status', 'completed')}")

        return FetchResult(
            url=url,
            html=html,
            status_code=status_code,
            action_results=list(payload.get("evaluate_results") or []),
            response_time=time.time() - start_time,
        )

    async def open_results_page(
        self,
        url: str,
        selectors: ResultsSelectors,
        timeout: float | None = None,
    ) -> Optional[ResultsPage]:
        # Scenarios run remotely in one shot; there is no live page to drive
        return None


class ScrapingApiGateway:
    """
    Gateway backed by the scraping-proxy API.

    Example:
        gateway = ScrapingApiGateway()
        async with gateway.connect(session) as conn:
            result = await conn.fetch("https://example.com/listing/1")
    """

    name = "api"

    def __init__(self, settings: GatewayConfig | None = None):
        """
        Initialize the gateway.

        Args:
            settings: Gateway settings (default from config)
        """
        self._settings = settings or config.gateway

    def ensure_credentials(self) -> None:
        if not self._settings.api_key:
            raise ConnectivityError("SCRAPER_GATEWAY_API_KEY is required for the api backend")

    @asynccontextmanager
    async def connect(self, session: ExecutionSession) -> AsyncIterator[ScrapingApiConnection]:
        headers = session.fingerprint.headers() if session.fingerprint is not None else {}
        async with httpx.AsyncClient(headers=headers, follow_redirects=True) as client:
            yield ScrapingApiConnection(client, session, self._settings)
