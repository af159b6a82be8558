"""Shared HTTP page fetching with status-aware error categorisation.

A fetch makes a single attempt; retries and backoff are decided by the
monitor from the error category.
"""

import logging
import re
from typing import Optional

import httpx

from price_tracker.config import settings
from price_tracker.exceptions import ScrapeError

logger = logging.getLogger(__name__)

CAPTCHA_INDICATORS = re.compile(
    r"captcha|robot check|verify you are human|are you a robot|press and hold|"
    r"enter the characters you see",
    re.IGNORECASE,
)

# Page snippet kept on errors for pattern based classification
SNIPPET_LENGTH = 2000


def default_headers(user_agent: Optional[str] = None) -> dict[str, str]:
    """Browser-like request headers."""
    return {
        "User-Agent": user_agent or settings.http_user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
    }


class PageFetcher:
    """Fetches HTML pages with a lazily created httpx client."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout or settings.http_timeout_seconds

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=default_headers(),
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> str:
        """
        GET a page and return its body.

        Raises:
            ScrapeError: categorised as timeout, network, blocked, auth_required,
                not_found, rate_limit, captcha or unknown
        """
        client = await self._get_client()
        try:
            resp = await client.get(url)
        except httpx.TimeoutException as e:
            raise ScrapeError(f"Timed out fetching {url}: {e}", category="timeout") from e
        except httpx.TransportError as e:
            raise ScrapeError(f"Network error fetching {url}: {e}", category="network") from e

        body = resp.text
        snippet = body[:SNIPPET_LENGTH]
        sc = resp.status_code

        if "/blocked" in str(resp.url).lower():
            raise ScrapeError(f"Blocked redirect: {resp.url}", category="blocked", page_content=snippet, status_code=sc)
        if sc == 401:
            raise ScrapeError(f"HTTP 401 for {url}", category="auth_required", page_content=snippet, status_code=sc)
        if sc == 403:
            category = "captcha" if CAPTCHA_INDICATORS.search(body) else "blocked"
            raise ScrapeError(f"HTTP 403 for {url}", category=category, page_content=snippet, status_code=sc)
        if sc in (404, 410):
            raise ScrapeError(f"HTTP {sc} for {url}", category="not_found", page_content=snippet, status_code=sc)
        if sc == 429:
            raise ScrapeError(f"HTTP 429 for {url}", category="rate_limit", page_content=snippet, status_code=sc)
        if sc >= 500:
            raise ScrapeError(f"HTTP {sc} for {url}", category="network", page_content=snippet, status_code=sc)
        if not 200 <= sc < 300:
            raise ScrapeError(f"Unexpected HTTP {sc} for {url}", category="unknown", page_content=snippet, status_code=sc)

        if CAPTCHA_INDICATORS.search(snippet) and len(body) < 20000:
            # Challenge pages are small; real product pages mention captcha in scripts
            raise ScrapeError(f"Captcha page served for {url}", category="captcha", page_content=snippet, status_code=sc)

        logger.debug(f"Fetched {url} ({sc}, {len(body)} bytes)")
        return body
