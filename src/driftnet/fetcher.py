"""HTTP fetcher with async support."""

import asyncio
from typing import NamedTuple, Optional
import aiohttp
import structlog

from driftnet.errors import NonRetryableError, TransientFetchError

logger = structlog.get_logger()


class FetchResponse(NamedTuple):
    url: str
    status: int
    body: str
    headers: dict[str, str]
    content_type: str


class Fetcher:
    """
    Async HTTP client wrapper.

    Makes exactly one attempt per call; retrying is the queue's job.
    Failures are classified so the engine can decide whether to retry.
    """

    def __init__(
        self,
        user_agent: str = "driftnet/0.1.0",
        timeout: float = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.user_agent = user_agent
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        """Create session on context enter."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close session on context exit."""
        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> Optional[aiohttp.ClientSession]:
        return self._session

    async def fetch(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        proxy: Optional[str] = None,
    ) -> FetchResponse:
        """
        Fetch a URL once.

        Args:
            url: The URL to fetch
            headers: Extra request headers (User-Agent, Cookie)
            proxy: Proxy URL for this request

        Returns:
            FetchResponse for a 2xx/3xx response

        Raises:
            TransientFetchError: On timeout, connection error or 5xx/429
            NonRetryableError: On other 4xx responses
        """
        if not self._session:
            raise RuntimeError("Fetcher must be used as async context manager")

        try:
            async with self._session.get(url, headers=headers, proxy=proxy, timeout=self.timeout) as response:
                status = response.status
                if status == 429 or status >= 500:
                    raise TransientFetchError(f"HTTP {status} for {url}", status=status)
                if status >= 400:
                    raise NonRetryableError(f"HTTP {status} for {url}", status=status)

                content = await response.text(errors="replace")
                logger.info("fetched_url", url=url, status=status, size=len(content))
                return FetchResponse(
                    url=str(response.url),
                    status=status,
                    body=content,
                    headers={k: v for k, v in response.headers.items()},
                    content_type=response.content_type or "",
                )

        except asyncio.TimeoutError as e:
            logger.warning("timeout", url=url)
            raise TransientFetchError(f"Timeout fetching {url}") from e

        except aiohttp.ClientError as e:
            logger.warning("fetch_error", url=url, error=str(e))
            raise TransientFetchError(f"{type(e).__name__} fetching {url}: {e}") from e
