"""Tests for the HTTP fetcher."""

import asyncio
import aiohttp
import pytest
from aioresponses import aioresponses

from driftnet.errors import NonRetryableError, TransientFetchError
from driftnet.fetcher import Fetcher

URL = "https://example.com/page"


@pytest.mark.asyncio
class TestFetcher:
    """Test single-attempt fetching and failure classification."""

    async def test_fetch_success(self):
        with aioresponses() as m:
            m.get(URL, status=200, body="<html>ok</html>", content_type="text/html")
            async with Fetcher() as fetcher:
                response = await fetcher.fetch(URL)

        assert response.status == 200
        assert response.body == "<html>ok</html>"
        assert response.content_type == "text/html"
        assert response.url == URL

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status(self, status):
        with aioresponses() as m:
            m.get(URL, status=status)
            async with Fetcher() as fetcher:
                with pytest.raises(TransientFetchError) as exc_info:
                    await fetcher.fetch(URL)

        assert exc_info.value.status == status

    @pytest.mark.parametrize("status", [400, 403, 404, 410])
    async def test_non_retryable_status(self, status):
        with aioresponses() as m:
            m.get(URL, status=status)
            async with Fetcher() as fetcher:
                with pytest.raises(NonRetryableError) as exc_info:
                    await fetcher.fetch(URL)

        assert exc_info.value.status == status

    async def test_connection_error(self):
        with aioresponses() as m:
            m.get(URL, exception=aiohttp.ClientConnectionError("connection reset"))
            async with Fetcher() as fetcher:
                with pytest.raises(TransientFetchError):
                    await fetcher.fetch(URL)

    async def test_timeout(self):
        with aioresponses() as m:
            m.get(URL, exception=asyncio.TimeoutError())
            async with Fetcher() as fetcher:
                with pytest.raises(TransientFetchError):
                    await fetcher.fetch(URL)

    async def test_single_attempt(self):
        with aioresponses() as m:
            m.get(URL, status=503)
            m.get(URL, status=200, body="late")
            async with Fetcher() as fetcher:
                with pytest.raises(TransientFetchError):
                    await fetcher.fetch(URL)
                response = await fetcher.fetch(URL)

        assert response.body == "late"

    async def test_requires_context(self):
        with pytest.raises(RuntimeError):
            await Fetcher().fetch(URL)

    async def test_shared_session_not_closed(self):
        async with aiohttp.ClientSession() as session:
            async with Fetcher(session=session) as fetcher:
                assert fetcher.session is session
            assert not session.closed
