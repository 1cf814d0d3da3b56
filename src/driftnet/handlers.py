"""Generic HTML request handler."""

from typing import Optional
import structlog

from driftnet.extractor import Extractor
from driftnet.fetcher import Fetcher
from driftnet.models import CrawlRequest, CrawlResult, ScrapedContent
from driftnet.parser import Parser

logger = structlog.get_logger()

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


class HtmlRequestHandler:
    """
    Fetches a page, parses its links and metadata, and extracts its text.

    Non-HTML responses are returned without parsing and contribute no links.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        parser: Optional[Parser] = None,
        extractor: Optional[Extractor] = None,
        extract_text: bool = True,
        save_html: bool = False,
    ):
        """
        Initialize handler.

        Args:
            fetcher: Open Fetcher (used inside its async context)
            parser: Link and metadata parser
            extractor: Main-text extractor
            extract_text: Run the text extractor on each page
            save_html: Keep the raw HTML in ``CrawlResult.body``
        """
        self.fetcher = fetcher
        self.parser = parser or Parser()
        self.extractor = extractor or Extractor()
        self.extract_text = extract_text
        self.save_html = save_html

    async def handle(self, request: CrawlRequest) -> CrawlResult:
        response = await self.fetcher.fetch(
            request.url,
            headers=request.headers or None,
            proxy=request.user_data.get("proxy"),
        )

        result = CrawlResult(
            url=response.url,
            status_code=response.status,
            headers=response.headers,
            content_type=response.content_type,
            request=request,
            body=response.body if self.save_html else None,
        )

        if not response.content_type.startswith(HTML_CONTENT_TYPES):
            logger.debug("non_html_response", url=response.url, content_type=response.content_type)
            return result

        parsed = self.parser.parse(response.body, response.url)
        text = self.extractor.extract(response.body, response.url) if self.extract_text else None
        result.scraped_content = ScrapedContent(
            title=parsed["title"],
            text=text,
            links=parsed["links"],
            metadata=parsed["metadata"],
        )
        return result
