"""Content extraction using trafilatura."""

from typing import Optional
import trafilatura
import structlog

logger = structlog.get_logger()


class Extractor:
    """Extracts clean text content from HTML."""

    def __init__(self, include_tables: bool = True, include_comments: bool = False):
        self.include_tables = include_tables
        self.include_comments = include_comments

    def extract(self, html: str, url: str) -> Optional[str]:
        """
        Extract main text content from HTML.

        Args:
            html: Raw HTML content
            url: Source URL

        Returns:
            Extracted text or None if nothing could be extracted
        """
        try:
            text = trafilatura.extract(
                html,
                url=url,
                include_comments=self.include_comments,
                include_tables=self.include_tables,
            )
        except Exception as e:
            # trafilatura raises assorted lxml errors on malformed markup
            logger.error("extraction_error", url=url, error=str(e))
            return None

        if text:
            logger.debug("text_extracted", url=url, length=len(text))
        else:
            logger.debug("extraction_empty", url=url)
        return text
