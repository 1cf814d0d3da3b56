"""HTML parsing and URL extraction."""

from urllib.parse import urljoin, urlparse
from bs4 import BeautifulSoup
import structlog

logger = structlog.get_logger()

METADATA_NAMES = ("description", "author", "keywords", "date", "robots")


class Parser:
    """HTML parser for extracting links and metadata."""

    def parse(self, html: str, base_url: str) -> dict:
        """
        Parse HTML and extract links, title, and metadata.

        Args:
            html: Raw HTML content
            base_url: Base URL for resolving relative links

        Returns:
            Dict with title, links, and metadata
        """
        soup = BeautifulSoup(html, "lxml")

        title = None
        if soup.title and soup.title.string:
            title = soup.title.string.strip() or None

        # <base href> overrides the document URL for relative links
        base_tag = soup.find("base", href=True)
        if base_tag:
            base_url = urljoin(base_url, base_tag["href"])

        return {
            "title": title,
            "links": self._extract_links(soup, base_url),
            "metadata": self._extract_metadata(soup),
        }

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> list[str]:
        """Absolute http(s) links in document order, without fragments or repeats."""
        links = []
        seen = set()

        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if not href:
                continue

            absolute_url = urljoin(base_url, href).split("#")[0]
            if urlparse(absolute_url).scheme not in ("http", "https"):
                continue

            if absolute_url not in seen:
                seen.add(absolute_url)
                links.append(absolute_url)

        return links

    def _extract_metadata(self, soup: BeautifulSoup) -> dict[str, str]:
        """Extract metadata from page (OpenGraph, meta tags, canonical)."""
        metadata = {}

        for meta in soup.find_all("meta", property=True):
            prop = meta.get("property", "")
            content = meta.get("content")
            if prop.startswith("og:") and content:
                metadata[prop] = content

        for meta in soup.find_all("meta", attrs={"name": True}):
            name = meta.get("name", "").lower()
            content = meta.get("content")
            if content and name in METADATA_NAMES:
                metadata[name] = content

        canonical = soup.find("link", rel="canonical", href=True)
        if canonical:
            metadata["canonical"] = canonical["href"]

        return metadata
