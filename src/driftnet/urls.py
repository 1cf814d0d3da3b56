"""URL normalization and domain helpers."""

from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit
import tldextract

from driftnet.errors import InvalidURLError

ALLOWED_SCHEMES = frozenset({"http", "https"})
DEFAULT_PORTS = {"http": 80, "https": 443}

# Bundled public suffix snapshot only, never fetched over the network
_extract = tldextract.TLDExtract(suffix_list_urls=())


def normalize_url(url: str, base: Optional[str] = None) -> str:
    """
    Canonicalize a URL so one logical page always yields one key.

    Resolves against ``base``, lowercases scheme and host, drops default
    ports and fragments, sorts query parameters and strips the trailing
    slash of non-root paths (the root path is always ``/``).

    Args:
        url: Absolute or relative URL
        base: Base URL for resolving relative URLs

    Returns:
        Normalized absolute URL

    Raises:
        InvalidURLError: If the URL can't be parsed or isn't http(s)
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidURLError(str(url), "empty url")

    raw = url.strip()
    try:
        if base:
            raw = urljoin(base, raw)
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise InvalidURLError(url, str(e)) from e

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidURLError(url, "unsupported scheme")

    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidURLError(url, "missing host")

    netloc = host
    if ":" in host:
        netloc = f"[{host}]"
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    query = ""
    if parts.query:
        params = parse_qsl(parts.query, keep_blank_values=True)
        params.sort()
        query = urlencode(params, doseq=True)

    return urlunsplit((scheme, netloc, path, query, ""))


def get_hostname(url: str) -> str:
    """Hostname of a URL, lowercased; empty string if absent."""
    return (urlsplit(url).hostname or "").lower()


def get_origin(url: str) -> str:
    """Scheme + host (+ non-default port) of a URL."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    netloc = (parts.hostname or "").lower()
    if parts.port is not None and parts.port != DEFAULT_PORTS.get(scheme):
        netloc = f"{netloc}:{parts.port}"
    return f"{scheme}://{netloc}"


def get_registered_domain(hostname: str) -> str:
    """Registrable domain of a hostname (``blog.example.co.uk`` -> ``example.co.uk``)."""
    extracted = _extract(hostname)
    return extracted.registered_domain or hostname
