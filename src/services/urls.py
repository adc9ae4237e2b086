import logging
from urllib.parse import parse_qs, urlparse, urlunparse

import tldextract

logger = logging.getLogger(__name__)

_extract = tldextract.TLDExtract(suffix_list_urls=())


def _with_scheme(url: str) -> str:
    url = url.strip()
    if url.startswith(("http://", "https://", "//")):
        return url
    return "http://" + url


def _unwrap_google_translate(url: str) -> str:
    parsed = urlparse(_with_scheme(url))
    if parsed.hostname == "translate.google.com" and parsed.path.startswith("/translate"):
        original = parse_qs(parsed.query).get("u")
        if original:
            return original[0]
    return url


def extract_domain(url: str, with_subdomain: bool = False, resolve_google_translate: bool = True) -> str:
    if not url:
        return url

    try:
        target = url.strip()
        if resolve_google_translate:
            target = _unwrap_google_translate(target)

        hostname = urlparse(_with_scheme(target)).hostname or ""
        if not hostname:
            return url

        if with_subdomain:
            return hostname[4:] if hostname.startswith("www.") else hostname

        ext = _extract(hostname)
        if ext.domain and ext.suffix:
            return f"{ext.domain}.{ext.suffix}"
        return ext.domain or url
    except ValueError as e:
        logger.debug(f"Could not extract domain from {url!r}: {e}")
        return url


def normalize_url(url: str, remove_params: bool = True) -> str:
    """Drop the fragment (and optionally the query) so links to one page compare equal."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url

    query = "" if remove_params else parsed.query
    path = parsed.path or "/"
    return urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path, parsed.params, query, ""))
