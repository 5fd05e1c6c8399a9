from __future__ import annotations

from hashlib import sha256
from urllib.parse import urlsplit, urlunsplit


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlsplit(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def normalize_url(url: str) -> str:
    """Reduce a URL to scheme + host + path; query and fragment are dropped."""
    parsed = urlsplit(url.strip())
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    return urlunsplit((scheme, netloc, path, "", ""))


def url_key(url: str) -> str:
    return sha256(normalize_url(url).encode("utf-8")).hexdigest()


def extract_domain(url: str) -> str:
    """Extract domain from URL for display."""
    try:
        return urlsplit(url).hostname or url
    except ValueError:
        return url


def normalize_domain(domain_or_url: str) -> str:
    """Lowercased hostname without a leading www."""
    domain = (domain_or_url or "").strip()
    if not domain:
        return ""
    if "://" in domain:
        domain = extract_domain(domain)
    else:
        domain = domain.split("/")[0].split("?")[0].split("#")[0]
    domain = domain.lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def domains_match(first: str, second: str) -> bool:
    if not first or not second:
        return False
    return normalize_domain(first) == normalize_domain(second)
