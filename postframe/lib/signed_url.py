"""Signed URL utilities for dynamic image requests.

A signed URL carries a ``key`` query parameter equal to
``sha256(secret + hostname + pathname + canonical_query)``. Nothing is
stored server-side: verification recomputes the key from the URL itself.
"""

import hashlib
import hmac
from urllib.parse import parse_qs, quote, urlsplit, urlunsplit

KEY_PARAM = "key"

# Characters left unescaped by JavaScript's encodeURIComponent
_COMPONENT_SAFE = "-_.!~*'()"


def encode_component(value: str) -> str:
    """Percent-encode a query component the way encodeURIComponent does."""
    return quote(str(value), safe=_COMPONENT_SAFE)


def parse_query(query: str) -> dict[str, str]:
    """Parse a query string into a flat mapping.

    Repeated names are collapsed into a single comma-joined value, blank
    values are preserved.
    """
    parsed = parse_qs(query, keep_blank_values=True)
    return {name: ",".join(values) for name, values in parsed.items()}


def canonical_query(params: dict[str, str]) -> str:
    """Build a query string with pairs sorted so parameter order never matters."""
    pairs = [f"{encode_component(name)}={encode_component(value)}" for name, value in params.items()]
    return "&".join(sorted(pairs))


def generate_key(url: str, secret: str) -> str:
    """Derive the signing key for a URL.

    Raises ``ValueError`` if the URL cannot be parsed.
    """
    parts = urlsplit(url)
    query = canonical_query(parse_query(parts.query))
    # A relative URL has no hostname and hashes the literal "null"
    hostname = parts.hostname if parts.hostname is not None else "null"
    # The path is hashed exactly as written, percent-escapes included
    material = f"{secret}{hostname}{parts.path}{query}"
    return hashlib.sha256(material.encode()).hexdigest()


def strip_key(url: str) -> str:
    """Return the URL with any ``key`` parameters removed from its query."""
    parts = urlsplit(url)
    pairs = [
        pair for pair in parts.query.split("&")
        if pair and pair.split("=", 1)[0] != KEY_PARAM
    ]
    return urlunsplit(parts._replace(query="&".join(pairs)))


def sign(url: str, secret: str) -> str:
    """Append a ``key`` parameter to the URL.

    An existing key is discarded first, so re-signing a URL is safe.
    """
    url = strip_key(url)
    key = generate_key(url, secret)
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    query += f"{KEY_PARAM}={encode_component(key)}"
    return urlunsplit(parts._replace(query=query))


def verify(url: str, secret: str) -> bool:
    """Check a signed URL.

    Returns ``False`` for a missing, empty or wrong key, and for URLs that
    cannot be parsed.
    """
    try:
        parts = urlsplit(url)
        params = parse_query(parts.query)
    except ValueError:
        return False

    key = params.pop(KEY_PARAM, "")
    if not key:
        return False

    unsigned = urlunsplit(parts._replace(query=canonical_query(params)))
    try:
        expected = generate_key(unsigned, secret)
    except ValueError:
        return False

    return hmac.compare_digest(expected.encode(), key.encode())
