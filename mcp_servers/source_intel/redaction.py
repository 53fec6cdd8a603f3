"""Redaction helpers for log lines and tool output.

Artifact URLs frequently carry signed query strings (CDN tokens, cache
busters with session ids). Anything that reaches a log goes through
`redact_url_brief`; structured output that keeps the query uses `redact_url`.
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "signature",
    "api-key",
    "api_key",
    "apikey",
)

_SENSITIVE_EXACT = {"auth", "sig", "key"}


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def redact_url(url: str) -> str:
    """Redact sensitive query values and userinfo, keep everything else.

    `data:` URLs are summarized (they can embed a whole source map).
    Returns the original URL unchanged when nothing needs redaction.
    """
    if not isinstance(url, str) or not url:
        return url
    if url.startswith("data:"):
        return f"data:<inline len={len(url)}>"
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    changed = False
    netloc = parts.netloc
    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True

    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        safe: list[tuple[str, str]] = []
        for k, v in pairs:
            if is_sensitive_key(k):
                safe.append((k, "<redacted>"))
                changed = True
            else:
                safe.append((k, v))
        if changed:
            query = urlencode(safe, safe="<>")

    if not changed:
        return url
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


def redact_url_brief(url: str) -> str:
    """Low-noise URL redaction (drops query+fragment; removes userinfo)."""
    if not isinstance(url, str) or not url:
        return url
    if url.startswith("data:"):
        return f"data:<inline len={len(url)}>"
    try:
        parts = urlsplit(url)
        netloc = parts.netloc.split("@", 1)[1] if "@" in parts.netloc else parts.netloc
        return urlunsplit((parts.scheme, netloc, parts.path, "", ""))
    except ValueError:
        return url
