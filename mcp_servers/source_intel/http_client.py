"""Default artifact fetcher over urllib.

Used when the caller injects no fetcher of its own. Scripts, maps and
manifests are fetched with:
- http/https only, host allowlist checked on the first request and every
  redirect hop, hop count bounded by `http_max_redirects`;
- gzip transfer accepted and inflated, with the size cap applied to the
  inflated body;
- the final URL after redirects reported back, so relative `sourceMappingURL`
  directives resolve against where the script was actually served from.
"""

from __future__ import annotations

import logging
import ssl
import urllib.parse
import zlib
from dataclasses import dataclass, field
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, HTTPSHandler, Request, build_opener

from .config import SourceIntelConfig
from .fetcher import FetchResult
from .redaction import redact_url_brief

_LOGGER = logging.getLogger("mcp.source_intel.http")

_USER_AGENT = "mcp-source-intel/1.0"


class HttpClientError(Exception):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class ArtifactResponse:
    url: str
    final_url: str
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def redirected(self) -> bool:
        return self.final_url != self.url


def _check_target(url: str, config: SourceIntelConfig, *, hop: str = "") -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError(f"Only http/https are supported{hop}")
    if not config.is_host_allowed(parsed.hostname or ""):
        raise HttpClientError(f"Host {parsed.hostname} is not in allowlist{hop}")


class _AllowlistRedirects(HTTPRedirectHandler):
    def __init__(self, config: SourceIntelConfig) -> None:
        super().__init__()
        self._config = config
        self.chain: list[str] = []

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        # urllib may pass relative URLs here; normalize against the previous URL.
        absolute = urllib.parse.urljoin(req.full_url, str(newurl))
        if len(self.chain) >= self._config.http_max_redirects:
            raise HttpClientError(f"More than {self._config.http_max_redirects} redirects", status=code)
        _check_target(absolute, self._config, hop=" (redirect)")
        self.chain.append(absolute)
        return super().redirect_request(req, fp, code, msg, headers, absolute)


def _inflate(body: bytes, encoding: str, limit: int) -> bytes:
    if encoding not in ("gzip", "x-gzip"):
        return body
    inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        out = inflater.decompress(body, limit + 1)
    except zlib.error as exc:
        raise HttpClientError(f"Corrupt gzip body: {exc}") from exc
    if len(out) > limit:
        raise HttpClientError(f"Response exceeds {limit} bytes")
    return out


def fetch_artifact(url: str, config: SourceIntelConfig) -> ArtifactResponse:
    """GET `url`; raises `HttpClientError` for policy violations, HTTP errors and oversize bodies."""
    _check_target(url, config)
    redirects = _AllowlistRedirects(config)
    opener = build_opener(redirects, HTTPSHandler(context=ssl.create_default_context()))
    req = Request(url, headers={"User-Agent": _USER_AGENT, "Accept-Encoding": "gzip"})
    try:
        with opener.open(req, timeout=config.http_timeout) as resp:
            body = resp.read(config.http_max_bytes + 1)
            if len(body) > config.http_max_bytes:
                raise HttpClientError(f"Response exceeds {config.http_max_bytes} bytes")
            headers = {str(k).lower(): str(v) for k, v in resp.headers.items()}
            body = _inflate(body, headers.get("content-encoding", "").strip().lower(), config.http_max_bytes)
            final_url = resp.geturl() or url
            status = int(resp.status)
    except HTTPError as exc:
        raise HttpClientError(f"HTTP {exc.code} for {urllib.parse.urlparse(url).path or '/'}", status=exc.code) from exc
    except (TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc

    if redirects.chain:
        _LOGGER.debug(
            "redirected url=%s final=%s hops=%d",
            redact_url_brief(url),
            redact_url_brief(final_url),
            len(redirects.chain),
        )
    return ArtifactResponse(url=url, final_url=final_url, status=status, headers=headers, body=body)


class HttpFetcher:
    """Blocking fetcher; the engine runs it off the event loop."""

    def __init__(self, config: SourceIntelConfig | None = None) -> None:
        self.config = config or SourceIntelConfig.from_env()

    def fetch(self, url: str) -> FetchResult:
        try:
            resp = fetch_artifact(url, self.config)
        except HttpClientError as exc:
            return FetchResult.failure(str(exc))
        return FetchResult.success(resp.body, headers=resp.headers, url=resp.final_url)
