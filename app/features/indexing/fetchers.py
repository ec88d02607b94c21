"""
Source fetchers - turn a source locator into plain text for chunking.

- WebsiteFetcher: crawls one public page over the shared httpx client.
  Every URL, including each redirect target, must be http(s) on a
  standard port and resolve only to public addresses.
- DocumentFetcher: reads the text the dashboard extracted from an upload.
"""

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import httpx
from bs4 import BeautifulSoup

from app.core.config import settings
from app.features.database.models import SourceType
from app.services.http_client import http_client_manager
from app.shared.errors import ConfigurationError, SourceFetchError

logger = logging.getLogger("Chatbot.Indexing.Fetchers")

MAX_REDIRECTS = 5
ALLOWED_PORTS = (80, 443)
BLOCKED_HOSTS = frozenset({"localhost", "localhost.localdomain", "metadata.google.internal"})
STRIP_TAGS = ["script", "style", "noscript", "iframe", "svg", "template"]
BLOCK_TAGS = [
    "p", "div", "section", "article", "header", "footer", "li", "ul", "ol", "table", "tr",
    "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre", "dd", "dt", "figure",
]

Resolver = Callable[[str], Awaitable[List[str]]]


@dataclass
class FetchedContent:
    text: str
    title: Optional[str] = None


def normalize_url(url: str) -> str:
    """
    Canonical form used to de-duplicate sources.

    Lowercases scheme and host, drops the fragment and a trailing path
    slash, and sorts query parameters.
    """
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/") or "/"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ""))


def is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%")[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return ip.is_global and not ip.is_multicast


def check_url_shape(url: str) -> str:
    """
    Validate scheme, port and literal host of a URL.

    Returns:
        The hostname

    Raises:
        SourceFetchError: If the URL is not allowed
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise SourceFetchError(f"Invalid URL: {url}", retryable=False) from exc

    if parts.scheme not in ("http", "https"):
        raise SourceFetchError("Only HTTP and HTTPS URLs are allowed", retryable=False)
    if port is not None and port not in ALLOWED_PORTS:
        raise SourceFetchError("Only standard HTTP (80) and HTTPS (443) ports are allowed", retryable=False)

    host = (parts.hostname or "").lower()
    if not host:
        raise SourceFetchError(f"Invalid URL: {url}", retryable=False)
    if host in BLOCKED_HOSTS or host.endswith(".localhost") or host.endswith(".internal"):
        raise SourceFetchError("Local and internal hosts are not allowed", retryable=False)

    try:
        literal = ipaddress.ip_address(host)
    except ValueError:
        return host
    if not is_public_address(str(literal)):
        raise SourceFetchError("Private and reserved IP addresses are not allowed", retryable=False)
    return host


async def resolve_host(host: str) -> List[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise SourceFetchError(f"Failed to resolve hostname {host}") from exc
    return sorted({info[4][0] for info in infos})


def extract_page_text(html: str, max_chars: Optional[int] = None) -> FetchedContent:
    """
    Readable text and title of an HTML page.

    Prefers <main>, <article> or [role=main] over the whole body; block
    elements become paragraph breaks so the chunker can split on them.
    """
    max_chars = max_chars or settings.CRAWL_MAX_CHARS
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(STRIP_TAGS):
        tag.decompose()

    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    if not title:
        h1 = soup.find("h1")
        title = h1.get_text(" ", strip=True) if h1 else ""

    root = soup.find("main") or soup.find("article") or soup.find(attrs={"role": "main"}) or soup.body or soup
    for br in root.find_all("br"):
        br.replace_with("\n")
    for block in root.find_all(BLOCK_TAGS):
        block.insert_before("\n\n")
        block.insert_after("\n\n")

    text = root.get_text()
    lines = [re.sub(r"\s+", " ", line).strip() for line in text.split("\n")]
    text = re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()

    return FetchedContent(text=text[:max_chars], title=title or None)


class WebsiteFetcher:
    """Fetches one public web page."""

    def __init__(self, resolver: Optional[Resolver] = None, client: Optional[httpx.AsyncClient] = None):
        self._resolve = resolver or resolve_host
        self._client = client

    async def _ensure_public(self, url: str) -> None:
        host = check_url_shape(url)
        try:
            ipaddress.ip_address(host)
            return
        except ValueError:
            pass
        addresses = await self._resolve(host)
        if not addresses:
            raise SourceFetchError(f"Failed to resolve hostname {host}")
        for address in addresses:
            if not is_public_address(address):
                raise SourceFetchError(f"{host} resolves to a private or reserved address", retryable=False)

    async def fetch(self, url: str) -> FetchedContent:
        """
        Raises:
            SourceFetchError: Blocked URL, HTTP error, non-HTML or empty page
        """
        client = self._client or await http_client_manager.get_client()
        current = url
        for _ in range(MAX_REDIRECTS + 1):
            await self._ensure_public(current)
            try:
                async with client.stream(
                    "GET", current, timeout=settings.CRAWL_TIMEOUT_SECONDS, follow_redirects=False
                ) as response:
                    if response.is_redirect:
                        location = response.headers.get("location")
                        if not location:
                            raise SourceFetchError(f"Redirect without location from {current}")
                        current = urljoin(current, location)
                        continue
                    content_type = self._check_response(response, current)
                    body = await read_capped(response, settings.CRAWL_MAX_BYTES)
                    break
            except httpx.TimeoutException as exc:
                raise SourceFetchError(f"Timed out fetching {current}") from exc
            except httpx.HTTPError as exc:
                raise SourceFetchError(f"Failed to fetch {current}: {exc}") from exc
        else:
            raise SourceFetchError(f"Too many redirects fetching {url}", retryable=False)

        if "html" in content_type or not content_type:
            page = extract_page_text(body)
        else:
            page = FetchedContent(text=body.strip()[:settings.CRAWL_MAX_CHARS])

        if not page.text:
            raise SourceFetchError(f"No readable text at {current}", retryable=False)

        logger.info(f"Fetched {current} ({len(page.text)} chars)")
        return page

    @staticmethod
    def _check_response(response: httpx.Response, url: str) -> str:
        """Status and content type gate; returns the lowercased content type."""
        if response.status_code >= 400:
            raise SourceFetchError(
                f"HTTP {response.status_code} fetching {url}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        content_type = response.headers.get("content-type", "").lower()
        if content_type and "html" not in content_type and not content_type.startswith("text/"):
            raise SourceFetchError(f"Unsupported content type {content_type} at {url}", retryable=False)
        return content_type


async def read_capped(response: httpx.Response, max_bytes: int) -> str:
    """
    Decoded body of a streamed response, reading at most `max_bytes`.

    The rest of an oversized body is never downloaded.
    """
    received = bytearray()
    async for chunk in response.aiter_bytes():
        received.extend(chunk)
        if len(received) >= max_bytes:
            logger.info(f"Body of {response.url} exceeds {max_bytes} bytes, truncating")
            break

    try:
        return bytes(received[:max_bytes]).decode(response.encoding or "utf-8", errors="replace")
    except LookupError:
        return bytes(received[:max_bytes]).decode("utf-8", errors="replace")


class DocumentFetcher:
    """Reads pre-extracted document text from the store."""

    def __init__(self, db):
        self.db = db

    async def fetch(self, chatbot_id: str, name: str) -> FetchedContent:
        row = self.db.documents.get_by_name(chatbot_id, name)
        if row is None:
            raise SourceFetchError(f"Document {name} not found", retryable=False)
        text = (row.get("extracted_text") or "").strip()
        if not text:
            raise SourceFetchError(f"Document {name} has no extracted text", retryable=False)
        return FetchedContent(text=text, title=row.get("file_name") or name)


class SourceFetcher:
    """Dispatches a (source type, locator) pair to the right fetcher."""

    def __init__(self, website: WebsiteFetcher, document: DocumentFetcher):
        self.website = website
        self.document = document

    async def fetch(self, chatbot_id: str, source_type: SourceType, locator: str) -> FetchedContent:
        if source_type == SourceType.WEBSITE:
            return await self.website.fetch(locator)
        if source_type == SourceType.DOCUMENT:
            return await self.document.fetch(chatbot_id, locator)
        raise ConfigurationError(f"Unknown source type {source_type}")
