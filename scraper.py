"""
scraper.py — page, robots.txt and sitemap fetching.

The only module that talks HTTP to the analysed site. Everything downstream
works on the PageSnapshot it returns.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from errors import FetchFailure
from models import PageSnapshot, SitemapProbe

logger = logging.getLogger("sitepulse-engine")

FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "30"))
AUX_FETCH_TIMEOUT = float(os.getenv("AUX_FETCH_TIMEOUT", "10"))
USER_AGENT = "Mozilla/5.0 (compatible; SitePulseBot/1.0)"

_SITEMAP_PATHS = ["/sitemap.xml", "/sitemap_index.xml", "/sitemap/"]


def normalize_url(url: str) -> str:
    """Add https:// to bare domains; leave everything else alone."""
    url = url.strip()
    return url if url.startswith(("http://", "https://")) else f"https://{url}"


@asynccontextmanager
async def _http(client: Optional[httpx.AsyncClient], timeout: float) -> AsyncIterator[httpx.AsyncClient]:
    # Callers (tests, batch jobs) may hand in a shared client; otherwise open one per call.
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en,no;q=0.9",
        },
    ) as http:
        yield http


async def fetch_page(url: str, client: Optional[httpx.AsyncClient] = None) -> PageSnapshot:
    """Fetch one page. Raises FetchFailure on any transport error or non-2xx answer."""
    url = normalize_url(url)
    start = time.perf_counter()
    try:
        async with _http(client, FETCH_TIMEOUT) as http:
            resp = await http.get(url)
    except httpx.TimeoutException:
        raise FetchFailure(url, f"timed out after {FETCH_TIMEOUT:.0f}s")
    except httpx.HTTPError as e:
        raise FetchFailure(url, f"{type(e).__name__}: {e}")

    if resp.status_code >= 400:
        raise FetchFailure(url, f"HTTP {resp.status_code}")

    content_type = resp.headers.get("content-type", "")
    if content_type and "html" not in content_type.lower():
        raise FetchFailure(url, f"not an HTML page ({content_type})")

    load_time_ms = int((time.perf_counter() - start) * 1000)
    logger.info(f"Fetched {url} → {resp.status_code} in {load_time_ms}ms")

    return PageSnapshot(
        url=url,
        html=resp.text,
        status_code=resp.status_code,
        headers={k.lower(): v for k, v in resp.headers.items()},
        load_time_ms=load_time_ms,
    )


async def fetch_robots_txt(base_url: str, client: Optional[httpx.AsyncClient] = None) -> str | None:
    """Return robots.txt text, or None when missing or unreachable."""
    robots_url = urljoin(base_url, "/robots.txt")
    try:
        async with _http(client, AUX_FETCH_TIMEOUT) as http:
            resp = await http.get(robots_url)
    except httpx.HTTPError as e:
        logger.warning(f"robots.txt fetch failed for {base_url}: {e}")
        return None
    if 200 <= resp.status_code < 400:
        return resp.text
    return None


async def fetch_sitemap(base_url: str, client: Optional[httpx.AsyncClient] = None) -> SitemapProbe:
    """Probe the usual sitemap locations, then fall back to a Sitemap: line in robots.txt."""
    async with _http(client, AUX_FETCH_TIMEOUT) as http:
        for path in _SITEMAP_PATHS:
            candidate = urljoin(base_url, path)
            try:
                resp = await http.get(candidate)
            except httpx.HTTPError:
                continue
            if 200 <= resp.status_code < 400:
                return SitemapProbe(exists=True, url=candidate)

        robots = await fetch_robots_txt(base_url, client=http)

    if robots:
        for line in robots.splitlines():
            directive, _, value = line.partition(":")
            if directive.strip().lower() == "sitemap" and value.strip():
                return SitemapProbe(exists=True, url=value.strip())

    return SitemapProbe(exists=False, url=None)


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")
