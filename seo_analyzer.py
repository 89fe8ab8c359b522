# =============================================================================
# SEO Analyzer — six on-page sub-analyses + composite SEO score
# =============================================================================
#
# - analyze_seo(): meta, headings, images, links, mobile, technical → SEOResult
# - *_score(): one 0-100 scorer per dimension, composite = plain mean
#
# Only the technical check leaves the page: robots.txt and sitemap probes go
# through the injected fetch_robots_fn / fetch_sitemap_fn (scraper by default).
# =============================================================================

import asyncio
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from models import (
    HeadingLevel,
    HeadingsAnalysis,
    HreflangTag,
    ImagesAnalysis,
    LinkGroup,
    LinksAnalysis,
    MetaAnalysis,
    MobileAnalysis,
    OpenGraphTags,
    SEOResult,
    SitemapProbe,
    TechnicalAnalysis,
    TextTag,
    TwitterTags,
)
from scoring import clamp, round_score
from scraper import fetch_robots_txt, fetch_sitemap

logger = logging.getLogger("sitepulse-engine")

TITLE_RANGE = (30, 60)
DESCRIPTION_RANGE = (150, 160)

MAX_INTERNAL_COLLECTED, MAX_INTERNAL_EXPOSED = 50, 10
MAX_EXTERNAL_COLLECTED, MAX_EXTERNAL_EXPOSED = 20, 10
MAX_NOFOLLOW = 10
MAX_IMAGE_SAMPLES = 5
EAGER_IMAGES = 3          # above-the-fold images are expected to load eagerly
TINY_IMAGE_PX = 50

_SKIPPED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:")

ISSUE_MISSING_H1 = "Missing H1 tag"
ISSUE_H3_WITHOUT_H2 = "H3 used without H2 - broken hierarchy"
ISSUE_NO_VIEWPORT = "Missing viewport meta tag"
ISSUE_VIEWPORT_WIDTH = "Viewport should include width=device-width"
ISSUE_FIXED_WIDTHS = "Some elements use fixed pixel widths"
_VIEWPORT_ISSUES = {ISSUE_NO_VIEWPORT, ISSUE_VIEWPORT_WIDTH}

RobotsFetcher = Callable[[str], Awaitable[Optional[str]]]
SitemapFetcher = Callable[[str], Awaitable[SitemapProbe]]


def _attr(tag: Optional[Tag], name: str) -> Optional[str]:
    """Attribute as a plain string; empty values count as absent."""
    if tag is None:
        return None
    value = tag.get(name)
    if isinstance(value, list):          # multi-valued attrs like rel/class
        value = " ".join(value)
    return value or None


def _meta_content(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    return _attr(soup.find("meta", attrs=attrs), "content")


# ---------------------------------------------------------------------------
# Sub-analyses
# ---------------------------------------------------------------------------

def analyze_meta(soup: BeautifulSoup) -> MetaAnalysis:
    title = soup.title.get_text(strip=True) if soup.title else ""
    description = _meta_content(soup, name="description")

    lo, hi = TITLE_RANGE
    dlo, dhi = DESCRIPTION_RANGE
    return MetaAnalysis(
        title=TextTag(
            content=title or None,
            length=len(title),
            is_optimal=lo <= len(title) <= hi,
        ),
        description=TextTag(
            content=description,
            length=len(description or ""),
            is_optimal=bool(description) and dlo <= len(description) <= dhi,
        ),
        og_tags=OpenGraphTags(
            title=_meta_content(soup, property="og:title"),
            description=_meta_content(soup, property="og:description"),
            image=_meta_content(soup, property="og:image"),
            url=_meta_content(soup, property="og:url"),
        ),
        twitter_tags=TwitterTags(
            card=_meta_content(soup, name="twitter:card"),
            title=_meta_content(soup, name="twitter:title"),
            description=_meta_content(soup, name="twitter:description"),
            image=_meta_content(soup, name="twitter:image"),
        ),
        canonical=_attr(soup.find("link", rel="canonical"), "href"),
        robots=_meta_content(soup, name="robots"),
    )


def analyze_headings(soup: BeautifulSoup) -> HeadingsAnalysis:
    levels = {}
    for n in range(1, 7):
        found = soup.find_all(f"h{n}")
        levels[f"h{n}"] = HeadingLevel(
            count=len(found),
            contents=[h.get_text(strip=True) for h in found[:5]],
        )

    issues: list[str] = []
    h1_count = levels["h1"].count
    if h1_count == 0:
        issues.append(ISSUE_MISSING_H1)
    elif h1_count > 1:
        issues.append(f"Too many H1 tags ({h1_count}). Use exactly one.")

    hierarchy_issues: list[str] = []
    if levels["h2"].count == 0 and levels["h3"].count > 0:
        hierarchy_issues.append(ISSUE_H3_WITHOUT_H2)
    issues.extend(hierarchy_issues)

    return HeadingsAnalysis(
        **levels,
        has_proper_hierarchy=h1_count == 1 and not issues,
        issues=issues,
        hierarchy_issues=hierarchy_issues,
    )


def _resolve_src(src: str, page_url: str) -> str:
    if not src or src.startswith("data:"):
        return ""
    if src.startswith(("http://", "https://")):
        return src
    try:
        return urljoin(page_url, src)
    except ValueError:
        return ""


def _dimension(value: Optional[str]) -> int:
    try:
        return int(value or 0)
    except ValueError:
        return 0


def analyze_images(soup: BeautifulSoup, page_url: str) -> ImagesAnalysis:
    images = soup.find_all("img")
    total = len(images)
    with_alt = with_lazy = 0
    missing_alt: list[str] = []
    large: list[str] = []
    all_urls: list[str] = []

    for img in images:
        alt = _attr(img, "alt")
        loading = _attr(img, "loading")
        resolved = _resolve_src(_attr(img, "src") or _attr(img, "data-src") or "", page_url)

        if resolved and len(all_urls) < MAX_IMAGE_SAMPLES:
            # icons and tracking pixels are not worth sampling
            width, height = _dimension(_attr(img, "width")), _dimension(_attr(img, "height"))
            if not (0 < width < TINY_IMAGE_PX) and not (0 < height < TINY_IMAGE_PX):
                all_urls.append(resolved)

        if alt and alt.strip():
            with_alt += 1
        elif resolved and len(missing_alt) < MAX_IMAGE_SAMPLES:
            missing_alt.append(resolved)

        if loading == "lazy":
            with_lazy += 1
        elif not loading and resolved and len(large) < MAX_IMAGE_SAMPLES:
            large.append(resolved)

    return ImagesAnalysis(
        total=total,
        with_alt=with_alt,
        without_alt=total - with_alt,
        with_lazy_loading=with_lazy,
        missing_alt_images=missing_alt,
        large_images=large,
        all_image_urls=all_urls,
        score=images_score(total, with_alt, with_lazy),
    )


def analyze_links(soup: BeautifulSoup, page_url: str) -> LinksAnalysis:
    page_host = urlparse(page_url).hostname
    internal: list[str] = []
    external: list[str] = []
    nofollow: list[str] = []

    for a in soup.find_all("a", href=True):
        href = _attr(a, "href") or ""
        if href.startswith(_SKIPPED_HREF_PREFIXES):
            continue
        try:
            absolute = urljoin(page_url, href)
            parsed = urlparse(absolute)
            host = parsed.hostname
        except ValueError:
            continue

        if host == page_host:
            path = parsed.path or "/"
            if path not in internal and len(internal) < MAX_INTERNAL_COLLECTED:
                internal.append(path)
        elif absolute not in external and len(external) < MAX_EXTERNAL_COLLECTED:
            external.append(absolute)

        if "nofollow" in (_attr(a, "rel") or "") and len(nofollow) < MAX_NOFOLLOW:
            nofollow.append(href)

    return LinksAnalysis(
        internal=LinkGroup(count=len(internal), urls=internal[:MAX_INTERNAL_EXPOSED]),
        external=LinkGroup(count=len(external), urls=external[:MAX_EXTERNAL_EXPOSED]),
        broken=LinkGroup(),                          # no link checking here
        nofollow=LinkGroup(count=len(nofollow), urls=nofollow),
    )


def _has_fixed_pixel_width(tag: Tag) -> bool:
    style = _attr(tag, "style") or ""
    return "width:" in style and "px" in style


def analyze_mobile(soup: BeautifulSoup) -> MobileAnalysis:
    viewport = soup.find("meta", attrs={"name": "viewport"})
    content = _attr(viewport, "content")
    responsive = viewport is not None and "width=device-width" in (content or "")

    issues: list[str] = []
    if viewport is None:
        issues.append(ISSUE_NO_VIEWPORT)
    elif content and not responsive:
        issues.append(ISSUE_VIEWPORT_WIDTH)
    if soup.find(_has_fixed_pixel_width) is not None:
        issues.append(ISSUE_FIXED_WIDTHS)

    return MobileAnalysis(
        has_viewport_meta=viewport is not None,
        viewport_content=content,
        is_responsive=responsive,
        issues=issues,
    )


async def analyze_technical(
    soup: BeautifulSoup,
    url: str,
    *,
    fetch_robots_fn: RobotsFetcher = fetch_robots_txt,
    fetch_sitemap_fn: SitemapFetcher = fetch_sitemap,
) -> TechnicalAnalysis:
    parsed = urlparse(url)
    origin = f"{parsed.scheme}://{parsed.netloc}"

    robots, sitemap = await asyncio.gather(fetch_robots_fn(origin), fetch_sitemap_fn(origin))

    hreflang = [
        HreflangTag(lang=_attr(link, "hreflang"), url=_attr(link, "href"))
        for link in soup.find_all("link", rel="alternate", hreflang=True)
        if _attr(link, "hreflang") and _attr(link, "href")
    ]

    return TechnicalAnalysis(
        has_robots_txt=robots is not None,
        has_sitemap=sitemap.exists,
        sitemap_url=sitemap.url,
        has_https=url.startswith("https://"),
        has_hreflang=bool(hreflang),
        hreflang_tags=hreflang,
    )


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def meta_score(meta: MetaAnalysis) -> int:
    points = 0.0
    if meta.title.content:
        points += 25 if meta.title.is_optimal else 15
    if meta.description.content:
        points += 25 if meta.description.is_optimal else 15
    og = meta.og_tags
    points += sum(1 for v in (og.title, og.description, og.image) if v) / 3 * 25
    if meta.canonical:
        points += 15
    if "noindex" not in (meta.robots or "").lower():
        points += 10
    return round_score(points / 100 * 100)


def headings_score(headings: HeadingsAnalysis) -> int:
    score = 100
    if headings.h1.count == 0:
        score -= 30
    elif headings.h1.count > 1:
        score -= 15
    if headings.h2.count == 0:
        score -= 10
    score -= 10 * len(headings.hierarchy_issues)
    return clamp(score)


def images_score(total: int, with_alt: int, with_lazy: int) -> int:
    if total == 0:
        return 100
    alt_ratio = with_alt / total
    # only images past the first few are expected to be lazy
    lazy_ratio = min(1.0, with_lazy / (total - EAGER_IMAGES)) if total > EAGER_IMAGES else 1.0
    return round_score(alt_ratio * 70 + lazy_ratio * 30)


def links_score(links: LinksAnalysis) -> int:
    score = 100
    if links.internal.count == 0:
        score -= 20
    if links.internal.count < 3:
        score -= 10
    score -= 10 * links.broken.count
    return clamp(score)


def mobile_score(mobile: MobileAnalysis) -> int:
    score = 100
    if not mobile.has_viewport_meta:
        score -= 40
    if not mobile.is_responsive:
        score -= 30
    score -= 10 * len([i for i in mobile.issues if i not in _VIEWPORT_ISSUES])
    return clamp(score)


def technical_score(technical: TechnicalAnalysis) -> int:
    score = 0
    if technical.has_https:
        score += 30
    if technical.has_robots_txt:
        score += 20
    if technical.has_sitemap:
        score += 25
    # single-language sites need no hreflang
    score += 15 if technical.has_hreflang else 10
    return score


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def analyze_seo(
    soup: BeautifulSoup,
    url: str,
    *,
    fetch_robots_fn: RobotsFetcher = fetch_robots_txt,
    fetch_sitemap_fn: SitemapFetcher = fetch_sitemap,
) -> SEOResult:
    """Run all six sub-analyses on one parsed page and average their scores."""
    technical = await analyze_technical(
        soup, url, fetch_robots_fn=fetch_robots_fn, fetch_sitemap_fn=fetch_sitemap_fn,
    )
    meta     = analyze_meta(soup)
    headings = analyze_headings(soup)
    images   = analyze_images(soup, url)
    links    = analyze_links(soup, url)
    mobile   = analyze_mobile(soup)

    sub_scores = {
        "meta":      meta_score(meta),
        "headings":  headings_score(headings),
        "images":    images.score,
        "links":     links_score(links),
        "mobile":    mobile_score(mobile),
        "technical": technical_score(technical),
    }
    score = round_score(sum(sub_scores.values()) / len(sub_scores))
    logger.info(f"[SEO] {url} → {score} {sub_scores}")

    return SEOResult(
        meta=meta,
        headings=headings,
        images=images,
        links=links,
        mobile=mobile,
        technical=technical,
        sub_scores=sub_scores,
        score=score,
    )
