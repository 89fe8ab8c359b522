import pytest

from conftest import BARE_PAGE, soup_of
from models import SitemapProbe
from seo_analyzer import (
    ISSUE_FIXED_WIDTHS,
    ISSUE_H3_WITHOUT_H2,
    ISSUE_MISSING_H1,
    ISSUE_NO_VIEWPORT,
    ISSUE_VIEWPORT_WIDTH,
    analyze_headings,
    analyze_images,
    analyze_links,
    analyze_meta,
    analyze_mobile,
    analyze_seo,
    analyze_technical,
    headings_score,
    images_score,
    links_score,
    meta_score,
    mobile_score,
    technical_score,
)

PAGE_URL = "https://acme.example/"


async def robots_present(base_url):
    return "User-agent: *"


async def robots_missing(base_url):
    return None


async def sitemap_present(base_url):
    return SitemapProbe(exists=True, url=f"{base_url}/sitemap.xml")


async def sitemap_missing(base_url):
    return SitemapProbe(exists=False)


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------

def test_meta_full_marks(rich_soup):
    meta = analyze_meta(rich_soup)
    assert meta.title.is_optimal
    assert meta.description.is_optimal
    assert meta.canonical == "https://acme.example/"
    assert meta_score(meta) == 100


def test_meta_partial():
    soup = soup_of(
        "<html><head><title>Short</title>"
        '<meta property="og:title" content="x"><meta property="og:image" content="y.png">'
        '<meta name="robots" content="NOINDEX, follow">'
        "</head><body></body></html>"
    )
    meta = analyze_meta(soup)
    assert meta.title.content == "Short"
    assert not meta.title.is_optimal
    assert meta.description.content is None
    # 15 (title) + 2/3 * 25 (og) + 0 (canonical) + 0 (noindex)
    assert meta_score(meta) == 32


def test_meta_empty_page():
    meta = analyze_meta(soup_of(BARE_PAGE))
    assert meta.title.content is None
    assert meta.title.length == 0
    assert meta_score(meta) == 10


# ---------------------------------------------------------------------------
# Headings
# ---------------------------------------------------------------------------

def test_single_h1_with_h2_is_clean(rich_soup):
    headings = analyze_headings(rich_soup)
    assert headings.h1.count == 1
    assert headings.h2.count == 2
    assert headings.has_proper_hierarchy
    assert headings_score(headings) == 100


def test_missing_h1():
    headings = analyze_headings(soup_of("<body><h2>a</h2></body>"))
    assert ISSUE_MISSING_H1 in headings.issues
    assert not headings.has_proper_hierarchy
    assert headings_score(headings) == 70


def test_multiple_h1():
    headings = analyze_headings(soup_of("<body><h1>a</h1><h1>b</h1><h2>c</h2></body>"))
    assert "Too many H1 tags (2). Use exactly one." in headings.issues
    assert headings_score(headings) == 85


def test_h3_without_h2():
    headings = analyze_headings(soup_of("<body><h1>a</h1><h3>b</h3></body>"))
    assert headings.hierarchy_issues == [ISSUE_H3_WITHOUT_H2]
    assert not headings.has_proper_hierarchy
    # no H2 (-10) and a skipped level (-10)
    assert headings_score(headings) == 80


def test_heading_contents_capped_at_five():
    html = "<body>" + "".join(f"<h2>Section {i}</h2>" for i in range(8)) + "</body>"
    headings = analyze_headings(soup_of(html))
    assert headings.h2.count == 8
    assert len(headings.h2.contents) == 5


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def test_images_alt_and_lazy_ratio():
    soup = soup_of(
        "<body>"
        '<img src="/a.jpg" alt="a"><img src="/b.jpg" alt="b"><img src="/c.jpg" alt="c">'
        '<img src="/d.jpg" loading="lazy">'
        "</body>"
    )
    images = analyze_images(soup, PAGE_URL)
    assert images.total == 4
    assert images.with_alt == 3
    assert images.without_alt == 1
    assert images.with_lazy_loading == 1
    assert images.missing_alt_images == ["https://acme.example/d.jpg"]
    # 0.75 * 70 + 1.0 * 30 = 82.5
    assert images.score == 83


def test_whitespace_alt_counts_as_missing():
    images = analyze_images(soup_of('<body><img src="/a.jpg" alt="   "></body>'), PAGE_URL)
    assert images.with_alt == 0
    assert images.without_alt == 1


def test_no_images_scores_full():
    images = analyze_images(soup_of(BARE_PAGE), PAGE_URL)
    assert images.total == 0
    assert images.score == 100


def test_tiny_and_data_images_not_sampled():
    soup = soup_of(
        "<body>"
        '<img src="/pixel.gif" width="1" height="1" alt="">'
        '<img src="data:image/png;base64,AAAA" alt="inline">'
        '<img src="https://cdn.example/hero.jpg" alt="hero">'
        "</body>"
    )
    images = analyze_images(soup, PAGE_URL)
    assert images.all_image_urls == ["https://cdn.example/hero.jpg"]
    assert images.total == 3


def test_lazy_ratio_never_exceeds_one():
    # every image lazy: more lazy images than "beyond the first three"
    assert images_score(5, 5, 5) == 100


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------

def test_links_classified_and_deduplicated():
    soup = soup_of(
        "<body>"
        '<a href="/about">About</a><a href="/about#team">Team</a>'
        '<a href="https://acme.example/contact?x=1">Contact</a>'
        '<a href="https://other.example/">Other</a>'
        '<a href="https://spam.example/" rel="nofollow sponsored">Spam</a>'
        '<a href="#top">Top</a><a href="mailto:hi@acme.example">Mail</a>'
        '<a href="tel:+4712345678">Call</a><a href="javascript:void(0)">JS</a>'
        "</body>"
    )
    links = analyze_links(soup, PAGE_URL)
    assert links.internal.urls == ["/about", "/contact"]
    assert links.external.count == 2
    assert links.nofollow.urls == ["https://spam.example/"]
    assert links.broken.count == 0
    # fewer than three internal links
    assert links_score(links) == 90


def test_no_internal_links():
    links = analyze_links(soup_of(BARE_PAGE), PAGE_URL)
    assert links.internal.count == 0
    assert links_score(links) == 70


def test_internal_links_exposure_capped():
    html = "<body>" + "".join(f'<a href="/p{i}">p</a>' for i in range(60)) + "</body>"
    links = analyze_links(soup_of(html), PAGE_URL)
    assert links.internal.count == 50
    assert len(links.internal.urls) == 10


# ---------------------------------------------------------------------------
# Mobile
# ---------------------------------------------------------------------------

def test_responsive_viewport(rich_soup):
    mobile = analyze_mobile(rich_soup)
    assert mobile.is_responsive
    assert mobile.issues == []
    assert mobile_score(mobile) == 100


def test_missing_viewport():
    mobile = analyze_mobile(soup_of(BARE_PAGE))
    assert mobile.issues == [ISSUE_NO_VIEWPORT]
    assert mobile_score(mobile) == 30


def test_viewport_without_device_width():
    mobile = analyze_mobile(soup_of('<head><meta name="viewport" content="initial-scale=1"></head>'))
    assert mobile.has_viewport_meta
    assert not mobile.is_responsive
    assert mobile.issues == [ISSUE_VIEWPORT_WIDTH]
    assert mobile_score(mobile) == 70


def test_fixed_width_elements_penalised():
    mobile = analyze_mobile(soup_of(
        '<head><meta name="viewport" content="width=device-width"></head>'
        '<body><div style="width:900px">wide</div></body>'
    ))
    assert mobile.issues == [ISSUE_FIXED_WIDTHS]
    assert mobile_score(mobile) == 90


# ---------------------------------------------------------------------------
# Technical + composite
# ---------------------------------------------------------------------------

async def test_technical_checks(rich_soup):
    technical = await analyze_technical(
        rich_soup, PAGE_URL, fetch_robots_fn=robots_present, fetch_sitemap_fn=sitemap_present,
    )
    assert technical.has_https
    assert technical.has_robots_txt
    assert technical.sitemap_url == "https://acme.example/sitemap.xml"
    assert not technical.has_hreflang
    assert technical_score(technical) == 85


async def test_technical_hreflang_and_http():
    soup = soup_of(
        '<head><link rel="alternate" hreflang="nb" href="https://acme.example/no/">'
        '<link rel="alternate" hreflang="en" href="https://acme.example/en/"></head>'
    )
    technical = await analyze_technical(
        soup, "http://acme.example/", fetch_robots_fn=robots_missing, fetch_sitemap_fn=sitemap_missing,
    )
    assert not technical.has_https
    assert [t.lang for t in technical.hreflang_tags] == ["nb", "en"]
    assert technical_score(technical) == 15


async def test_analyze_seo_is_mean_of_sub_scores(rich_soup):
    seo = await analyze_seo(
        rich_soup, PAGE_URL, fetch_robots_fn=robots_present, fetch_sitemap_fn=sitemap_present,
    )
    assert set(seo.sub_scores) == {"meta", "headings", "images", "links", "mobile", "technical"}
    assert seo.sub_scores["technical"] == 85
    # (5 * 100 + 85) / 6 = 97.5
    assert seo.score == 98


@pytest.mark.parametrize("html", [BARE_PAGE, "<html></html>", ""])
async def test_analyze_seo_survives_empty_markup(html):
    seo = await analyze_seo(
        soup_of(html), PAGE_URL, fetch_robots_fn=robots_missing, fetch_sitemap_fn=sitemap_missing,
    )
    assert 0 <= seo.score <= 100
