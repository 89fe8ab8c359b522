"""Shared fixtures: canned pages, fake collaborators and an in-memory store."""

import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
import graders
from analysis_engine import Collaborators
from errors import AIServiceError, FetchFailure, TLSGradingError
from models import (
    AIUsage,
    AIVisibility,
    Certificate,
    KeywordData,
    KeywordResponse,
    PageSnapshot,
    SitemapProbe,
    SummaryResponse,
    TLSGrade,
    VisibilityResponse,
)
from scraper import parse_html

SECURE_HEADERS = {
    "content-type": "text/html; charset=utf-8",
    "content-security-policy": "default-src 'self'",
    "strict-transport-security": "max-age=63072000",
    "x-frame-options": "DENY",
    "x-content-type-options": "nosniff",
    "referrer-policy": "strict-origin",
    "permissions-policy": "camera=()",
}

RICH_PAGE = """<!doctype html>
<html lang="en">
<head>
  <title>Acme Plumbing - Emergency plumbers in Oslo</title>
  <meta name="description" content="Acme Plumbing fixes leaks, blocked drains and broken boilers across Oslo. Licensed plumbers, fixed prices and same-day emergency callouts, every day of the year">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <meta property="og:title" content="Acme Plumbing">
  <meta property="og:description" content="Emergency plumbers in Oslo">
  <meta property="og:image" content="https://acme.example/og.png">
  <link rel="canonical" href="https://acme.example/">
</head>
<body>
  <header><nav><a href="/">Home</a><a href="/services">Services</a></nav></header>
  <main>
    <h1>Emergency plumbers in Oslo</h1>
    <h2>Leak repairs</h2>
    <p>Our licensed plumbers repair leaking pipes, dripping taps and faulty valves quickly.
       Every repair comes with a written guarantee and transparent pricing.</p>
    <h2>Drain cleaning</h2>
    <p>Blocked drains are cleared with professional equipment and camera inspection.
       We explain every finding before any additional work begins.</p>
    <img src="/img/van.jpg" alt="Acme service van">
    <img src="/img/team.jpg" alt="Our plumbing team">
    <a href="/contact" class="btn">Contact us</a>
    <a href="/prices">See prices</a>
    <a href="https://partner.example/reviews" rel="nofollow">Reviews</a>
  </main>
  <footer><p>Copyright Acme Plumbing. All rights reserved worldwide.</p></footer>
</body>
</html>
"""

BARE_PAGE = "<html><head></head><body><p>Hi</p></body></html>"


def soup_of(html: str):
    return parse_html(html)


@pytest.fixture
def rich_soup():
    return parse_html(RICH_PAGE)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeServices:
    """Records every outside call the engine makes and answers from canned data."""

    def __init__(self):
        self.pages: dict[str, str] = {}
        self.headers = dict(SECURE_HEADERS)
        self.fail_urls: set[str] = set()
        self.fetch_delay: dict[str, float] = {}
        self.fetched: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

        self.tls_grade = "A"
        self.tls_error = False

        self.summary = {
            "overallAssessment": "Solid site with room to grow.",
            "keywordAnalysis": {
                "primaryKeywords": ["emergency plumber", "drain cleaning"],
                "missingKeywords": ["boiler repair", "drain cleaning"],
            },
        }
        self.summary_error = False
        self.summary_delay = 0.0
        self.summary_calls: list[dict] = []

        self.keyword_error = False
        self.keyword_calls: list[list[str]] = []

        self.visibility_error = False
        self.visibility_calls: list[tuple] = []

    async def fetch_page(self, url: str) -> PageSnapshot:
        self.fetched.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.fetch_delay.get(url, 0.01))
            if url in self.fail_urls:
                raise FetchFailure(url, "HTTP 500")
            return PageSnapshot(url=url, html=self.pages.get(url, RICH_PAGE), headers=self.headers)
        finally:
            self.in_flight -= 1

    async def fetch_robots_txt(self, base_url: str):
        return "User-agent: *\nAllow: /"

    async def fetch_sitemap(self, base_url: str) -> SitemapProbe:
        return SitemapProbe(exists=True, url=f"{base_url}/sitemap.xml")

    async def grade_certificate(self, url: str) -> TLSGrade:
        if self.tls_error:
            raise TLSGradingError(f"TLS handshake with {url} failed")
        return TLSGrade(grade=self.tls_grade, certificate=Certificate(days_until_expiry=90))

    async def summarize(self, url, seo, content, security, **kwargs) -> SummaryResponse:
        self.summary_calls.append({"url": url, **kwargs})
        if self.summary_delay:
            await asyncio.sleep(self.summary_delay)
        if self.summary_error:
            raise AIServiceError("Summary was not a JSON object")
        model = "claude-sonnet-4-6" if kwargs.get("premium") else "claude-haiku-4-5"
        return SummaryResponse(
            summary=self.summary,
            model=model,
            usage=AIUsage(tokens_used=1000, cost_usd=0.002),
        )

    async def research_keywords(self, keywords, industry=None) -> KeywordResponse:
        self.keyword_calls.append(list(keywords))
        if self.keyword_error:
            raise AIServiceError("Keyword research reply had no keyword list")
        return KeywordResponse(
            keywords=[KeywordData(keyword=k, search_volume=100 * (i + 1)) for i, k in enumerate(keywords)],
            usage=AIUsage(tokens_used=300, cost_usd=0.0005),
        )

    async def check_visibility(self, domain, company_name=None, keywords=None) -> VisibilityResponse:
        self.visibility_calls.append((domain, company_name, list(keywords or [])))
        if self.visibility_error:
            raise AIServiceError(f"Every visibility query for {domain} failed")
        return VisibilityResponse(
            visibility=AIVisibility(score=50, level="medium", queries_tested=2),
            usage=AIUsage(tokens_used=200, cost_usd=0.0002),
        )

    def collaborators(self) -> Collaborators:
        return Collaborators(
            fetch_page=self.fetch_page,
            fetch_robots_txt=self.fetch_robots_txt,
            fetch_sitemap=self.fetch_sitemap,
            grade_certificate=self.grade_certificate,
            grade_headers=graders.grade_headers,
            summarize=self.summarize,
            research_keywords=self.research_keywords,
            check_visibility=self.check_visibility,
        )


@pytest.fixture
def services():
    return FakeServices()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_db(monkeypatch):
    """Point the store at a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", sessionmaker(bind=engine, autocommit=False, autoflush=False))
    yield engine
    engine.dispose()


@pytest.fixture
def file_db(tmp_path, monkeypatch):
    """A SQLite file with one connection per session, for tests that race writers."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'sitepulse.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    database.Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", sessionmaker(bind=engine, autocommit=False, autoflush=False))
    yield engine
    engine.dispose()
