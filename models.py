"""
models.py — result records passed between the analyzers, the orchestrator and the store.

Every record is a frozen pydantic model: once an analyzer hands one back it is
never mutated. Enrichment steps build a new AnalysisResult with model_copy().
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Fetcher output
# ---------------------------------------------------------------------------

class PageSnapshot(_Record):
    """Raw markup + response headers for one URL at one point in time."""

    url: str
    html: str
    status_code: int = 200
    headers: dict[str, str] = Field(default_factory=dict)   # lower-cased header names
    load_time_ms: int = 0


class SitemapProbe(_Record):
    exists: bool
    url: Optional[str] = None


# ---------------------------------------------------------------------------
# SEO
# ---------------------------------------------------------------------------

class TextTag(_Record):
    content: Optional[str] = None
    length: int = 0
    is_optimal: bool = False


class OpenGraphTags(_Record):
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    url: Optional[str] = None


class TwitterTags(_Record):
    card: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None


class MetaAnalysis(_Record):
    title: TextTag
    description: TextTag
    og_tags: OpenGraphTags
    twitter_tags: TwitterTags
    canonical: Optional[str] = None
    robots: Optional[str] = None


class HeadingLevel(_Record):
    count: int = 0
    contents: list[str] = Field(default_factory=list)


class HeadingsAnalysis(_Record):
    h1: HeadingLevel
    h2: HeadingLevel
    h3: HeadingLevel
    h4: HeadingLevel
    h5: HeadingLevel
    h6: HeadingLevel
    has_proper_hierarchy: bool = False
    issues: list[str] = Field(default_factory=list)
    hierarchy_issues: list[str] = Field(default_factory=list)   # subset of issues about skipped levels


class ImagesAnalysis(_Record):
    total: int = 0
    with_alt: int = 0
    without_alt: int = 0
    with_lazy_loading: int = 0
    missing_alt_images: list[str] = Field(default_factory=list)
    large_images: list[str] = Field(default_factory=list)
    all_image_urls: list[str] = Field(default_factory=list)
    score: int = 100

    @model_validator(mode="after")
    def _alt_counts_add_up(self) -> "ImagesAnalysis":
        if self.with_alt + self.without_alt != self.total:
            raise ValueError("with_alt + without_alt must equal total")
        return self


class LinkGroup(_Record):
    count: int = 0
    urls: list[str] = Field(default_factory=list)


class LinksAnalysis(_Record):
    internal: LinkGroup
    external: LinkGroup
    broken: LinkGroup
    nofollow: LinkGroup


class MobileAnalysis(_Record):
    has_viewport_meta: bool = False
    viewport_content: Optional[str] = None
    is_responsive: bool = False
    issues: list[str] = Field(default_factory=list)


class HreflangTag(_Record):
    lang: str
    url: str


class TechnicalAnalysis(_Record):
    has_robots_txt: bool = False
    has_sitemap: bool = False
    sitemap_url: Optional[str] = None
    has_https: bool = False
    has_hreflang: bool = False
    hreflang_tags: list[HreflangTag] = Field(default_factory=list)


class SEOResult(_Record):
    meta: MetaAnalysis
    headings: HeadingsAnalysis
    images: ImagesAnalysis
    links: LinksAnalysis
    mobile: MobileAnalysis
    technical: TechnicalAnalysis
    sub_scores: dict[str, int] = Field(default_factory=dict)
    score: int = Field(ge=0, le=100)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------

class Readability(_Record):
    index: int = 0
    level: str = ""
    avg_words_per_sentence: float = 0.0
    avg_word_length: float = 0.0


class KeywordFrequency(_Record):
    word: str
    count: int
    density: float


class ContentResult(_Record):
    word_count: int = 0
    character_count: int = 0
    sentence_count: int = 0
    paragraph_count: int = 0
    readability: Readability
    keywords: list[KeywordFrequency] = Field(default_factory=list)
    has_cta: bool = False
    cta_elements: list[str] = Field(default_factory=list)
    score: int = Field(ge=0, le=100)


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------

class Certificate(_Record):
    issuer: Optional[str] = None
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    days_until_expiry: Optional[int] = None


class TLSGrade(_Record):
    grade: str
    certificate: Certificate = Field(default_factory=Certificate)
    protocols: list[str] = Field(default_factory=list)


class HeaderGrade(_Record):
    content_security_policy: bool = False
    strict_transport_security: bool = False
    x_frame_options: bool = False
    x_content_type_options: bool = False
    referrer_policy: bool = False
    permissions_policy: bool = False
    score: int = 0


class SecurityResult(_Record):
    ssl: TLSGrade
    headers: HeaderGrade
    score: int = Field(ge=0, le=100)
    mode: str = "full"          # "full" | "quick" | "degraded"


# ---------------------------------------------------------------------------
# AI enrichment
# ---------------------------------------------------------------------------

class KeywordData(_Record):
    keyword: str
    search_volume: int = 0
    cpc: float = 0.0
    competition: str = "medium"
    competition_score: int = 0
    intent: str = "informational"
    difficulty: int = 0
    trend: str = "stable"


class VisibilityQuery(_Record):
    query: str
    cited: bool = False
    mentioned: bool = False
    ai_response: Optional[str] = None


class AIVisibility(_Record):
    score: int = 0
    level: str = "none"
    description: str = ""
    queries_tested: int = 0
    times_cited: int = 0
    times_mentioned: int = 0
    queries: list[VisibilityQuery] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class AIUsage(_Record):
    """Token/cost accounting returned by every AI call."""

    tokens_used: int = 0
    cost_usd: float = 0.0

    def __add__(self, other: "AIUsage") -> "AIUsage":
        return AIUsage(
            tokens_used=self.tokens_used + other.tokens_used,
            cost_usd=round(self.cost_usd + other.cost_usd, 6),
        )


class SummaryResponse(_Record):
    summary: dict[str, Any]
    model: str
    usage: AIUsage = Field(default_factory=AIUsage)


class KeywordResponse(_Record):
    keywords: list[KeywordData] = Field(default_factory=list)
    usage: AIUsage = Field(default_factory=AIUsage)


class VisibilityResponse(_Record):
    visibility: AIVisibility
    usage: AIUsage = Field(default_factory=AIUsage)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class AnalysisOptions(_Record):
    include_ai: bool = True
    use_premium_ai_model: bool = False
    quick_security_scan: bool = False
    industry: Optional[str] = None
    target_keywords: list[str] = Field(default_factory=list)
    company_name: Optional[str] = None
    check_ai_visibility: bool = True
    is_premium_account: bool = False


class AnalysisResult(_Record):
    url: str
    seo: SEOResult
    content: ContentResult
    security: SecurityResult
    overall_score: int = Field(ge=0, le=100)
    ai_summary: Optional[dict[str, Any]] = None
    keyword_research: Optional[list[KeywordData]] = None
    ai_visibility: Optional[AIVisibility] = None
    ai_model: str = "none"
    usage: AIUsage = Field(default_factory=AIUsage)


class CompetitorEntry(_Record):
    url: str
    result: AnalysisResult


class ComparisonSet(_Record):
    primary: AnalysisResult
    competitors: list[CompetitorEntry] = Field(default_factory=list)

    @property
    def competitor_urls(self) -> list[str]:
        return [c.url for c in self.competitors]


class UpdateQuota(_Record):
    remaining_competitor_updates: int
    remaining_keyword_updates: int
    is_premium: bool = False


class StoredAnalysis(_Record):
    """What the store hands back for one analysis id."""

    id: str
    account_id: Optional[str] = None
    comparison: ComparisonSet
    quota: UpdateQuota
