# =============================================================================
# Analysis Engine — one page (or a page + competitors) → weighted report
# =============================================================================
#
# - run_full_analysis(): fetch once, score SEO/content/security, enrich with AI
# - run_competitor_analysis(): primary in full mode + competitors in quick mode
# - analyze_competitors_only(): the bounded competitor fan-out on its own
#
# Structural steps (fetch + the three analyzers) abort the run when they fail.
# Enrichment calls are best-effort: each is timed out and isolated, and a
# failure just leaves its field empty.
#
# Collaborators are injected (Collaborators) so tests and batch jobs can swap
# the fetcher, the graders and the AI service without patching modules.
# =============================================================================

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, Sequence
from urllib.parse import urlparse

import ai_service
import graders
import scraper
from content_analyzer import analyze_content
from errors import FetchFailure
from models import (
    AnalysisOptions,
    AnalysisResult,
    ComparisonSet,
    CompetitorEntry,
    ContentResult,
    HeaderGrade,
    PageSnapshot,
    SecurityResult,
    SEOResult,
)
from scoring import overall_score
from security_analyzer import analyze_security, analyze_security_quick
from seo_analyzer import analyze_seo

logger = logging.getLogger("sitepulse-engine")

AI_CALL_TIMEOUT = float(os.getenv("AI_CALL_TIMEOUT", "60"))
COMPETITOR_TIMEOUT = float(os.getenv("COMPETITOR_TIMEOUT", "45"))
COMPETITOR_CONCURRENCY = int(os.getenv("COMPETITOR_CONCURRENCY", "3"))
AI_CONCURRENCY = int(os.getenv("AI_CONCURRENCY", "4"))


# ---------------------------------------------------------------------------
# Type aliases for dependency injection
# ---------------------------------------------------------------------------

FetchPageFn = Callable[[str], Awaitable[PageSnapshot]]
HeaderGraderFn = Callable[[dict[str, str]], HeaderGrade]
AICallFn = Callable[..., Coroutine[Any, Any, Any]]


@dataclass(frozen=True)
class Collaborators:
    """Everything the engine talks to outside its own process."""

    fetch_page: FetchPageFn = scraper.fetch_page
    fetch_robots_txt: Callable[..., Awaitable[Any]] = scraper.fetch_robots_txt
    fetch_sitemap: Callable[..., Awaitable[Any]] = scraper.fetch_sitemap
    grade_certificate: Callable[..., Awaitable[Any]] = graders.grade_certificate
    grade_headers: HeaderGraderFn = graders.grade_headers
    summarize: AICallFn = ai_service.summarize
    research_keywords: AICallFn = ai_service.research_keywords
    check_visibility: AICallFn = ai_service.check_visibility


DEFAULT_COLLABORATORS = Collaborators()


def _new_run_id() -> str:
    return uuid.uuid4().hex[:8]


def site_domain(url: str) -> str:
    host = urlparse(url).hostname or url
    return host[4:] if host.startswith("www.") else host


# ---------------------------------------------------------------------------
# Structural analysis
# ---------------------------------------------------------------------------

async def score_snapshot(
    snapshot: PageSnapshot,
    *,
    quick_security: bool = False,
    deps: Collaborators = DEFAULT_COLLABORATORS,
) -> tuple[SEOResult, ContentResult, SecurityResult]:
    """Run the three analyzers on one snapshot. Any exception aborts the page."""
    soup = scraper.parse_html(snapshot.html)
    content = analyze_content(soup)
    seo_call = analyze_seo(
        soup, snapshot.url,
        fetch_robots_fn=deps.fetch_robots_txt,
        fetch_sitemap_fn=deps.fetch_sitemap,
    )

    if quick_security:
        security = analyze_security_quick(snapshot.url, snapshot.headers, grade_headers_fn=deps.grade_headers)
        seo = await seo_call
    else:
        seo, security = await asyncio.gather(
            seo_call,
            analyze_security(
                snapshot.url, snapshot.headers,
                grade_certificate_fn=deps.grade_certificate,
                grade_headers_fn=deps.grade_headers,
            ),
        )
    return seo, content, security


async def _analyze_page(url: str, *, quick_security: bool, deps: Collaborators) -> AnalysisResult:
    snapshot = await deps.fetch_page(url)
    seo, content, security = await score_snapshot(snapshot, quick_security=quick_security, deps=deps)
    return AnalysisResult(
        url=url,
        seo=seo,
        content=content,
        security=security,
        overall_score=overall_score(seo.score, content.score, security.score),
    )


# ---------------------------------------------------------------------------
# Best-effort enrichment
# ---------------------------------------------------------------------------

async def _best_effort(
    name: str,
    call: Coroutine[Any, Any, Any],
    *,
    run_id: str,
    timeout: Optional[float] = None,
    slots: Optional[asyncio.Semaphore] = None,
) -> Any:
    """Await one enrichment call; any failure or timeout becomes None."""
    timeout = timeout or AI_CALL_TIMEOUT
    try:
        if slots is None:
            return await asyncio.wait_for(call, timeout)
        async with slots:
            return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[{run_id}] {name} timed out after {timeout:.0f}s")
    except Exception as e:
        logger.error(f"[{run_id}] {name} failed: {type(e).__name__}: {e}")
    return None


async def _enrich(
    primary: AnalysisResult,
    options: AnalysisOptions,
    *,
    deps: Collaborators,
    run_id: str,
    competitors: Sequence[CompetitorEntry] = (),
) -> tuple[AnalysisResult, list[CompetitorEntry]]:
    """Fan out the AI calls for a primary page (and its competitors), then merge what came back."""
    ai_slots = asyncio.Semaphore(AI_CONCURRENCY)
    check_visibility = options.check_ai_visibility and options.is_premium_account

    calls: list[tuple[str, Coroutine, Optional[asyncio.Semaphore]]] = [
        ("summary", deps.summarize(
            primary.url, primary.seo, primary.content, primary.security,
            competitors=list(competitors) or None,
            industry=options.industry,
            target_keywords=options.target_keywords,
            premium=options.use_premium_ai_model,
        ), None),
    ]
    if options.target_keywords:
        calls.append(("keywords", deps.research_keywords(options.target_keywords, options.industry), None))
    if check_visibility:
        calls.append((
            "visibility",
            deps.check_visibility(site_domain(primary.url), options.company_name, options.target_keywords),
            ai_slots,
        ))
        for comp in competitors:
            calls.append((
                f"visibility:{comp.url}",
                deps.check_visibility(site_domain(comp.url), None, []),
                ai_slots,
            ))

    outcomes = dict(zip(
        [name for name, _, _ in calls],
        await asyncio.gather(*(
            _best_effort(name, call, run_id=run_id, slots=slots) for name, call, slots in calls
        )),
    ))

    usage = primary.usage
    for outcome in outcomes.values():
        if outcome is not None:
            usage = usage + outcome.usage

    summary = outcomes["summary"]
    keywords = outcomes.get("keywords")
    keyword_research = keywords.keywords if keywords is not None and keywords.keywords else None

    # Premium accounts without explicit keywords get market data for the terms the summary proposed.
    if options.is_premium_account and not options.target_keywords and summary is not None:
        proposed = ai_service.proposed_keywords(summary.summary)
        if proposed:
            logger.info(f"[{run_id}] Researching {len(proposed)} AI-proposed keywords")
            fallback = await _best_effort(
                "keyword fallback", deps.research_keywords(proposed, options.industry), run_id=run_id,
            )
            if fallback is not None:
                usage = usage + fallback.usage
                keyword_research = fallback.keywords or keyword_research

    visibility = outcomes.get("visibility")
    enriched = primary.model_copy(update={
        "ai_summary": summary.summary if summary is not None else None,
        "ai_model": summary.model if summary is not None else "none",
        "keyword_research": keyword_research,
        "ai_visibility": visibility.visibility if visibility is not None else None,
        "usage": usage,
    })

    enriched_competitors = []
    for comp in competitors:
        comp_visibility = outcomes.get(f"visibility:{comp.url}")
        if comp_visibility is not None:
            comp = comp.model_copy(update={
                "result": comp.result.model_copy(update={"ai_visibility": comp_visibility.visibility}),
            })
        enriched_competitors.append(comp)

    logger.info(
        f"[{run_id}] Enrichment: summary={'ok' if summary else 'none'}, "
        f"keywords={len(keyword_research or [])}, visibility={'ok' if visibility else 'none'}, "
        f"{usage.tokens_used} tokens, ${usage.cost_usd:.4f}"
    )
    return enriched, enriched_competitors


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

async def run_full_analysis(
    url: str,
    options: Optional[AnalysisOptions] = None,
    *,
    deps: Collaborators = DEFAULT_COLLABORATORS,
) -> AnalysisResult:
    """
    Fetch url once, score it and (optionally) enrich it.
    Raises FetchFailure when the page cannot be fetched; AI failures never raise.
    """
    options = options or AnalysisOptions()
    url = scraper.normalize_url(url)
    run_id = _new_run_id()
    start = time.perf_counter()
    logger.info(f"[{run_id}] Analysis started for {url}")

    try:
        result = await _analyze_page(url, quick_security=options.quick_security_scan, deps=deps)
    except FetchFailure as e:
        logger.error(f"[{run_id}] {e}")
        raise
    except Exception:
        logger.error(f"[{run_id}] Structural analysis of {url} failed", exc_info=True)
        raise

    if options.include_ai:
        result, _ = await _enrich(result, options, deps=deps, run_id=run_id)

    logger.info(
        f"[{run_id}] Done in {time.perf_counter() - start:.1f}s: overall {result.overall_score} "
        f"(seo {result.seo.score}, content {result.content.score}, security {result.security.score})"
    )
    return result


async def _analyze_competitor(
    url: str,
    slots: asyncio.Semaphore,
    *,
    deps: Collaborators,
    run_id: str,
) -> Optional[CompetitorEntry]:
    async with slots:
        try:
            result = await asyncio.wait_for(
                _analyze_page(url, quick_security=True, deps=deps),
                COMPETITOR_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{run_id}] Competitor {url} timed out after {COMPETITOR_TIMEOUT:.0f}s, dropped")
            return None
        except Exception as e:
            logger.warning(f"[{run_id}] Competitor {url} dropped: {type(e).__name__}: {e}")
            return None
    return CompetitorEntry(url=url, result=result)


async def analyze_competitors_only(
    urls: Sequence[str],
    *,
    deps: Collaborators = DEFAULT_COLLABORATORS,
    run_id: Optional[str] = None,
) -> list[CompetitorEntry]:
    """Quick-mode analysis of each URL, at most COMPETITOR_CONCURRENCY at a time. Failures are dropped."""
    run_id = run_id or _new_run_id()
    unique = list(dict.fromkeys(scraper.normalize_url(u) for u in urls if u.strip()))
    if not unique:
        return []

    slots = asyncio.Semaphore(COMPETITOR_CONCURRENCY)
    entries = await asyncio.gather(*(
        _analyze_competitor(u, slots, deps=deps, run_id=run_id) for u in unique
    ))
    survivors = [e for e in entries if e is not None]
    logger.info(f"[{run_id}] Competitors analysed: {len(survivors)}/{len(unique)}")
    return survivors


async def run_competitor_analysis(
    primary_url: str,
    competitor_urls: Sequence[str],
    options: Optional[AnalysisOptions] = None,
    *,
    deps: Collaborators = DEFAULT_COLLABORATORS,
) -> ComparisonSet:
    """Full analysis of primary_url plus quick analyses of its competitors, with comparative AI commentary."""
    options = options or AnalysisOptions()
    primary_url = scraper.normalize_url(primary_url)
    run_id = _new_run_id()
    start = time.perf_counter()
    logger.info(f"[{run_id}] Competitor analysis started for {primary_url} vs {len(competitor_urls)} competitors")

    try:
        primary = await _analyze_page(primary_url, quick_security=False, deps=deps)
    except FetchFailure as e:
        logger.error(f"[{run_id}] {e}")
        raise

    others = [u for u in competitor_urls if scraper.normalize_url(u) != primary_url]
    competitors = await analyze_competitors_only(others, deps=deps, run_id=run_id)

    if options.include_ai:
        primary, competitors = await _enrich(
            primary, options, deps=deps, run_id=run_id, competitors=competitors,
        )

    logger.info(
        f"[{run_id}] Competitor analysis done in {time.perf_counter() - start:.1f}s: "
        f"primary {primary.overall_score}, competitors {[c.result.overall_score for c in competitors]}"
    )
    return ComparisonSet(primary=primary, competitors=competitors)
