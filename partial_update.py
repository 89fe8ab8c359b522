# =============================================================================
# Partial updates — re-score only competitors or only keywords of a stored run
# =============================================================================
#
# Both operations are quota-gated per stored analysis. A request that would
# change nothing is rejected before any quota is spent, and each successful
# call costs exactly one update no matter how many items changed.
# =============================================================================

import asyncio
import functools
import logging
from typing import Any, Callable, NamedTuple, Optional, Sequence
from urllib.parse import urlparse

import database
from analysis_engine import DEFAULT_COLLABORATORS, Collaborators, analyze_competitors_only
from errors import AIServiceError, InvalidUpdate, NoOpUpdate, QuotaExceeded
from models import CompetitorEntry, StoredAnalysis
from scraper import normalize_url

logger = logging.getLogger("sitepulse")


async def _run_sync(fn: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking store call without stalling the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args))


class CompetitorDiff(NamedTuple):
    added: list[str]
    removed: list[str]
    kept: list[str]

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


class CompetitorUpdateResult(NamedTuple):
    stored: StoredAnalysis
    added: list[str]
    removed: list[str]
    failed: list[str]


def clean_competitor_urls(urls: Sequence[str]) -> list[str]:
    """Normalise, drop blanks and host-less entries, de-duplicate in order."""
    cleaned = []
    for raw in urls:
        if not raw or not raw.strip():
            continue
        url = normalize_url(raw)
        try:
            host = urlparse(url).hostname
        except ValueError:
            host = None
        if not host or "." not in host:
            logger.warning(f"Skipping invalid competitor URL: {raw!r}")
            continue
        cleaned.append(url)
    return list(dict.fromkeys(cleaned))


def diff_competitors(current: Sequence[str], target: Sequence[str]) -> CompetitorDiff:
    current_set, target_set = set(current), set(target)
    return CompetitorDiff(
        added=[u for u in target if u not in current_set],
        removed=[u for u in current if u not in target_set],
        kept=[u for u in target if u in current_set],
    )


def _check_quota(stored: StoredAnalysis, remaining: int, kind: str, limit_key: str) -> None:
    # Early exit so we do not fetch anything for a request that cannot be committed.
    # The store re-checks atomically on commit.
    if remaining <= 0 and not stored.quota.is_premium:
        raise QuotaExceeded(kind, database.limits_for(False)[limit_key])


# ---------------------------------------------------------------------------
# Competitors
# ---------------------------------------------------------------------------

async def update_competitors(
    analysis_id: str,
    target_urls: Sequence[str],
    *,
    deps: Collaborators = DEFAULT_COLLABORATORS,
) -> CompetitorUpdateResult:
    """
    Bring the stored competitor set in line with target_urls.
    Only newly added URLs are fetched; kept entries are reused as stored.
    """
    target = clean_competitor_urls(target_urls)
    if target_urls and not target:
        raise InvalidUpdate("No valid competitor URLs provided")

    stored: StoredAnalysis = await _run_sync(database.load_analysis, analysis_id)
    primary_url = stored.comparison.primary.url
    target = [u for u in target if u != primary_url]

    max_competitors = database.limits_for(stored.quota.is_premium)["max_competitors"]
    if len(target) > max_competitors:
        raise InvalidUpdate(f"At most {max_competitors} competitors allowed on this plan")

    diff = diff_competitors(stored.comparison.competitor_urls, target)
    if diff.is_empty:
        raise NoOpUpdate("Competitor set is unchanged")
    _check_quota(stored, stored.quota.remaining_competitor_updates, "competitor update", "competitor_updates")

    logger.info(f"[{analysis_id}] Competitor update: +{diff.added} -{diff.removed} ={diff.kept}")
    fresh = await analyze_competitors_only(diff.added, deps=deps, run_id=analysis_id[:8]) if diff.added else []

    by_url: dict[str, CompetitorEntry] = {c.url: c for c in stored.comparison.competitors}
    by_url.update({c.url: c for c in fresh})
    failed = [u for u in diff.added if u not in by_url]
    if failed and len(failed) == len(diff.added) and not diff.removed:
        raise InvalidUpdate(f"None of the new competitors could be analysed: {', '.join(failed)}")

    competitors = [by_url[u] for u in target if u in by_url]
    comparison = stored.comparison.model_copy(update={"competitors": competitors})
    updated = await _run_sync(database.commit_competitor_update, analysis_id, comparison)

    return CompetitorUpdateResult(stored=updated, added=diff.added, removed=diff.removed, failed=failed)


# ---------------------------------------------------------------------------
# Keywords
# ---------------------------------------------------------------------------

def clean_keywords(keywords: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    unique = []
    for k in (k.strip() for k in keywords if k):
        if k and k.lower() not in seen:
            seen.add(k.lower())
            unique.append(k)
    return unique[: database.MAX_KEYWORDS_PER_UPDATE]


async def update_keywords(
    analysis_id: str,
    keywords: Sequence[str],
    industry: Optional[str] = None,
    *,
    deps: Collaborators = DEFAULT_COLLABORATORS,
) -> StoredAnalysis:
    """Re-run keyword market research for a new list and replace the stored table."""
    wanted = clean_keywords(keywords)
    if not wanted:
        raise InvalidUpdate("No keywords provided")

    stored: StoredAnalysis = await _run_sync(database.load_analysis, analysis_id)
    primary = stored.comparison.primary
    current = {k.keyword.lower() for k in primary.keyword_research or []}
    if current and current == {k.lower() for k in wanted}:
        raise NoOpUpdate("Keyword list is unchanged")
    _check_quota(stored, stored.quota.remaining_keyword_updates, "keyword update", "keyword_updates")

    logger.info(f"[{analysis_id}] Keyword update: {wanted}")
    research = await deps.research_keywords(wanted, industry)
    if not research.keywords:
        raise AIServiceError("Keyword research returned no data")

    comparison = stored.comparison.model_copy(update={
        "primary": primary.model_copy(update={
            "keyword_research": research.keywords,
            "usage": primary.usage + research.usage,
        }),
    })
    return await _run_sync(database.commit_keyword_update, analysis_id, comparison)
