# =============================================================================
# AI Service — Claude-backed summaries, keyword market data, AI visibility
# =============================================================================
#
# - summarize(): structured report commentary (optionally comparative)
# - research_keywords(): estimated volume / CPC / difficulty per keyword
# - check_visibility(): asks the model about the brand, scores how well it knows it
#
# Every call returns its token/cost usage. Nothing here retries: one failed
# call is terminal and the orchestrator decides what that means.
# =============================================================================

import asyncio
import json
import logging
import os
from typing import Any, Optional

from anthropic import APIError, AsyncAnthropic
from pydantic import ValidationError

from errors import AIServiceError
from models import (
    AIUsage,
    AIVisibility,
    CompetitorEntry,
    ContentResult,
    KeywordData,
    KeywordResponse,
    SecurityResult,
    SEOResult,
    SummaryResponse,
    VisibilityQuery,
    VisibilityResponse,
)
from scoring import round_score

logger = logging.getLogger("sitepulse-engine")

CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-haiku-4-5")
CLAUDE_PREMIUM_MODEL = os.getenv("CLAUDE_PREMIUM_MODEL", "claude-sonnet-4-6")

# USD per 1M tokens (input, output)
PRICING = {
    "claude-haiku-4-5":  (1.00, 5.00),
    "claude-sonnet-4-6": (3.00, 15.00),
    "claude-opus-4-1":   (15.00, 75.00),
}
_DEFAULT_PRICING = PRICING["claude-sonnet-4-6"]

MAX_RESEARCH_KEYWORDS = 20
VISIBILITY_KEYWORD_QUERIES = 2

# Phrases a model uses when it does not know the brand
UNKNOWN_PHRASES = [
    "i don't know", "i do not know", "not familiar with", "no information",
    "don't have information", "do not have information", "not aware of",
    "unable to find", "can't find", "cannot find", "haven't heard of",
    "no specific", "not enough information", "i'm not sure",
    # Norwegian
    "kjenner ikke til", "har ikke informasjon", "vet ikke", "ingen informasjon",
    "ikke kjent med", "kan ikke finne", "ukjent for meg", "har ikke hørt om",
    "ingen spesifikk", "ikke nok informasjon",
]

anthropic_client = AsyncAnthropic()           # reads ANTHROPIC_API_KEY from env


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------

def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = PRICING.get(model, _DEFAULT_PRICING)
    return round(input_tokens / 1_000_000 * input_price + output_tokens / 1_000_000 * output_price, 6)


def _scan(text: str, start: int = 0):
    """Yield (index, char) for characters outside JSON string literals."""
    in_string = escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string:
            yield i, ch


def _ends_in_string(text: str) -> bool:
    in_string = escape = False
    for ch in text:
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
    return in_string


def _repair_truncated_json(fragment: str) -> dict | list | None:
    """Close whatever a max_tokens cutoff left open."""
    trimmed = fragment.rstrip()
    if _ends_in_string(trimmed):
        trimmed += '"'
    trimmed = trimmed.rstrip().rstrip(",")

    stack = []
    for _, ch in _scan(trimmed):
        if ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack and stack[-1] == {"}": "{", "]": "["}[ch]:
            stack.pop()
    trimmed += "".join("}" if opener == "{" else "]" for opener in reversed(stack))

    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        return None


def extract_json(text: str) -> dict | list:
    """
    Pull JSON out of a model reply: tolerates markdown fences, preamble,
    trailing commentary and truncated output. Unparseable text comes back
    as {"raw_response": text}.
    """
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
        text = text.rsplit("```", 1)[0].strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return {"raw_response": text}
    start = min(starts)
    opener = text[start]
    closer = "}" if opener == "{" else "]"

    depth = 0
    for i, ch in _scan(text, start):
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start : i + 1])
                except json.JSONDecodeError:
                    break

    repaired = _repair_truncated_json(text[start:])
    return repaired if repaired is not None else {"raw_response": text}


async def call_claude(
    system: str,
    prompt: str,
    *,
    model: str = CLAUDE_MODEL,
    max_tokens: int = 2000,
    client: Optional[AsyncAnthropic] = None,
) -> tuple[str, AIUsage]:
    """Single Claude call. Returns (text, usage); API errors propagate."""
    response = await (client or anthropic_client).messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=[{"role": "user", "content": prompt}],
    )
    text = "".join(getattr(block, "text", "") for block in response.content)
    if not text.strip():
        raise AIServiceError(f"Empty response from {model}")

    usage = response.usage
    return text, AIUsage(
        tokens_used=usage.input_tokens + usage.output_tokens,
        cost_usd=calculate_cost(model, usage.input_tokens, usage.output_tokens),
    )


# =============================================================================
# Summary
# =============================================================================

SUMMARY_SYSTEM = """You are an experienced SEO and digital marketing consultant.
Analyse the website data you are given and produce concrete, actionable recommendations.

Your recommendations must be:
1. Specific and measurable
2. Prioritised by expected impact
3. Adapted to the company's industry when one is given
4. Realistic to implement

You ALWAYS respond with valid JSON only: no markdown, no explanation, no preamble."""

SUMMARY_SCHEMA = """{
  "overallAssessment": "2-3 sentence summary of the site's state",
  "keyFindings": [{"text": "finding", "type": "positive|negative|neutral"}],
  "keywordAnalysis": {
    "summary": "assessment of keyword usage (2-3 sentences)",
    "primaryKeywords": ["main keyword found on the page", "..."],
    "missingKeywords": ["keyword the page should target but does not", "..."],
    "keywordDensityAssessment": "too high, too low or about right?",
    "titleKeywordMatch": "are the main keywords in the title tag?",
    "targetKeywordMatches": "which of the requested keywords appear, and how",
    "recommendations": "2-3 sentences"
  },
  "recommendations": [
    {
      "priority": "high|medium|low",
      "category": "seo|content|security|performance|accessibility",
      "title": "short title",
      "description": "what to do",
      "expectedImpact": "expected effect"
    }
  ],
  "competitorComparison": {
    "summary": "who is best positioned and why (only when competitors are given)",
    "scoreAnalysis": "what the score gaps mean in practice",
    "yourStrengths": ["..."],
    "competitorStrengths": ["..."],
    "opportunities": ["..."],
    "quickWins": ["..."]
  },
  "actionPlan": {"immediate": ["..."], "shortTerm": ["..."], "longTerm": ["..."]}
}"""


def _flag(value: bool) -> str:
    return "present" if value else "MISSING"


def build_summary_prompt(
    url: str,
    seo: SEOResult,
    content: ContentResult,
    security: SecurityResult,
    competitors: Optional[list[CompetitorEntry]] = None,
    industry: Optional[str] = None,
    target_keywords: Optional[list[str]] = None,
) -> str:
    meta, h = seo.meta, security.headers
    days = security.ssl.certificate.days_until_expiry
    top_terms = "\n".join(
        f'  - "{k.word}": {k.count} times ({k.density}% density)' for k in content.keywords[:10]
    ) or "  none found"

    lines = [
        f"Analyse the following data for {url}:",
        "",
        "## SEO",
        f"- SEO score: {seo.score}/100",
        f"- Title: {meta.title.content or 'MISSING'} ({meta.title.length} chars)",
        f"- Meta description: {meta.description.content or 'MISSING'} ({meta.description.length} chars)",
        f"- H1 tags: {seo.headings.h1.count}",
        f"- Images without alt text: {seo.images.without_alt} of {seo.images.total}",
        f"- Internal links: {seo.links.internal.count}, external links: {seo.links.external.count}",
        "",
        "## Content",
        f"- Word count: {content.word_count}",
        f"- LIX readability: {content.readability.index} ({content.readability.level})",
        f"- Has call-to-action: {'yes' if content.has_cta else 'no'}",
        "- Top terms on the page:",
        top_terms,
        "",
        "## Security",
        f"- TLS grade: {security.ssl.grade}",
        f"- Certificate expires in: {f'{days} days' if days is not None else 'unknown'}",
        f"- Security headers score: {h.score}/100",
        f"  - Content-Security-Policy: {_flag(h.content_security_policy)}",
        f"  - Strict-Transport-Security: {_flag(h.strict_transport_security)}",
        f"  - X-Frame-Options: {_flag(h.x_frame_options)}",
        f"  - X-Content-Type-Options: {_flag(h.x_content_type_options)}",
        f"  - Referrer-Policy: {_flag(h.referrer_policy)}",
        f"  - Permissions-Policy: {_flag(h.permissions_policy)}",
        f"- Security score: {security.score}/100",
    ]

    if competitors:
        lines += [
            "",
            "## Competitors",
            f"Your scores: SEO {seo.score}/100, content {content.score}/100, security {security.score}/100",
        ]
        for n, comp in enumerate(competitors, 1):
            r = comp.result
            lines += [
                f"Competitor {n}: {comp.url}",
                f"- SEO: {r.seo.score}/100",
                f"- Content: {r.content.score}/100 ({r.content.word_count} words)",
                f"- Security: {r.security.score}/100",
                f"- Overall: {r.overall_score}/100",
            ]

    if industry:
        lines += ["", f"Industry: {industry}"]

    if target_keywords:
        lines += ["", "## Keywords the owner wants to rank for"]
        lines += [f'- "{k}"' for k in target_keywords]
        lines.append("Assess how well the page covers these and how to use them better.")

    lines += ["", "Respond with this JSON structure:", SUMMARY_SCHEMA]
    if not competitors:
        lines.append("Omit competitorComparison, no competitors were analysed.")
    return "\n".join(lines)


async def summarize(
    url: str,
    seo: SEOResult,
    content: ContentResult,
    security: SecurityResult,
    *,
    competitors: Optional[list[CompetitorEntry]] = None,
    industry: Optional[str] = None,
    target_keywords: Optional[list[str]] = None,
    premium: bool = False,
    client: Optional[AsyncAnthropic] = None,
) -> SummaryResponse:
    model = CLAUDE_PREMIUM_MODEL if premium else CLAUDE_MODEL
    prompt = build_summary_prompt(url, seo, content, security, competitors, industry, target_keywords)
    raw, usage = await call_claude(SUMMARY_SYSTEM, prompt, model=model, max_tokens=3000, client=client)

    summary = extract_json(raw)
    if not isinstance(summary, dict) or "raw_response" in summary:
        raise AIServiceError(f"Summary from {model} was not a JSON object")

    logger.info(f"[AI] summary for {url} via {model}: {usage.tokens_used} tokens, ${usage.cost_usd:.4f}")
    return SummaryResponse(summary=summary, model=model, usage=usage)


def proposed_keywords(summary: dict[str, Any], limit: int = MAX_RESEARCH_KEYWORDS) -> list[str]:
    """primaryKeywords + missingKeywords from a summary, de-duplicated, in order."""
    analysis = summary.get("keywordAnalysis") or {}
    terms = [
        str(k).strip()
        for k in (analysis.get("primaryKeywords") or []) + (analysis.get("missingKeywords") or [])
        if str(k).strip()
    ]
    return list(dict.fromkeys(terms))[:limit]


# =============================================================================
# Keyword research
# =============================================================================

KEYWORD_SYSTEM = """You are an SEO specialist with deep knowledge of search demand and Google Ads pricing.
Give realistic estimates based on what you know about search behaviour.

For each keyword estimate:
- searchVolume: monthly searches (10-100000)
- cpc: average cost per click in USD
- competition: "low", "medium" or "high" (advertiser competition)
- competitionScore: 0-100, 100 = fiercest
- intent: "informational", "commercial", "transactional" or "navigational"
- difficulty: SEO difficulty 0-100, 100 = hardest to rank for
- trend: "rising", "stable" or "declining"

You ALWAYS respond with valid JSON only."""

_COMPETITION = {"low": "low", "lav": "low", "medium": "medium", "high": "high", "høy": "high"}
_TREND = {
    "rising": "rising", "stigende": "rising",
    "stable": "stable", "stabil": "stable",
    "declining": "declining", "synkende": "declining",
}


def _keyword_from_json(item: dict[str, Any]) -> KeywordData:
    return KeywordData(
        keyword=str(item["keyword"]),
        search_volume=int(item.get("searchVolume") or 0),
        cpc=float(item.get("cpc") or 0.0),
        competition=_COMPETITION.get(str(item.get("competition", "")).lower(), "medium"),
        competition_score=int(item.get("competitionScore") or 0),
        intent=str(item.get("intent") or "informational"),
        difficulty=int(item.get("difficulty") or 0),
        trend=_TREND.get(str(item.get("trend", "")).lower(), "stable"),
    )


async def research_keywords(
    keywords: list[str],
    industry: Optional[str] = None,
    *,
    client: Optional[AsyncAnthropic] = None,
) -> KeywordResponse:
    if not keywords:
        return KeywordResponse()

    numbered = "\n".join(f'{i}. "{k}"' for i, k in enumerate(keywords, 1))
    prompt = (
        f"Analyse these keywords{f' for the {industry} industry' if industry else ''}:\n\n"
        f"{numbered}\n\n"
        'Return: {"keywords": [{"keyword": "...", "searchVolume": 1000, "cpc": 1.5, '
        '"competition": "medium", "competitionScore": 45, "intent": "commercial", '
        '"difficulty": 35, "trend": "stable"}]}'
    )
    raw, usage = await call_claude(KEYWORD_SYSTEM, prompt, max_tokens=1500, client=client)

    parsed = extract_json(raw)
    items = parsed.get("keywords") if isinstance(parsed, dict) else parsed
    if not isinstance(items, list):
        raise AIServiceError("Keyword research reply had no keyword list")

    results: list[KeywordData] = []
    for item in items:
        try:
            results.append(_keyword_from_json(item))
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(f"[AI] skipping malformed keyword entry {item!r}: {e}")

    logger.info(f"[AI] keyword research: {len(results)}/{len(keywords)} keywords, {usage.tokens_used} tokens")
    return KeywordResponse(keywords=results, usage=usage)


# =============================================================================
# AI visibility
# =============================================================================

VISIBILITY_SYSTEM = """You are a helpful assistant. Answer from your own knowledge.
If you know the company or website mentioned, describe what you know.
If you do not know it, say so honestly.
Keep the answer short (2-3 sentences)."""


def visibility_queries(domain: str, company_name: Optional[str], keywords: list[str]) -> list[str]:
    subject = company_name or domain
    queries = [
        f"What do you know about {subject}?",
        f"Can you recommend {company_name}?" if company_name else f"What does {domain} offer?",
    ]
    queries += [f"Which companies are best at {k}?" for k in keywords[:VISIBILITY_KEYWORD_QUERIES]]
    return queries


def judge_answer(answer: str, domain: str, company_name: Optional[str]) -> tuple[bool, bool]:
    """(cited, mentioned) for one model answer."""
    text = answer.lower()
    named = domain.lower() in text or bool(company_name and company_name.lower() in text)
    knows = not any(phrase in text for phrase in UNKNOWN_PHRASES)
    return named and knows, named or knows


def visibility_score(cited: int, mentioned: int, valid: int) -> int:
    if valid == 0:
        return 0
    return round_score((cited * 2 + mentioned) / (valid * 3) * 100)


def visibility_level(score: int) -> tuple[str, str]:
    if score >= 70:
        return "high", "AI models know the business well and can recommend it to users."
    if score >= 40:
        return "medium", "AI models know something about the business, but visibility can improve."
    if score > 0:
        return "low", "AI models have limited knowledge of the business."
    return "none", "AI models do not seem to know the business yet."


def visibility_recommendations(score: int, cited: int, mentioned: int) -> list[str]:
    recs = []
    if score < 70:
        recs.append("Publish content that answers the common questions in your industry")
    if score < 50:
        recs.append("Grow your online presence through PR, articles and industry directories")
    if cited == 0:
        recs.append("Create authoritative content that establishes the business as an expert")
    if mentioned == 0:
        recs.append("Build brand awareness through social media and reviews")
    return recs


async def check_visibility(
    domain: str,
    company_name: Optional[str] = None,
    keywords: Optional[list[str]] = None,
    *,
    client: Optional[AsyncAnthropic] = None,
) -> VisibilityResponse:
    queries = visibility_queries(domain, company_name, keywords or [])

    async def ask(query: str) -> tuple[VisibilityQuery, AIUsage] | None:
        try:
            answer, usage = await call_claude(VISIBILITY_SYSTEM, query, max_tokens=200, client=client)
        except (APIError, AIServiceError, asyncio.TimeoutError) as e:
            logger.warning(f"[AI] visibility query failed ({query!r}): {type(e).__name__}: {e}")
            return None
        cited, mentioned = judge_answer(answer, domain, company_name)
        return VisibilityQuery(query=query, cited=cited, mentioned=mentioned, ai_response=answer), usage

    answered = [r for r in await asyncio.gather(*(ask(q) for q in queries)) if r is not None]
    if not answered:
        raise AIServiceError(f"Every visibility query for {domain} failed")

    usage = sum((u for _, u in answered), AIUsage())
    results = [q for q, _ in answered]
    cited = sum(q.cited for q in results)
    mentioned = sum(q.mentioned for q in results)
    score = visibility_score(cited, mentioned, len(results))
    level, description = visibility_level(score)

    logger.info(f"[AI] visibility for {domain}: {score} ({level}), {cited} cited / {mentioned} mentioned")
    return VisibilityResponse(
        visibility=AIVisibility(
            score=score,
            level=level,
            description=description,
            queries_tested=len(results),
            times_cited=cited,
            times_mentioned=mentioned,
            queries=results,
            recommendations=visibility_recommendations(score, cited, mentioned),
        ),
        usage=usage,
    )
