# =============================================================================
# SitePulse — FastAPI Backend
# =============================================================================
# Website health scoring: SEO structure, content quality and transport
# security, weighted into one score, with optional AI commentary, keyword
# market data and competitor comparison.
#
# Endpoints:
#   POST /analyze                       full run (optionally with competitors)
#   POST /analyze/competitors           quick-mode competitor scores only
#   GET  /analyses/{id}                 stored run + remaining update quota
#   POST /analyses/{id}/competitors     re-score only the competitor set
#   POST /analyses/{id}/keywords        re-run only keyword research
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import asyncio
import functools
import logging
import os
from datetime import datetime
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

load_dotenv()                       # reads .env into os.environ before the modules below

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("sitepulse")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")

if not ANTHROPIC_API_KEY:
    logger.warning("ANTHROPIC_API_KEY is not set; AI enrichment will be skipped on every run")

import database
from analysis_engine import analyze_competitors_only, run_competitor_analysis, run_full_analysis
from ai_service import CLAUDE_MODEL, CLAUDE_PREMIUM_MODEL
from content_analyzer import readability_description
from errors import AnalysisNotFound, FetchFailure, InvalidUpdate, NoOpUpdate, QuotaExceeded
from models import AnalysisOptions, AnalysisResult, ComparisonSet, StoredAnalysis
from partial_update import clean_competitor_urls, update_competitors, update_keywords
from scraper import normalize_url
from security_analyzer import security_grade_description, security_recommendations

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SitePulse API",
    version="1.0.0",
    description="Website SEO, content and security scoring",
)

# CORS: dev origins by default, set ALLOWED_ORIGINS in production
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    database.init_db()
    logger.info("Database tables ready")


async def _run_sync(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Synchronous DB work goes to the thread pool so it never blocks the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


# =============================================================================
# Error mapping
# =============================================================================

@app.exception_handler(QuotaExceeded)
async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
    return JSONResponse(
        status_code=429,
        content={"error": str(exc), "limitReached": True, "kind": exc.kind, "limit": exc.limit},
    )


@app.exception_handler(NoOpUpdate)
async def noop_update_handler(request: Request, exc: NoOpUpdate):
    return JSONResponse(status_code=400, content={"error": str(exc), "noChanges": True})


@app.exception_handler(InvalidUpdate)
async def invalid_update_handler(request: Request, exc: InvalidUpdate):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(AnalysisNotFound)
async def not_found_handler(request: Request, exc: AnalysisNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(FetchFailure)
async def fetch_failure_handler(request: Request, exc: FetchFailure):
    return JSONResponse(status_code=502, content={"error": str(exc), "url": exc.url})


# =============================================================================
# Request models
# =============================================================================

def _valid_url(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("URL is required")
    url = normalize_url(v)
    if not clean_competitor_urls([url]):
        raise ValueError(f"Invalid URL format: {v}")
    return url


class AnalyzeRequest(BaseModel):
    url: str
    competitor_urls: list[str] = []
    keywords: list[str] = []
    include_ai: bool = True
    use_premium_ai: bool = False
    quick_security_scan: bool = False
    industry: Optional[str] = None
    company_name: Optional[str] = None
    check_ai_visibility: bool = True
    # Account identity and tier come from the (external) account service
    account_id: Optional[str] = None
    is_premium: bool = False

    @field_validator("url")
    @classmethod
    def url_valid(cls, v: str) -> str:
        return _valid_url(v)

    @field_validator("keywords")
    @classmethod
    def keywords_clean(cls, v: list[str]) -> list[str]:
        return [k.strip() for k in v if k and k.strip()]

    def options(self) -> AnalysisOptions:
        return AnalysisOptions(
            include_ai=self.include_ai and bool(ANTHROPIC_API_KEY),
            use_premium_ai_model=self.use_premium_ai,
            quick_security_scan=self.quick_security_scan,
            industry=self.industry,
            target_keywords=self.keywords,
            company_name=self.company_name,
            check_ai_visibility=self.check_ai_visibility,
            is_premium_account=self.is_premium,
        )


class CompetitorsRequest(BaseModel):
    competitor_urls: list[str]


class KeywordUpdateRequest(BaseModel):
    keywords: list[str]
    industry: Optional[str] = None


class ArticleUsageRequest(BaseModel):
    is_premium: bool = False


# =============================================================================
# Response shaping
# =============================================================================

def _report(result: AnalysisResult) -> dict:
    body = result.model_dump(mode="json")
    body["readability_description"] = readability_description(result.content.readability.index)
    body["security_description"] = security_grade_description(result.security.score)
    body["security_recommendations"] = security_recommendations(result.security)
    return body


def _stored_response(stored: StoredAnalysis, **extra: Any) -> dict:
    return {
        "success": True,
        "analysisId": stored.id,
        **_report(stored.comparison.primary),
        "competitors": [c.model_dump(mode="json") for c in stored.comparison.competitors],
        "quota": stored.quota.model_dump(mode="json"),
        **extra,
    }


# =============================================================================
# Analysis endpoints
# =============================================================================

@app.post("/analyze")
async def analyze(request: AnalyzeRequest):
    """Full analysis of one URL, with competitors when competitor_urls is given."""
    competitors = [u for u in clean_competitor_urls(request.competitor_urls) if u != request.url]
    if request.competitor_urls and not competitors:
        raise InvalidUpdate("No valid competitor URLs provided")
    max_competitors = database.limits_for(request.is_premium)["max_competitors"]
    if len(competitors) > max_competitors:
        raise InvalidUpdate(f"At most {max_competitors} competitors allowed on this plan")

    if request.account_id:
        remaining = await _run_sync(database.check_and_count_analysis, request.account_id, request.is_premium)
        logger.info(f"Account {request.account_id}: {remaining} analyses left this month")

    try:
        if competitors:
            comparison = await run_competitor_analysis(request.url, competitors, request.options())
        else:
            comparison = ComparisonSet(primary=await run_full_analysis(request.url, request.options()))
    except Exception:
        if request.account_id:
            await _run_sync(database.refund_analysis, request.account_id)
        raise

    stored = await _run_sync(
        database.save_analysis, comparison,
        account_id=request.account_id, is_premium=request.is_premium,
    )
    extra = {}
    if request.account_id:
        extra["monthlyUsage"] = await _run_sync(database.get_monthly_usage, request.account_id, request.is_premium)
    return _stored_response(stored, **extra)


@app.post("/analyze/competitors")
async def analyze_competitors(request: CompetitorsRequest):
    """Quick-mode scores for a list of competitor URLs; nothing is stored."""
    urls = clean_competitor_urls(request.competitor_urls)
    if not urls:
        raise InvalidUpdate("No valid competitor URLs provided")
    entries = await analyze_competitors_only(urls)
    return {"success": True, "competitors": [e.model_dump(mode="json") for e in entries]}


@app.get("/analyses/{analysis_id}")
async def get_analysis(analysis_id: str):
    stored = await _run_sync(database.load_analysis, analysis_id)
    return _stored_response(stored)


@app.post("/analyses/{analysis_id}/competitors")
async def update_analysis_competitors(analysis_id: str, request: CompetitorsRequest):
    outcome = await update_competitors(analysis_id, request.competitor_urls)
    return _stored_response(
        outcome.stored,
        added=outcome.added,
        removed=outcome.removed,
        failed=outcome.failed,
    )


@app.post("/analyses/{analysis_id}/keywords")
async def update_analysis_keywords(analysis_id: str, request: KeywordUpdateRequest):
    stored = await update_keywords(analysis_id, request.keywords, request.industry)
    return _stored_response(stored)


# =============================================================================
# Monthly usage
# =============================================================================

@app.get("/usage/{account_id}")
async def monthly_usage(account_id: str, is_premium: bool = False):
    usage = await _run_sync(database.get_monthly_usage, account_id, is_premium)
    return {"success": True, "monthlyUsage": usage}


@app.post("/usage/{account_id}/articles")
async def record_article_generation(account_id: str, request: ArticleUsageRequest):
    """Count one generated article against the month. 429 once the plan's allowance is used up."""
    remaining = await _run_sync(database.count_article_generation, account_id, request.is_premium)
    logger.info(f"Account {account_id}: {remaining} article generations left this month")
    usage = await _run_sync(database.get_monthly_usage, account_id, request.is_premium)
    return {"success": True, "remaining": remaining, "monthlyUsage": usage}


# =============================================================================
# Health & info
# =============================================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "api_key_set": bool(ANTHROPIC_API_KEY),
    }


@app.get("/info")
async def info():
    return {
        "name": "SitePulse API",
        "version": "1.0.0",
        "models": {"standard": CLAUDE_MODEL, "premium": CLAUDE_PREMIUM_MODEL},
        "limits": {"free": database.FREE_LIMITS, "premium": database.PREMIUM_LIMITS},
        "endpoints": {
            "analyze": "POST /analyze",
            "competitors": "POST /analyze/competitors",
            "get_analysis": "GET /analyses/{id}",
            "update_competitors": "POST /analyses/{id}/competitors",
            "update_keywords": "POST /analyses/{id}/keywords",
            "health": "GET /health",
        },
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
