"""
database.py — SQLAlchemy models, session management and the quota store.

Uses PostgreSQL in production (via DATABASE_URL) and falls back to SQLite
locally. All functions here are synchronous; async callers go through
loop.run_in_executor.

Quota counters are only ever changed by a single conditional UPDATE, so two
concurrent requests cannot both pass a "> 0" check and overdraw a counter.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from errors import AnalysisNotFound, QuotaExceeded
from models import ComparisonSet, StoredAnalysis, UpdateQuota

logger = logging.getLogger("sitepulse")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./sitepulse.db")

# Some hosts expose postgres:// but SQLAlchemy requires postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(
    DATABASE_URL,
    # SQLite needs this flag; ignored by Postgres
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

# ---------------------------------------------------------------------------
# Tier limits
# ---------------------------------------------------------------------------

FREE_LIMITS = {
    "monthly_analyses":    3,
    "monthly_articles":    5,
    "competitor_updates":  2,
    "keyword_updates":     2,
    "max_competitors":     2,
}
PREMIUM_LIMITS = {
    "monthly_analyses":    999,
    "monthly_articles":    999,
    "competitor_updates":  999,
    "keyword_updates":     999,
    "max_competitors":     5,
}
MAX_KEYWORDS_PER_UPDATE = 10


def limits_for(is_premium: bool) -> dict[str, int]:
    return PREMIUM_LIMITS if is_premium else FREE_LIMITS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_period(now: Optional[datetime] = None) -> str:
    return (now or _utcnow()).strftime("%Y-%m")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class Analysis(Base):
    __tablename__ = "analyses"

    id                           = Column(String(36), primary_key=True)
    account_id                   = Column(String(64), index=True, nullable=True)
    url                          = Column(String(2048), nullable=False)
    # Full ComparisonSet as JSON text; avoids a JSON column type that
    # behaves differently across SQLite and Postgres.
    results_json                 = Column(Text, nullable=False)
    overall_score                = Column(Integer, nullable=False)
    ai_model                     = Column(String(64), default="none")
    tokens_used                  = Column(Integer, default=0)
    cost_usd                     = Column(Float, default=0.0)
    is_premium                   = Column(Boolean, default=False, nullable=False)
    remaining_competitor_updates = Column(Integer, nullable=False)
    remaining_keyword_updates    = Column(Integer, nullable=False)
    created_at                   = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at                   = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class MonthlyUsage(Base):
    __tablename__ = "monthly_usage"
    __table_args__ = (UniqueConstraint("account_id", "period", name="uq_usage_account_period"),)

    id                        = Column(Integer, primary_key=True, autoincrement=True)
    account_id                = Column(String(64), nullable=False, index=True)
    period                    = Column(String(7), nullable=False)      # YYYY-MM
    analyses_count            = Column(Integer, default=0, nullable=False)
    article_generations_count = Column(Integer, default=0, nullable=False)


def init_db() -> None:
    """Create all tables. Safe to call on every startup."""
    Base.metadata.create_all(bind=engine)


# ---------------------------------------------------------------------------
# Analyses
# ---------------------------------------------------------------------------

def _to_stored(row: Analysis) -> StoredAnalysis:
    return StoredAnalysis(
        id=row.id,
        account_id=row.account_id,
        comparison=ComparisonSet.model_validate_json(row.results_json),
        quota=UpdateQuota(
            remaining_competitor_updates=row.remaining_competitor_updates,
            remaining_keyword_updates=row.remaining_keyword_updates,
            is_premium=row.is_premium,
        ),
    )


def save_analysis(
    comparison: ComparisonSet,
    *,
    account_id: Optional[str] = None,
    is_premium: bool = False,
) -> StoredAnalysis:
    """Persist a fresh analysis with update counters seeded from the account tier."""
    limits = limits_for(is_premium)
    primary = comparison.primary
    row = Analysis(
        id=str(uuid.uuid4()),
        account_id=account_id,
        url=primary.url,
        results_json=comparison.model_dump_json(),
        overall_score=primary.overall_score,
        ai_model=primary.ai_model,
        tokens_used=primary.usage.tokens_used,
        cost_usd=primary.usage.cost_usd,
        is_premium=is_premium,
        remaining_competitor_updates=limits["competitor_updates"],
        remaining_keyword_updates=limits["keyword_updates"],
    )
    db = SessionLocal()
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
        logger.info(f"[{row.id}] Saved analysis of {row.url} (account={account_id}, premium={is_premium})")
        return _to_stored(row)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def load_analysis(analysis_id: str) -> StoredAnalysis:
    db = SessionLocal()
    try:
        row = db.get(Analysis, analysis_id)
        if row is None:
            raise AnalysisNotFound(analysis_id)
        return _to_stored(row)
    finally:
        db.close()


def _commit_update(analysis_id: str, counter: str, kind: str, comparison: ComparisonSet) -> StoredAnalysis:
    """
    Decrement one update counter and write the new results in one transaction.
    The WHERE clause is the quota check; zero rows updated means no quota left
    (or no such analysis).
    """
    column = getattr(Analysis, counter)
    primary = comparison.primary
    db = SessionLocal()
    try:
        outcome = db.execute(
            update(Analysis)
            .where(Analysis.id == analysis_id, or_(column > 0, Analysis.is_premium.is_(True)))
            .values({
                counter: column - 1,
                "results_json": comparison.model_dump_json(),
                "overall_score": primary.overall_score,
                "tokens_used": primary.usage.tokens_used,
                "cost_usd": primary.usage.cost_usd,
                "updated_at": _utcnow(),
            })
        )
        if outcome.rowcount == 0:
            db.rollback()
            row = db.get(Analysis, analysis_id)
            if row is None:
                raise AnalysisNotFound(analysis_id)
            raise QuotaExceeded(kind, limits_for(row.is_premium)[counter.removeprefix("remaining_")])
        db.commit()

        row = db.get(Analysis, analysis_id)
        db.refresh(row)
        logger.info(f"[{analysis_id}] {kind} committed, {getattr(row, counter)} left")
        return _to_stored(row)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def commit_competitor_update(analysis_id: str, comparison: ComparisonSet) -> StoredAnalysis:
    return _commit_update(analysis_id, "remaining_competitor_updates", "competitor update", comparison)


def commit_keyword_update(analysis_id: str, comparison: ComparisonSet) -> StoredAnalysis:
    return _commit_update(analysis_id, "remaining_keyword_updates", "keyword update", comparison)


# ---------------------------------------------------------------------------
# Monthly usage
# ---------------------------------------------------------------------------

def _ensure_usage_row(db, account_id: str, period: str) -> None:
    exists = db.execute(
        select(MonthlyUsage.id).where(MonthlyUsage.account_id == account_id, MonthlyUsage.period == period)
    ).first()
    if exists:
        return
    try:
        db.add(MonthlyUsage(account_id=account_id, period=period))
        db.commit()
    except IntegrityError:
        # Another request created it first
        db.rollback()


def _count_usage(account_id: str, is_premium: bool, counter: str, limit_key: str, kind: str,
                 now: Optional[datetime] = None) -> int:
    """Atomically bump one monthly counter if under the tier limit. Returns what is left."""
    period = current_period(now)
    limit = limits_for(is_premium)[limit_key]
    column = getattr(MonthlyUsage, counter)
    db = SessionLocal()
    try:
        _ensure_usage_row(db, account_id, period)
        outcome = db.execute(
            update(MonthlyUsage)
            .where(
                MonthlyUsage.account_id == account_id,
                MonthlyUsage.period == period,
                column < limit,
            )
            .values({counter: column + 1})
        )
        if outcome.rowcount == 0:
            db.rollback()
            logger.info(f"{kind} limit reached for account {account_id} ({limit}/{period})")
            raise QuotaExceeded(kind, limit)
        db.commit()

        used = db.execute(
            select(column).where(MonthlyUsage.account_id == account_id, MonthlyUsage.period == period)
        ).scalar_one()
        return limit - used
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def check_and_count_analysis(account_id: str, is_premium: bool = False, now: Optional[datetime] = None) -> int:
    """Reserve one monthly analysis. Raises QuotaExceeded at the tier limit."""
    return _count_usage(account_id, is_premium, "analyses_count", "monthly_analyses", "monthly analyses", now)


def count_article_generation(account_id: str, is_premium: bool = False, now: Optional[datetime] = None) -> int:
    """Reserve one monthly article generation. Raises QuotaExceeded at the tier limit."""
    return _count_usage(
        account_id, is_premium, "article_generations_count", "monthly_articles", "monthly article generations", now,
    )


def refund_analysis(account_id: str, now: Optional[datetime] = None) -> None:
    """Give back a reserved analysis when the run itself failed."""
    db = SessionLocal()
    try:
        db.execute(
            update(MonthlyUsage)
            .where(
                MonthlyUsage.account_id == account_id,
                MonthlyUsage.period == current_period(now),
                MonthlyUsage.analyses_count > 0,
            )
            .values(analyses_count=MonthlyUsage.analyses_count - 1)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_monthly_usage(account_id: str, is_premium: bool = False, now: Optional[datetime] = None) -> dict:
    period = current_period(now)
    limits = limits_for(is_premium)
    db = SessionLocal()
    try:
        row = db.execute(
            select(MonthlyUsage).where(MonthlyUsage.account_id == account_id, MonthlyUsage.period == period)
        ).scalar_one_or_none()
        analyses = row.analyses_count if row else 0
        articles = row.article_generations_count if row else 0
    finally:
        db.close()
    return {
        "period": period,
        "analysesCount": analyses,
        "monthlyLimit": limits["monthly_analyses"],
        "remainingAnalyses": max(0, limits["monthly_analyses"] - analyses),
        "articleGenerations": articles,
        "remainingArticleGenerations": max(0, limits["monthly_articles"] - articles),
    }
