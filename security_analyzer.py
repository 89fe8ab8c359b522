# =============================================================================
# Security Analyzer — TLS grade + header grade → composite security score
# =============================================================================
#
# Full mode asks the certificate grader and the header grader.
# Quick mode skips the certificate grader and assumes a decent cert on HTTPS;
# it is what competitor pages get. If the certificate grader cannot reach the
# host, full mode degrades to the quick heuristic instead of failing the run.
# =============================================================================

import asyncio
import logging
from typing import Awaitable, Callable

from errors import TLSGradingError
from graders import grade_certificate, grade_headers, ssl_grade_score
from models import HeaderGrade, SecurityResult, TLSGrade
from scoring import QUICK_HTTPS_SSL_SCORE, security_score

logger = logging.getLogger("sitepulse-engine")

ASSUMED_GRADE = "A (assumed)"

CertificateGrader = Callable[[str], Awaitable[TLSGrade]]
HeaderGrader = Callable[[dict[str, str]], HeaderGrade]


def _assumed_tls(url: str) -> tuple[TLSGrade, int]:
    if url.startswith("https://"):
        return TLSGrade(grade=ASSUMED_GRADE), QUICK_HTTPS_SSL_SCORE
    return TLSGrade(grade="F"), 0


def analyze_security_quick(
    url: str,
    headers: dict[str, str],
    *,
    grade_headers_fn: HeaderGrader = grade_headers,
) -> SecurityResult:
    """Header grade only; the certificate is assumed fine when the URL is HTTPS."""
    header_grade = grade_headers_fn(headers)
    tls, ssl_score = _assumed_tls(url)
    return SecurityResult(
        ssl=tls,
        headers=header_grade,
        score=security_score(ssl_score, header_grade.score),
        mode="quick",
    )


async def analyze_security(
    url: str,
    headers: dict[str, str],
    *,
    grade_certificate_fn: CertificateGrader = grade_certificate,
    grade_headers_fn: HeaderGrader = grade_headers,
) -> SecurityResult:
    # Header grading is a pure function over the map, so only the TLS call is awaited.
    header_grade = grade_headers_fn(headers)
    try:
        tls = await grade_certificate_fn(url)
    except (TLSGradingError, asyncio.TimeoutError, OSError) as e:
        logger.warning(f"[Security] TLS grading unavailable for {url} ({e}); using quick heuristic")
        tls, ssl_score = _assumed_tls(url)
        return SecurityResult(
            ssl=tls,
            headers=header_grade,
            score=security_score(ssl_score, header_grade.score),
            mode="degraded",
        )

    score = security_score(ssl_grade_score(tls.grade), header_grade.score)
    logger.info(f"[Security] {url} → TLS {tls.grade}, headers {header_grade.score} → {score}")
    return SecurityResult(ssl=tls, headers=header_grade, score=score, mode="full")


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

def security_recommendations(result: SecurityResult) -> list[str]:
    recs: list[str] = []

    if not result.ssl.grade.startswith("A"):
        recs.append("Improve the TLS configuration for better security")

    days = result.ssl.certificate.days_until_expiry
    if days is not None and days < 30:
        recs.append(f"The TLS certificate expires in {days} days - renew it soon")

    h = result.headers
    if not h.content_security_policy:
        recs.append("Add a Content-Security-Policy header to mitigate XSS")
    if not h.strict_transport_security:
        recs.append("Enable HSTS (Strict-Transport-Security) to force HTTPS")
    if not h.x_frame_options:
        recs.append("Add an X-Frame-Options header to prevent clickjacking")
    if not h.x_content_type_options:
        recs.append("Add X-Content-Type-Options: nosniff")
    if not h.referrer_policy:
        recs.append("Define a Referrer-Policy to control what the Referer header leaks")
    if not h.permissions_policy:
        recs.append("Add a Permissions-Policy to restrict powerful browser features")

    return recs


def security_grade_description(score: int) -> str:
    if score >= 90:
        return "Excellent security - the site follows best practice"
    if score >= 70:
        return "Good security - a few improvements are possible"
    if score >= 50:
        return "Moderate security - several important improvements recommended"
    if score >= 30:
        return "Weak security - critical improvements needed"
    return "Poor security - immediate action required"
