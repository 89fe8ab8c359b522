"""
graders.py — TLS certificate grading and HTTP security-header grading.

Both own their own scoring: the certificate grader maps a grade letter to a
number via ssl_grade_score(), the header grader returns a 0-100 score.
How those two numbers are combined is security_analyzer's business.
"""

import asyncio
import logging
import math
import os
import socket
import ssl
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from errors import TLSGradingError
from models import Certificate, HeaderGrade, TLSGrade
from scoring import round_score

logger = logging.getLogger("sitepulse-engine")

TLS_TIMEOUT = float(os.getenv("TLS_TIMEOUT", "10"))

_CERT_HAS_EXPIRED = 10   # OpenSSL X509_V_ERR_CERT_HAS_EXPIRED

# Longest prefix first so "A+" is not swallowed by "A".
_GRADE_SCORES = [
    ("A+", 100), ("A-", 90), ("A", 95),
    ("B+", 85), ("B-", 75), ("B", 80),
    ("C+", 70), ("C-", 60), ("C", 65),
    ("D", 50), ("E", 40), ("F", 20), ("T", 10),
]


def ssl_grade_score(grade: str) -> int:
    """Map a certificate grade to 0-100. Unknown grades get the benefit of the doubt."""
    for prefix, score in _GRADE_SCORES:
        if grade.startswith(prefix):
            return score
    return 50


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------

def days_until(expiry: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left on a certificate, counting a partial day as a full one."""
    now = now or datetime.now(timezone.utc)
    return math.ceil((expiry - now).total_seconds() / 86400)


def expiry_grade(days_until_expiry: Optional[int]) -> str:
    if days_until_expiry is None:
        return "A"
    if days_until_expiry < 0:
        return "F"
    if days_until_expiry < 7:
        return "C"
    if days_until_expiry < 30:
        return "B-"
    return "A"


def _inspect_certificate(hostname: str, port: int = 443) -> TLSGrade:
    """Blocking handshake; callers go through run_in_executor."""
    context = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, port), timeout=TLS_TIMEOUT) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as ssock:
                cert = ssock.getpeercert()
                protocol = ssock.version() or "TLS"
    except ssl.SSLCertVerificationError as e:
        # The host answered but the chain does not verify.
        grade = "F" if e.verify_code == _CERT_HAS_EXPIRED else "B"
        logger.info(f"[TLS] {hostname} failed verification ({e.verify_message}) → {grade}")
        return TLSGrade(grade=grade)
    except (OSError, ssl.SSLError) as e:
        raise TLSGradingError(f"TLS handshake with {hostname} failed: {e}")

    not_after = cert.get("notAfter")
    not_before = cert.get("notBefore")
    days_until_expiry = None
    valid_to = valid_from = None
    if not_after:
        expiry = datetime.fromtimestamp(ssl.cert_time_to_seconds(not_after), tz=timezone.utc)
        valid_to = expiry.isoformat()
        days_until_expiry = days_until(expiry)
    if not_before:
        valid_from = datetime.fromtimestamp(ssl.cert_time_to_seconds(not_before), tz=timezone.utc).isoformat()

    grade = expiry_grade(days_until_expiry)

    issuer = dict(x[0] for x in cert.get("issuer", ()))
    return TLSGrade(
        grade=grade,
        certificate=Certificate(
            issuer=issuer.get("organizationName") or issuer.get("commonName"),
            valid_from=valid_from,
            valid_to=valid_to,
            days_until_expiry=days_until_expiry,
        ),
        protocols=[protocol],
    )


async def grade_certificate(url: str) -> TLSGrade:
    """Grade the certificate served for url's host. Raises TLSGradingError when unreachable."""
    parsed = urlparse(url)
    try:
        hostname = parsed.hostname
        port = parsed.port or 443
    except ValueError as e:
        raise TLSGradingError(f"Bad host or port in {url!r}: {e}")
    if not hostname:
        raise TLSGradingError(f"No hostname in {url!r}")
    if parsed.scheme != "https":
        return TLSGrade(grade="F")

    loop = asyncio.get_running_loop()
    try:
        result = await asyncio.wait_for(
            loop.run_in_executor(None, _inspect_certificate, hostname, port),
            timeout=TLS_TIMEOUT + 2,
        )
    except asyncio.TimeoutError:
        raise TLSGradingError(f"TLS handshake with {hostname} timed out")

    logger.info(
        f"[TLS] {hostname} → grade {result.grade}, "
        f"expires in {result.certificate.days_until_expiry if result.certificate.days_until_expiry is not None else 'n/a'} days"
    )
    return result


# ---------------------------------------------------------------------------
# Security headers
# ---------------------------------------------------------------------------

def grade_headers(headers: dict[str, str]) -> HeaderGrade:
    """Six presence checks, score = share passed."""
    h = {k.lower(): v for k, v in headers.items()}
    checks = {
        "content_security_policy":   bool(h.get("content-security-policy")),
        "strict_transport_security": bool(h.get("strict-transport-security")),
        "x_frame_options":           bool(h.get("x-frame-options")),
        "x_content_type_options":    bool(h.get("x-content-type-options")),
        "referrer_policy":           bool(h.get("referrer-policy")),
        "permissions_policy":        bool(h.get("permissions-policy") or h.get("feature-policy")),
    }
    score = round_score(sum(checks.values()) / len(checks) * 100)
    return HeaderGrade(**checks, score=score)
