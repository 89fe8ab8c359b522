"""
scoring.py — weightings shared by the analyzers and the orchestrator.

All scores round half-up, so 38.5 becomes 39 where Python's round() gives 38.
"""

import math

# Overall page score
OVERALL_WEIGHTS = {"seo": 0.4, "content": 0.3, "security": 0.3}

# Security composite
SSL_WEIGHT = 0.55
HEADER_WEIGHT = 0.45

# Quick security mode assumes a decent certificate on HTTPS
QUICK_HTTPS_SSL_SCORE = 70


def round_half_up(value: float, ndigits: int = 0) -> float:
    # The epsilon keeps 0.3 * 5 == 1.4999999… from rounding down.
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5 + 1e-9) / factor


def round_score(value: float) -> int:
    return int(round_half_up(value))


def clamp(score: float, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, int(score)))


def overall_score(seo: int, content: int, security: int) -> int:
    return round_score(
        seo * OVERALL_WEIGHTS["seo"]
        + content * OVERALL_WEIGHTS["content"]
        + security * OVERALL_WEIGHTS["security"]
    )


def security_score(ssl_score: int, header_score: int) -> int:
    return round_score(ssl_score * SSL_WEIGHT + header_score * HEADER_WEIGHT)
