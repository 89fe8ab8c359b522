"""
errors.py — failure taxonomy for the analysis pipeline.

Structural failures (FetchFailure) abort a run. Enrichment and TLS failures
are caught where they happen and degrade the result instead. Quota and
no-op conditions are surfaced to callers as their own types so the API
layer can answer with a limit message rather than a generic 500.
"""


class SitePulseError(Exception):
    """Base class for everything this service raises on purpose."""


class FetchFailure(SitePulseError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"Could not fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class TLSGradingError(SitePulseError):
    """The certificate could not be inspected (host unreachable, handshake failed)."""


class AIServiceError(SitePulseError):
    """The model answered with something we cannot use."""


class QuotaExceeded(SitePulseError):
    def __init__(self, kind: str, limit: int):
        super().__init__(f"{kind} limit reached ({limit})")
        self.kind = kind
        self.limit = limit


class NoOpUpdate(SitePulseError):
    """A partial update was requested that would change nothing."""


class InvalidUpdate(SitePulseError):
    """A partial update request was malformed (empty list, no usable URLs)."""


class AnalysisNotFound(SitePulseError):
    def __init__(self, analysis_id: str):
        super().__init__(f"Analysis {analysis_id} not found")
        self.analysis_id = analysis_id
