"""Custom exceptions for the feedback ingestion pipeline."""

from typing import Optional


class FeedbackPipelineError(Exception):
    """Base exception for the feedback pipeline."""

    pass


class UpstreamError(FeedbackPipelineError):
    """Raised when the upstream feedback source cannot serve a chunk."""

    pass


class UpstreamTransportError(UpstreamError):
    """Raised on HTTP-level failures: non-2xx status, timeout, connection error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamLogicalError(UpstreamError):
    """Raised when the upstream envelope reports an error or is malformed."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class AIProviderError(FeedbackPipelineError):
    """Raised when the AI provider call fails or its response cannot be parsed."""

    pass


class PersistenceError(FeedbackPipelineError):
    """Raised when the persistent store is unreachable or rejects a write."""

    pass
