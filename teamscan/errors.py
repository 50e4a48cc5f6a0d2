"""Error taxonomy shared by the API, the analysis pipeline and the CRM client.

Every error carries an HTTP ``status_code`` and a stable machine-readable
``code``; ``app.py`` renders both through a single exception handler.
"""
from __future__ import annotations


class TeamscanError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(TeamscanError):
    status_code = 404
    code = "not_found"


class Conflict(TeamscanError):
    status_code = 409
    code = "conflict"

    def __init__(self, message: str, existing_id: int | None = None):
        super().__init__(message)
        self.existing_id = existing_id


class InvalidInput(TeamscanError):
    status_code = 400
    code = "validation_error"


class UnsupportedFileType(InvalidInput):
    code = "unsupported_file_type"


class NoFounders(TeamscanError):
    """The startup has no founders, so there is nothing to analyze."""
    status_code = 422
    code = "no_founders"


class InsufficientData(TeamscanError):
    status_code = 422
    code = "insufficient_data"


class TokenExpired(TeamscanError):
    status_code = 410
    code = "token_expired"


class SurveyAlreadyCompleted(TeamscanError):
    status_code = 410
    code = "survey_completed"


# ---------------------------------------------------------------------------
# Upstream (LLM / CRM) failures. None of these are retried automatically;
# ``retryable`` is a hint for callers that want to offer a retry button.
# ---------------------------------------------------------------------------


class UpstreamError(TeamscanError):
    status_code = 502
    code = "upstream_error"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class UpstreamConfigError(UpstreamError):
    """Missing or placeholder credentials / endpoint. Fix configuration, do not retry."""
    status_code = 503
    code = "upstream_config"


class UpstreamTimeout(UpstreamError):
    status_code = 504
    code = "upstream_timeout"

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class UpstreamRateOrAuth(UpstreamError):
    code = "upstream_rate_or_auth"


class UpstreamEmptyOutput(UpstreamError):
    code = "upstream_empty_output"


class UpstreamTruncated(UpstreamEmptyOutput):
    """finish_reason=length with no content: the prompt or the output ceiling is too large."""
    code = "upstream_truncated"


class UpstreamContentFiltered(UpstreamEmptyOutput):
    code = "upstream_content_filtered"


class MalformedOutput(UpstreamError):
    """The model answered, but not with the shape we asked for."""
    code = "malformed_output"


class PipedriveError(UpstreamError):
    code = "crm_error"
