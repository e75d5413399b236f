"""
Custom exception classes for unified error handling.

Every error that can reach the ingestion stream carries a stable `code`
matching the event vocabulary consumed by the client.
"""

import re

from fastapi import HTTPException


class AppBaseError(Exception):
    """Base exception for all application errors."""
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ValidationError(AppBaseError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Invalid upload data", detail: str | None = None):
        super().__init__(message=message, detail=detail)


class InvalidFileError(AppBaseError):
    code = "INVALID_FILE"

    def __init__(self, message: str = "Only PDF files are supported"):
        super().__init__(message=message)


class FileTooLargeError(AppBaseError):
    code = "FILE_TOO_LARGE"

    def __init__(self, limit_mb: int):
        super().__init__(
            message="File too large",
            detail=f"Maximum upload size is {limit_mb}MB.",
        )


class PdfParseError(AppBaseError):
    """Raised by the PDF adapter when the bytes cannot be read as a PDF."""
    code = "PDF_PARSE_ERROR"

    def __init__(self, message: str = "Failed to parse PDF content", detail: str | None = None):
        super().__init__(message=message, detail=detail)


class EmptyPdfError(AppBaseError):
    code = "EMPTY_PDF"

    def __init__(self):
        super().__init__(message="PDF contains no extractable text")


class ExtractionError(AppBaseError):
    code = "EXTRACTION_ERROR"

    def __init__(self, message: str = "Failed to extract content from PDF"):
        super().__init__(message=message)


class LLMQuotaExceededError(AppBaseError):
    code = "LLM_QUOTA_EXCEEDED"

    def __init__(self):
        super().__init__(
            message="AI service quota exceeded. Please contact your administrator.",
        )


class ForbiddenError(AppBaseError):
    code = "FORBIDDEN"

    def __init__(self, message: str = "Admin access required"):
        super().__init__(message=message)


class QuotaExceededError(AppBaseError):
    """Raised by the quota collaborator when the user's daily LLM budget is spent."""
    code = "QUOTA_EXCEEDED"

    def __init__(self, usage: int | None = None, limit: int | None = None):
        self.usage = usage
        self.limit = limit
        message = f"Usage {usage}/{limit} exceeded" if limit else "Usage limit reached"
        super().__init__(message=message)


class NotFoundError(AppBaseError):
    code = "NOT_FOUND"

    def __init__(self, message: str = "Document not found"):
        super().__init__(message=message)


class DatabaseError(AppBaseError):
    """Raised by repositories when Supabase returns no row or fails."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message=message, detail=detail)


class AllKeysUnavailableError(AppBaseError):
    """Raised by the key pool when every credential is disabled or cooling down."""

    def __init__(self, pool_size: int):
        super().__init__(
            message="All LLM API keys are unavailable",
            detail=f"{pool_size} key(s) configured, none eligible.",
        )


# ── Provider error classification ────────────────────────

_QUOTA_PATTERN = re.compile(r"quota|rate.?limit|429|RESOURCE_EXHAUSTED", re.IGNORECASE)


def extract_status_code(error: BaseException) -> int | None:
    """Find an HTTP status on a provider exception or anything it wraps.

    SDKs disagree on where they keep it: `status_code` (openai, httpx),
    integer `code` (google api_core), integer `status`, or `response.status_code`.
    """
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("status_code", "code", "status"):
            value = getattr(current, attr, None)
            if isinstance(value, int) and not isinstance(value, bool) and 100 <= value < 600:
                return value
        response = getattr(current, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
        current = current.__cause__ or current.__context__
    return None


def is_llm_quota_error(error: BaseException) -> bool:
    """True when a provider failure means the upstream quota/rate limit is exhausted."""
    if isinstance(error, AllKeysUnavailableError):
        return True
    if extract_status_code(error) == 429:
        return True
    return bool(_QUOTA_PATTERN.search(str(error)))


# ── Utility: convert to HTTPException ────────────────────

def app_error_to_http(error: AppBaseError, status_code: int = 400) -> HTTPException:
    """Convert an AppBaseError to an HTTPException with consistent JSON body."""
    return HTTPException(
        status_code=status_code,
        detail={
            "error": error.message,
            "detail": error.detail,
            "code": error.code,
            "type": type(error).__name__,
        },
    )
