"""
Error Taxonomy and Global Error Handling

This module defines the exception hierarchy shared by every ragstream
component, plus the FastAPI exception handlers that map it onto HTTP
responses.

Taxonomy
--------
- Transient      : timeouts, 5xx, 429, connection resets. Retried by
                   RetryPolicy and surfaced only after exhaustion.
- Validation     : bad vector dimension, k < 1, empty text. Immediate,
                   never retried.
- Configuration  : missing endpoint / credentials. Raised at construction.
- Not-found      : lookups return ``None``; ``SessionNotFoundError`` is only
                   raised where a live session is required.

Design Goals
------------
- Never leak internal exception details to clients
- Always return deterministic, machine-readable error responses
- Log full stack traces internally for debugging
"""

from __future__ import annotations

import logging
from typing import Dict, Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("ragstream.errors")


# ---------------------------------------------------------------------
# Exception Hierarchy
# ---------------------------------------------------------------------

class RagError(Exception):
    """Base class for all ragstream errors."""

    code: str = "rag_error"


class ConfigurationError(RagError):
    """Required endpoint, credential or provider setting is missing."""

    code = "configuration_error"


class InvalidArgumentError(RagError, ValueError):
    """Caller supplied an invalid argument. Never retried."""

    code = "invalid_argument"


class InvalidDimensionError(InvalidArgumentError):
    """An embedding vector does not have the required dimension."""

    code = "invalid_dimension"

    def __init__(self, expected: int, actual: int, context: str = "") -> None:
        self.expected = expected
        self.actual = actual
        suffix = f" ({context})" if context else ""
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}{suffix}"
        )


class TransientError(RagError):
    """A failure that may succeed when retried."""

    code = "transient_error"


class EmbeddingError(RagError):
    """Raised when embedding generation fails permanently."""

    code = "embedding_error"


class TransientEmbeddingError(TransientError, EmbeddingError):
    """Retryable provider failure (timeout, 5xx, 429, connection reset)."""

    code = "embedding_unavailable"


class RetryExhaustedError(RagError):
    """All retry attempts failed; wraps the last failure."""

    code = "retry_exhausted"

    def __init__(
        self,
        operation: str,
        attempts: int,
        last_error: Optional[BaseException],
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = type(last_error).__name__ if last_error else "unknown"
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {detail}: {last_error}"
        )


class SessionNotFoundError(RagError, LookupError):
    """The referenced session does not exist or is no longer active."""

    code = "session_not_found"


class JobNotFoundError(RagError, LookupError):
    """The referenced background ingestion job is unknown."""

    code = "job_not_found"


class StreamNormalizationError(RagError):
    """Streamed model output could not be decoded as UTF-8."""

    code = "stream_error"


class StreamStateError(StreamNormalizationError):
    """A normalizer was used after it finished or was reused."""

    code = "stream_state_error"


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

def _error_response(status_code: int, code: str, detail: str) -> JSONResponse:
    payload: Dict[str, Any] = {"error": code, "detail": detail}
    return JSONResponse(status_code=status_code, content=payload)


async def invalid_argument_handler(
    request: Request,
    exc: InvalidArgumentError,
) -> JSONResponse:
    """Validation failures are the caller's fault: 400 with the message."""
    logger.info(
        "Rejected request %s %s: %s",
        request.method,
        request.url.path,
        exc,
    )
    return _error_response(400, exc.code, str(exc))


async def not_found_handler(
    request: Request,
    exc: RagError,
) -> JSONResponse:
    return _error_response(404, exc.code, str(exc))


async def unavailable_handler(
    request: Request,
    exc: RagError,
) -> JSONResponse:
    """
    Upstream dependency unavailable (provider down, retries exhausted,
    service misconfigured). Details stay in the log.
    """
    logger.error(
        "Upstream failure during request %s %s: %s",
        request.method,
        request.url.path,
        exc,
    )
    return _error_response(503, exc.code, "Upstream service unavailable")


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Behavior
    --------
    - Logs the full exception stack trace for internal diagnostics.
    - Returns a generic 500 error to the client with no internal details.

    Parameters
    ----------
    request : Request
        The incoming HTTP request that triggered the exception.

    exc : Exception
        The uncaught exception instance.

    Returns
    -------
    JSONResponse
        A JSON 500 response with a minimal error payload.
    """
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return _error_response(500, "internal_server_error", "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the ragstream error mapping to a FastAPI application."""
    app.add_exception_handler(InvalidArgumentError, invalid_argument_handler)
    app.add_exception_handler(SessionNotFoundError, not_found_handler)
    app.add_exception_handler(JobNotFoundError, not_found_handler)
    app.add_exception_handler(ConfigurationError, unavailable_handler)
    app.add_exception_handler(RetryExhaustedError, unavailable_handler)
    app.add_exception_handler(TransientError, unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
