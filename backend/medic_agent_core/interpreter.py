from __future__ import annotations

import structlog
from fastapi.responses import JSONResponse

from .admission import AdmissionDecision
from .errors import AssistantError
from .writer import ResponseWriter

logger = structlog.get_logger(__name__)

STREAM_ERROR_NOTICE = "\n\nSorry, there was an error generating the response."
RATE_LIMIT_MESSAGE = "You have reached the message limit for today. Please try again later."
TIMEOUT_MESSAGE = "The request took too long to process. Please try again."


def rate_limit_response(decision: AdmissionDecision) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded", "message": RATE_LIMIT_MESSAGE},
        headers={"X-RateLimit-Reason": decision.reason or "rate_limited"},
    )


def timeout_response() -> JSONResponse:
    return JSONResponse(
        status_code=408,
        content={"error": "Request timeout", "message": TIMEOUT_MESSAGE},
    )


class ErrorInterpreter:
    def client_message(self, exc: BaseException) -> str:
        if isinstance(exc, AssistantError):
            return exc.message
        return "Unknown error"

    def to_response(self, exc: BaseException) -> JSONResponse:
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to generate response", "message": self.client_message(exc)},
        )

    def notify_stream(self, writer: ResponseWriter) -> None:
        writer.write(STREAM_ERROR_NOTICE)
        writer.end()

    def handle(self, exc: BaseException, writer: ResponseWriter) -> JSONResponse | None:
        """Report ``exc`` on whichever channel is still open.

        Returns a JSON response while nothing has been sent; otherwise appends a
        trailing notice to the stream, terminates it and returns None.
        """
        logger.error(
            "chat_request_failed",
            error_type=type(exc).__name__,
            headers_sent=writer.headers_sent,
            exc_info=False if isinstance(exc, AssistantError) else exc,
        )
        if writer.headers_sent:
            self.notify_stream(writer)
            return None
        return self.to_response(exc)
