from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

import anthropic
import httpx
import openai

_RETRYABLE_STATUS = {429, 500, 502, 503, 504, 529}
_FATAL_STATUS = {400, 401, 403, 404, 422}

_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    httpx.TransportError,
    TimeoutError,
    ConnectionError,
)

_FATAL_TYPES: tuple[type[BaseException], ...] = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.BadRequestError,
)

MSG_BUSY = "Hệ thống đang bận, vui lòng thử lại sau ít phút"
MSG_SLOW = "Kết nối quá chậm, vui lòng thử lại"
MSG_AUTH = "Lỗi xác thực API, vui lòng liên hệ admin"
MSG_UNREACHABLE = "Không thể kết nối đến AI service"
MSG_GENERIC = "Đã xảy ra lỗi, vui lòng thử lại"
MSG_CANCELLED = "Đã hủy"
MSG_RATE_LIMITED = "Bạn đang gửi quá nhiều tin nhắn. Vui lòng đợi một chút."
MSG_ROUND_LIMIT = "Yêu cầu cần quá nhiều bước truy vấn, vui lòng hỏi cụ thể hơn"
MSG_EMPTY_MESSAGE = "Vui lòng nhập câu hỏi"
MSG_MESSAGE_TOO_LONG = "Tin nhắn quá dài (tối đa {limit:,} ký tự)"
MSG_HISTORY_TOO_LONG = "Lịch sử hội thoại quá dài (tối đa {limit} tin nhắn)"
MSG_CONVERSATION_NOT_FOUND = "Không tìm thấy cuộc hội thoại"


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_TRANSIENT = "transport_transient"
    TRANSPORT_FATAL = "transport_fatal"
    TOOL_FAILURE = "tool_failure"
    ROUND_LIMIT = "round_limit"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


@dataclass(frozen=True)
class TransportFailure:
    kind: ErrorKind
    reason: str
    detail: str


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


# Status codes quoted in exception text; digits inside longer numbers do not count.
_TRANSIENT_CODE_IN_TEXT = re.compile(r"(?<!\d)(?:429|502|503)(?!\d)")


def _message_looks_transient(message: str) -> bool:
    lowered = message.lower()
    return (
        "timeout" in lowered
        or "timed out" in lowered
        or "rate limit" in lowered
        or _TRANSIENT_CODE_IN_TEXT.search(message) is not None
    )


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, _FATAL_TYPES):
        return False
    if isinstance(exc, _RETRYABLE_TYPES):
        return True
    status = _status_code(exc)
    if status in _RETRYABLE_STATUS:
        return True
    if status in _FATAL_STATUS:
        return False
    return _message_looks_transient(str(exc))


def classify_transport_error(exc: BaseException) -> ErrorKind:
    if is_retryable_error(exc):
        return ErrorKind.TRANSPORT_TRANSIENT
    return ErrorKind.TRANSPORT_FATAL


def user_friendly_error(exc: BaseException) -> str:
    """Map an internal failure to a short message that is safe to show the user."""
    message = str(exc)
    lowered = message.lower()
    status = _status_code(exc)

    if "rate limit" in lowered or status == 429 or isinstance(exc, (openai.RateLimitError, anthropic.RateLimitError)):
        return MSG_BUSY
    if "timeout" in lowered or "timed out" in lowered or isinstance(exc, TimeoutError):
        return MSG_SLOW
    if status in (401, 403) or isinstance(
        exc,
        (
            openai.AuthenticationError,
            openai.PermissionDeniedError,
            anthropic.AuthenticationError,
            anthropic.PermissionDeniedError,
        ),
    ):
        return MSG_AUTH
    if isinstance(exc, (httpx.TransportError, ConnectionError, openai.APIConnectionError, anthropic.APIConnectionError)):
        return MSG_UNREACHABLE
    if status in (500, 502, 503, 504, 529):
        return MSG_BUSY
    return MSG_GENERIC


def to_transport_failure(exc: BaseException) -> TransportFailure:
    return TransportFailure(
        kind=classify_transport_error(exc),
        reason=user_friendly_error(exc),
        detail=f"{type(exc).__name__}: {exc}",
    )
