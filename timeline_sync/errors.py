from __future__ import annotations

from typing import Any

from pydantic import ValidationError


class AppError(Exception):
    def __init__(self, status_code: int, public_message: str, code: str = "app_error") -> None:
        super().__init__(public_message)
        self.status_code = int(status_code)
        self.public_message = public_message
        self.code = code


class SessionExpiredError(AppError):
    """The stored LMS session is no longer valid; the user must reconnect."""

    def __init__(self, public_message: str = "session expired") -> None:
        super().__init__(401, public_message, "session_expired")


class ProtocolError(AppError):
    """Upstream answered with something that breaks the expected contract."""

    def __init__(self, public_message: str, code: str) -> None:
        super().__init__(502, public_message, code)


def is_session_expired(error: BaseException) -> bool:
    return isinstance(error, AppError) and error.code == "session_expired"


def is_source_unavailable(error: BaseException) -> bool:
    # 403/404/5xx on an optional per-course source only means "no data from it".
    if not isinstance(error, AppError):
        return False
    if isinstance(error, ProtocolError) or is_session_expired(error):
        return False
    return error.status_code in {403, 404} or error.status_code >= 500


def safe_error_message(error: BaseException) -> str:
    message = str(error)
    return message if message else "unexpected error"


def to_http_error(error: BaseException) -> tuple[int, dict[str, Any]]:
    if isinstance(error, ValidationError):
        issues = error.errors()
        message = str(issues[0].get("msg")) if issues else "invalid request payload"
        return 400, {"error": "invalid_request", "message": message}
    if isinstance(error, AppError):
        return error.status_code, {"error": error.code, "message": error.public_message}
    return 500, {"error": "internal_error", "message": "unexpected server error"}
