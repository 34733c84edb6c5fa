from __future__ import annotations

import re


class AllAdError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "ERROR"

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message


class ValidationError(AllAdError):
    code = "VALIDATION_ERROR"


class NotFoundError(AllAdError):
    code = "NOT_FOUND"


class AuthenticationError(AllAdError):
    code = "UNAUTHENTICATED"


class AuthorizationError(AllAdError):
    code = "FORBIDDEN"


class TeamError(AllAdError):
    code = "TEAM_ERROR"


class ConfigError(AllAdError):
    code = "CONFIG_ERROR"


class OAuthError(AllAdError):
    """OAuth connect failures. `code` is the OAuth error string (access_denied, invalid_state, ...)."""

    def __init__(self, code: str, message: str | None = None, *, user_message: str | None = None):
        super().__init__(message or code, user_message=user_message)
        self.code = code


class PlatformError(AllAdError):
    code = "PLATFORM_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        platform: str,
        code: str | None = None,
        retryable: bool | None = None,
        user_message: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, user_message=user_message or _USER_MESSAGES.get(code or self.code))
        self.platform = platform
        if code:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[{self.platform}] {self.message} ({self.code})"


class PlatformAuthError(PlatformError):
    code = "AUTH_ERROR"
    retryable = True


class TokenExpiredError(PlatformAuthError):
    code = "TOKEN_EXPIRED"


class RateLimitError(PlatformError):
    code = "RATE_LIMIT"
    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class PlatformPermissionError(PlatformError):
    code = "PERMISSION_ERROR"


class ConflictError(PlatformError):
    code = "CONFLICT"


class AccessTierError(PlatformError):
    code = "ACCESS_TIER"


class PlatformConnectionError(PlatformError):
    code = "NETWORK_ERROR"
    retryable = True


_USER_MESSAGES = {
    "AUTH_ERROR": "인증이 만료되었습니다. 플랫폼을 다시 연결해주세요.",
    "TOKEN_EXPIRED": "토큰이 만료되었습니다. 다시 로그인해주세요.",
    "RATE_LIMIT": "요청이 너무 많습니다. 잠시 후 다시 시도해주세요.",
    "PERMISSION_ERROR": "이 작업을 수행할 권한이 없습니다.",
    "CONFLICT": "캠페인이 이미 요청한 상태입니다.",
    "ACCESS_TIER": "개발자 토큰 승인 등급이 부족합니다.",
    "NETWORK_ERROR": "네트워크 연결을 확인해주세요.",
    "NOT_FOUND": "요청한 리소스를 찾을 수 없습니다.",
    "INVALID_REQUEST": "잘못된 요청입니다.",
    "INTERNAL": "플랫폼 서버에 일시적인 문제가 발생했습니다.",
    "UNSUPPORTED": "이 플랫폼에서는 지원하지 않는 기능입니다.",
    "PLATFORM_ERROR": "알 수 없는 오류가 발생했습니다.",
}

# vendor error code -> error class, per platform
_VENDOR_CODES: dict[str, dict[str, type[PlatformError]]] = {
    "facebook": {
        "190": TokenExpiredError,
        "102": PlatformAuthError,
        "4": RateLimitError,
        "17": RateLimitError,
        "32": RateLimitError,
        "613": RateLimitError,
        "10": PlatformPermissionError,
        "200": PlatformPermissionError,
    },
    "tiktok": {
        "40100": PlatformAuthError,
        "40101": PlatformAuthError,
        "40102": TokenExpiredError,
        "40001": RateLimitError,
    },
    "google": {
        "DEVELOPER_TOKEN_NOT_APPROVED": AccessTierError,
        "DEVELOPER_TOKEN_PROHIBITED": AccessTierError,
        "USER_PERMISSION_DENIED": PlatformPermissionError,
        "RESOURCE_EXHAUSTED": RateLimitError,
        "UNAUTHENTICATED": PlatformAuthError,
    },
}

_TIKTOK_SERVER_CODES = {"50001", "50002"}
_NETWORK_WORDS = re.compile(r"network|fetch|timeout|timed out|connection", re.IGNORECASE)


def parse_platform_error(
    platform: str,
    *,
    status_code: int | None = None,
    error_code: str | int | None = None,
    message: str = "",
) -> PlatformError:
    """Map an HTTP status / vendor error code / message to a typed PlatformError."""
    msg = str(message or "unknown error")
    kw = {"platform": platform, "status_code": status_code}

    code = str(error_code).strip() if error_code is not None else ""
    if code:
        cls = _VENDOR_CODES.get(platform, {}).get(code)
        if cls is not None:
            return cls(msg, **kw)
        if platform == "tiktok" and code in _TIKTOK_SERVER_CODES:
            return PlatformError(msg, code="INTERNAL", retryable=True, **kw)

    if status_code is not None:
        if status_code == 401:
            # Coupang signs every request; a 401 means the keys are wrong, not expired.
            if platform == "coupang":
                return PlatformAuthError(msg, retryable=False, **kw)
            return PlatformAuthError(msg, **kw)
        if status_code == 403:
            return PlatformPermissionError(msg, **kw)
        if status_code == 404:
            return PlatformError(msg, code="NOT_FOUND", **kw)
        if status_code == 409:
            return ConflictError(msg, **kw)
        if status_code == 429:
            return RateLimitError(msg, **kw)
        if status_code >= 500:
            return PlatformError(msg, code="INTERNAL", retryable=True, **kw)
        if status_code == 400:
            return PlatformError(msg, code="INVALID_REQUEST", **kw)

    if _NETWORK_WORDS.search(msg):
        return PlatformConnectionError(msg, **kw)
    return PlatformError(msg, **kw)
