"""
Error taxonomy for OAuth credential acquisition.

Every failure surfaced to callers is an ``OAuthFlowError``; the subclasses
record which step failed so callers can tell a bad setting from a timeout.
"""


class OAuthFlowError(Exception):
    """Base class for all authentication failures raised by this package."""


# 缺少或无效的配置项，立即失败，不重试
class OAuthConfigurationError(OAuthFlowError):
    """Raised when a required setting is missing, invalid or conflicting."""

    def __init__(self, message: str, *, setting: str | None = None, missing_field: str | None = None) -> None:
        super().__init__(message)
        self.setting = setting
        self.missing_field = missing_field


class OAuthDiscoveryError(OAuthFlowError):
    """Raised when the issuer's discovery document cannot be fetched or parsed."""

    def __init__(self, message: str, *, issuer_url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.issuer_url = issuer_url
        self.status_code = status_code


# 浏览器无法打开、用户拒绝授权、state 不匹配、缺少 code
class OAuthInteractionError(OAuthFlowError):
    """Raised when the user-facing part of a flow cannot complete."""

    def __init__(self, message: str, *, error: str | None = None, error_description: str | None = None) -> None:
        super().__init__(message)
        self.error = error
        self.error_description = error_description


class OAuthTimeoutError(OAuthFlowError):
    """Raised when a callback or polling wait exceeds its bound. Safe to retry."""


class OAuthTokenError(OAuthFlowError):
    """Raised when a token or refresh request is rejected."""

    def __init__(self, message: str, *, status_code: int | None = None, error: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
