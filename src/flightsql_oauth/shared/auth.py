"""
Wire and value models shared by the token providers.
"""

import time
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator

# 令牌响应中没有 expires_in 时使用的默认有效期（秒）
DEFAULT_EXPIRATION_SECONDS = 3600


class OAuthToken(BaseModel):
    """
    Token endpoint response, RFC 6749 section 5.1.

    ``id_token`` is present when the provider answers with an OpenID Connect
    token response.
    """

    access_token: str
    token_type: str = Field(default="Bearer")
    expires_in: int | None = None
    scope: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None

    @field_validator("token_type", mode="before")
    @classmethod
    def normalize_token_type(cls, v: str | None) -> str:
        if isinstance(v, str):
            # 部分服务端返回小写 "bearer"
            return v.title()
        return "Bearer"

    def bearer_value(self) -> str:
        """The credential presented to the data server: ID token when issued, else the access token."""
        return self.id_token or self.access_token

    def lifetime(self) -> int:
        if self.expires_in and self.expires_in > 0:
            return self.expires_in
        return DEFAULT_EXPIRATION_SECONDS


class OAuthErrorResponse(BaseModel):
    """Error body returned by a token endpoint, RFC 6749 section 5.2."""

    model_config = ConfigDict(extra="allow")

    error: str
    error_description: str | None = None
    error_uri: str | None = None


class OIDCProviderMetadata(BaseModel):
    """
    OpenID Provider metadata (OpenID Connect Discovery 1.0, section 3).

    Endpoints stay plain strings so they are returned exactly as published.
    """

    model_config = ConfigDict(extra="allow")

    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None


class InitiateResponse(BaseModel):
    """Companion service reply to ``GET /oauth/initiate``."""

    model_config = ConfigDict(extra="allow")

    session_uuid: str
    auth_url: str


class SessionStatus(BaseModel):
    """Companion service reply to ``GET /oauth/token/{uuid}``."""

    model_config = ConfigDict(extra="allow")

    status: str
    token: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class TokenInfo:
    """
    A bearer credential and the moment it stops being usable.

    Instances are never patched: a refresh produces a new ``TokenInfo`` that
    replaces the old one in the cache.
    """

    value: str
    # Unix 时间戳；None 表示过期时间未知（由服务端负责刷新）
    expires_at: float | None = None

    @classmethod
    def from_token_response(cls, token: OAuthToken) -> "TokenInfo":
        return cls(value=token.bearer_value(), expires_at=time.time() + token.lifetime())

    def is_expired(self, buffer_seconds: float = 0) -> bool:
        if self.expires_at is None:
            return False
        return time.time() + buffer_seconds >= self.expires_at
