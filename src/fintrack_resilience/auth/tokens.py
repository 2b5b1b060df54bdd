"""Credential records and the refresh endpoint payloads."""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class AuthTokens(BaseModel):
    """Current access/refresh token pair with an absolute expiry."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: datetime

    def seconds_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def expires_within(self, seconds: float, now: datetime) -> bool:
        """Return true when expiry falls inside the next ``seconds``."""
        return self.seconds_until_expiry(now) <= seconds


class RefreshResponse(BaseModel):
    """Body returned by ``POST /auth/refresh``."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(
        min_length=1,
        validation_alias=AliasChoices("accessToken", "access_token"),
    )
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )
    expires_in_seconds: float = Field(
        gt=0,
        validation_alias=AliasChoices(
            "expiresInSeconds", "expiresIn", "expires_in_seconds", "expires_in"
        ),
    )

    def to_tokens(self, *, previous: AuthTokens, now: datetime) -> AuthTokens:
        """Build the replacement token pair, keeping the old refresh token
        when the server did not rotate it."""
        return AuthTokens(
            access_token=self.access_token,
            refresh_token=self.refresh_token or previous.refresh_token,
            expires_at=now + timedelta(seconds=self.expires_in_seconds),
        )
