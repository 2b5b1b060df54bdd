"""Session credential handling for fintrack_resilience."""

from fintrack_resilience.auth.manager import (
    TOKENS_STORE_KEY,
    InvalidRefreshResponse,
    TokenRefreshManager,
)
from fintrack_resilience.auth.tokens import AuthTokens, RefreshResponse

__all__ = [
    "TOKENS_STORE_KEY",
    "AuthTokens",
    "InvalidRefreshResponse",
    "RefreshResponse",
    "TokenRefreshManager",
]
