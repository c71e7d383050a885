"""
finsync authentication and token management.

Provides OAuth2 password/MFA grants and automatic refresh for token-based
banking APIs.
"""

from finsync.auth.tokens import OAuth2TokenManager, TokenData

__all__ = [
    "OAuth2TokenManager",
    "TokenData",
]
