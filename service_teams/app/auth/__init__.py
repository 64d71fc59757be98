"""
Authentication helpers for the Teams service.
"""

from .dependencies import BearerAuthenticator
from .tokens import AuthContext, TokenService

__all__ = [
    "AuthContext",
    "BearerAuthenticator",
    "TokenService",
]
