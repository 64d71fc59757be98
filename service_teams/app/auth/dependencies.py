"""
Bearer token authentication for routes.
"""

from fastapi import Request

from shared.errors import UnauthorizedError
from shared.logging import get_logger, set_user_context

from .tokens import AuthContext, TokenService


class BearerAuthenticator:
    """FastAPI dependency resolving ``Authorization: Bearer <token>``."""

    def __init__(self, tokens: TokenService):
        self.tokens = tokens
        self.logger = get_logger("teams.auth")

    async def __call__(self, request: Request) -> AuthContext:
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            self._reject(request, "missing_header")
            raise UnauthorizedError(
                reason="Missing or invalid authorization header!",
                solution="Provide a valid 'Bearer <token>' header!",
            )

        if not auth_header.startswith("Bearer "):
            self._reject(request, "bad_scheme")
            raise UnauthorizedError(
                reason="Invalid authorization header format!",
                solution="Use 'Bearer <token>' format!",
            )

        token = auth_header[7:].strip()
        if not token:
            self._reject(request, "empty_token")
            raise UnauthorizedError(
                reason="Empty token provided!",
                solution="Include a valid Bearer token!",
            )

        context = self.tokens.decode_access_token(token)
        request.state.auth = context
        set_user_context(context.user_id)
        return context

    def _reject(self, request: Request, cause: str) -> None:
        self.logger.warning("Authentication failed", path=request.url.path, cause=cause)
