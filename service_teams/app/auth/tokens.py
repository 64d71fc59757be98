"""
Password hashing and access token handling.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import jwt
from passlib.context import CryptContext

from shared.errors import UnauthorizedError
from shared.logging import get_logger

from ..models import User

ALGORITHM = "HS256"

# bcrypt is CPU bound; keep it off the event loop
_password_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="bcrypt_")


@dataclass(frozen=True)
class AuthContext:
    """Identity carried by a verified access token."""
    user_id: str
    email: str
    roles: List[str]


class TokenService:
    """Issues and verifies HS256 access tokens and hashes passwords."""

    def __init__(self, secret: str, expiry_seconds: int = 3600, hash_rounds: int = 10):
        self.secret = secret
        self.expiry_seconds = expiry_seconds
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=hash_rounds)
        self.logger = get_logger("teams.auth.tokens")

    async def hash_password(self, password: str) -> str:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(_password_executor, self.pwd_context.hash, password)
        return str(result)

    async def verify_password(self, password: str, hashed_password: str) -> bool:
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                _password_executor,
                self.pwd_context.verify,
                password,
                hashed_password,
            )
        except ValueError as e:
            # unrecognised or corrupt hash
            self.logger.error("Error verifying password", error=str(e))
            return False
        return bool(result)

    def issue_access_token(self, user: User) -> str:
        """Sign a token carrying the user's id, email and membership roles."""
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "id": user.id,
            "email": user.email,
            "roles": user.roles,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.expiry_seconds)).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def decode_access_token(self, token: str) -> AuthContext:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise UnauthorizedError(
                "Token Expired!",
                reason="Session expired!",
                solution="Login again!",
            )
        except jwt.InvalidTokenError:
            raise UnauthorizedError(
                "Invalid Token!",
                reason="Token malformed or invalid signature!",
                solution="Provide a valid token!",
            )

        if not claims.get("id"):
            raise UnauthorizedError(
                "Invalid Token!",
                reason="Token does not contain a valid user ID!",
                solution="Provide a valid token!",
            )

        return AuthContext(
            user_id=claims["id"],
            email=claims.get("email", ""),
            roles=list(claims.get("roles", [])),
        )
