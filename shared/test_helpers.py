"""
Test helper functions and factory methods for the Team Management services.

Documents are produced in their stored shape so tests can seed a document
store directly without going through the HTTP API.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from passlib.context import CryptContext

DEFAULT_PASSWORD = "password123"
TEST_SECRET = "test-secret"

# lowest bcrypt cost; only for tests
_test_pwd_context = CryptContext(schemes=["bcrypt"], bcrypt__rounds=4)
_hash_cache: Dict[str, str] = {}


def hash_test_password(password: str = DEFAULT_PASSWORD) -> str:
    """bcrypt hash of ``password``, computed once per value."""
    if password not in _hash_cache:
        _hash_cache[password] = _test_pwd_context.hash(password)
    return _hash_cache[password]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DataFactory:
    """Factory for stored documents."""

    @staticmethod
    def membership(role: str, team: Optional[str] = None) -> Dict[str, Any]:
        return {"team": team, "role": role}

    @staticmethod
    def user_document(name: str = "John Doe",
                      email: Optional[str] = None,
                      teams: Optional[List[Dict[str, Any]]] = None,
                      password: str = DEFAULT_PASSWORD,
                      user_id: Optional[str] = None) -> Dict[str, Any]:
        user_id = user_id or uuid.uuid4().hex
        return {
            "id": user_id,
            "name": name,
            "email": email or f"{user_id[:8]}@example.com",
            "password": hash_test_password(password),
            "teams": list(teams) if teams is not None else [{"team": None, "role": "Member"}],
            "created_at": _now(),
            "updated_at": _now(),
        }

    @staticmethod
    def team_document(name: str, created_by: str,
                      description: Optional[str] = None,
                      team_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": team_id or uuid.uuid4().hex,
            "name": name,
            "description": description,
            "created_by": created_by,
            "created_at": _now(),
            "updated_at": _now(),
        }

    @staticmethod
    def project_document(name: str, team: str, created_by: str,
                         description: Optional[str] = None,
                         created_at: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": uuid.uuid4().hex,
            "name": name,
            "description": description,
            "team": team,
            "created_by": created_by,
            "created_at": created_at or _now(),
            "updated_at": _now(),
        }


class MockTokenGenerator:
    """Generate HS256 access tokens for testing."""

    def __init__(self, secret: str = TEST_SECRET):
        self.secret = secret

    def generate_access_token(self, user: Dict[str, Any], expires_in: int = 3600) -> str:
        """Generate an access token for a stored user document."""
        now = datetime.now(timezone.utc)
        payload = {
            "id": user["id"],
            "email": user["email"],
            "roles": [entry["role"] for entry in user.get("teams", [])],
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def generate_expired_token(self, user: Dict[str, Any]) -> str:
        return self.generate_access_token(user, expires_in=-60)

    def auth_headers(self, user: Dict[str, Any]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.generate_access_token(user)}"}


def get_test_config_overrides() -> Dict[str, Any]:
    """Configuration overrides for a fast, self-contained test service."""
    return {
        "env": "test",
        "log_level": "warning",
        "database_dsn": None,
        "db_connect_attempts": 2,
        "db_connect_base_delay": 0.0,
        "access_token_secret": TEST_SECRET,
        "password_hash_rounds": 4,
    }


# Global instances for easy access
data_factory = DataFactory()
mock_token_generator = MockTokenGenerator()
