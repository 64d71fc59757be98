"""
Domain documents and request bodies for the Teams service.

Documents are stored as plain dicts (snake_case keys) in the document
store; ``to_public()`` renders the camelCase shape returned by the API.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

USERS = "users"
TEAMS = "teams"
PROJECTS = "projects"
BACKUPS = "backups"

_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def new_id() -> str:
    """Generate a document id."""
    return uuid.uuid4().hex


def is_valid_id(value: Any) -> bool:
    """Return True when value looks like an id produced by ``new_id``."""
    return isinstance(value, str) and bool(_ID_PATTERN.match(value))


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class Role(str, Enum):
    """Membership roles."""
    ADMIN = "Admin"
    MEMBER = "Member"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class TeamMembership:
    """One entry of a user's ``teams`` list. ``team`` is None for the platform grant."""
    role: Role
    team: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {"team": self.team, "role": self.role.value}


@dataclass
class User:
    """Platform user and the ordered list of their team memberships."""
    id: str
    name: str
    email: str
    password_hash: str
    teams: List[TeamMembership] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def __post_init__(self):
        self._token_roles: Optional[set] = None
        self._reindex()

    def _reindex(self) -> None:
        # team id -> role, plus every role held anywhere
        self._roles_by_team: Dict[str, Role] = {
            m.team: m.role for m in self.teams if m.team is not None
        }
        self._all_roles = {m.role for m in self.teams}

    @property
    def roles(self) -> List[str]:
        return [m.role.value for m in self.teams]

    def bind_token_roles(self, roles: List[str]) -> "User":
        """Take platform roles from an access token instead of the stored list.

        Tokens carry the roles held when they were issued, so a membership
        granted later only counts after the user logs in again.
        """
        self._token_roles = {r for r in map(Role.parse, roles) if r is not None}
        return self

    @property
    def is_platform_admin(self) -> bool:
        """Admin anywhere in the membership list, team reference irrelevant."""
        roles = self._token_roles if self._token_roles is not None else self._all_roles
        return Role.ADMIN in roles

    @property
    def membership_count(self) -> int:
        return len(self.teams)

    @property
    def team_ids(self) -> List[str]:
        return [m.team for m in self.teams if m.team is not None]

    def role_in(self, team_id: str) -> Optional[Role]:
        return self._roles_by_team.get(team_id)

    def is_member_of(self, team_id: str) -> bool:
        return team_id in self._roles_by_team

    def add_membership(self, team_id: str, role: Role) -> None:
        self.teams.append(TeamMembership(role=role, team=team_id))
        self._reindex()

    def remove_membership(self, team_id: str) -> None:
        self.teams = [m for m in self.teams if m.team != team_id]
        self._reindex()

    def memberships_document(self) -> List[Dict[str, Any]]:
        return [m.to_document() for m in self.teams]

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "password": self.password_hash,
            "teams": self.memberships_document(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "User":
        return cls(
            id=doc["id"],
            name=doc["name"],
            email=doc["email"],
            password_hash=doc["password"],
            teams=[
                TeamMembership(role=Role(entry["role"]), team=entry.get("team"))
                for entry in doc.get("teams", [])
            ],
            created_at=doc.get("created_at", utcnow()),
            updated_at=doc.get("updated_at", utcnow()),
        )

    def to_public(self) -> Dict[str, Any]:
        """User shape returned by the API; the password hash never leaves."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "teams": self.memberships_document(),
        }


@dataclass
class Team:
    id: str
    name: str
    created_by: str
    description: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Team":
        return cls(
            id=doc["id"],
            name=doc["name"],
            description=doc.get("description"),
            created_by=doc["created_by"],
            created_at=doc.get("created_at", utcnow()),
            updated_at=doc.get("updated_at", utcnow()),
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Project:
    id: str
    name: str
    team: str
    created_by: str
    description: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "team": self.team,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Project":
        return cls(
            id=doc["id"],
            name=doc["name"],
            description=doc.get("description"),
            team=doc["team"],
            created_by=doc["created_by"],
            created_at=doc.get("created_at", utcnow()),
            updated_at=doc.get("updated_at", utcnow()),
        )

    def to_public(self, team: Optional[Team] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "team": {"id": team.id, "name": team.name} if team else self.team,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class BackupRecord:
    """Write-once snapshot of documents taken before a destructive write."""
    id: str
    collection_name: str
    data: List[Dict[str, Any]]
    deleted_item_ids: List[Any]
    backup_reason: str
    backup_size: int
    size_formatted: str
    created_at: str = field(default_factory=utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collection_name": self.collection_name,
            "data": self.data,
            "deleted_item_ids": self.deleted_item_ids,
            "backup_reason": self.backup_reason,
            "backup_size": self.backup_size,
            "size_formatted": self.size_formatted,
            "created_at": self.created_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "BackupRecord":
        return cls(
            id=doc["id"],
            collection_name=doc["collection_name"],
            data=list(doc.get("data", [])),
            deleted_item_ids=list(doc.get("deleted_item_ids", [])),
            backup_reason=doc.get("backup_reason", "manual"),
            backup_size=doc.get("backup_size", 0),
            size_formatted=doc.get("size_formatted", "0.00 KB"),
            created_at=doc.get("created_at", utcnow()),
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collectionName": self.collection_name,
            "data": self.data,
            "deletedItems": self.deleted_item_ids,
            "backupReason": self.backup_reason,
            "backupSize": self.backup_size,
            "sizeFormatted": self.size_formatted,
            "createdAt": self.created_at,
        }


# Request bodies

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SignupRequest(_Body):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)


class LoginRequest(_Body):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class CreateUserRequest(SignupRequest):
    team_id: str = Field(..., alias="teamId", min_length=1)


class TeamCreateRequest(_Body):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class TeamUpdateRequest(_Body):
    name: Optional[str] = None
    description: Optional[str] = None


class MemberAddRequest(_Body):
    team_id: str = Field(..., alias="teamId", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)
    role: str = Field(..., min_length=1)


class MemberRemoveRequest(_Body):
    team_id: str = Field(..., alias="teamId", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)


class ProjectCreateRequest(_Body):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    team_id: str = Field(..., alias="teamId", min_length=1)


class ProjectUpdateRequest(_Body):
    name: Optional[str] = None
    description: Optional[str] = None


class ProjectDeleteRequest(_Body):
    project_id: str = Field(..., alias="projectId", min_length=1)


class RestoreRequest(_Body):
    collection_name: str = Field(..., alias="collectionName", min_length=1)
    backup_id: str = Field(..., alias="backupId", min_length=1)
