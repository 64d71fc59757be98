"""
Authorization engine for the Teams service.

Stateless checks over already-resolved users, teams and projects. Each rule
fails with its own error entry so callers see why an action was refused.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional

from shared.errors import ApiError, BadRequestError, ConflictError, ForbiddenError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import Project, Role, Team, User


@dataclass(frozen=True)
class Denial:
    """Error entry for a refused action."""
    error: Callable[..., ApiError]
    message: str
    reason: str
    solution: str

    def raise_for(self) -> None:
        raise self.error(self.message, reason=self.reason, solution=self.solution)


_CREATOR_SOLUTION = "Use an Admin account or contact the team creator!"
_TEAM_ADMIN_SOLUTION = "Use an Admin account or contact the team admin!"

DENIALS: Dict[str, Denial] = {
    "team.create.role": Denial(
        ForbiddenError, "Forbidden!",
        "Only Admins can create teams!",
        "Use an Admin account to perform this action!",
    ),
    "team.create.limit": Denial(
        BadRequestError, "Team limit reached!",
        "Users cannot join or create more than 5 teams!",
        "Remove the user from an existing team before creating a new one!",
    ),
    "team.update.owner": Denial(
        ForbiddenError, "Forbidden!",
        "Only team admins can update the team!",
        _CREATOR_SOLUTION,
    ),
    "team.delete.owner": Denial(
        ForbiddenError, "Forbidden!",
        "Only team admins can delete the team!",
        _CREATOR_SOLUTION,
    ),
    "member.add.owner": Denial(
        ForbiddenError, "Forbidden!",
        "Only team admins can add members!",
        _CREATOR_SOLUTION,
    ),
    "member.add.role": Denial(
        BadRequestError, "Invalid role!",
        "Role must be either 'Admin' or 'Member'!",
        "Provide a valid role!",
    ),
    "member.add.limit": Denial(
        BadRequestError, "Team limit reached!",
        "Users cannot join more than 5 teams!",
        "Remove the user from an existing team before adding to a new one!",
    ),
    "member.add.duplicate": Denial(
        ConflictError, "User already in team!",
        "The user is already a member of this team!",
        "Check the user ID or update their role instead!",
    ),
    "member.remove.owner": Denial(
        ForbiddenError, "Forbidden!",
        "Only team admins can remove members!",
        _CREATOR_SOLUTION,
    ),
    "member.remove.absent": Denial(
        BadRequestError, "User not in team!",
        "The user is not a member of this team!",
        "Check the user ID and try again!",
    ),
    "project.create.role": Denial(
        ForbiddenError, "Forbidden!",
        "Only Admins can create projects!",
        "Use an Admin account to perform this action!",
    ),
    "project.create.team_admin": Denial(
        ForbiddenError, "Forbidden!",
        "Only team admins can create projects!",
        _TEAM_ADMIN_SOLUTION,
    ),
    "project.update.role": Denial(
        ForbiddenError, "Forbidden!",
        "Only Admins can update projects!",
        "Use an Admin account to perform this action!",
    ),
    "project.update.team_admin": Denial(
        ForbiddenError, "Forbidden!",
        "You must be a team admin to update projects!",
        "Contact your team administrator!",
    ),
    "project.delete.role": Denial(
        ForbiddenError, "Forbidden!",
        "Only Admins can delete projects!",
        "Use an Admin account to perform this action!",
    ),
    "project.delete.team_admin": Denial(
        ForbiddenError, "Forbidden!",
        "Only team admins can delete projects!",
        _TEAM_ADMIN_SOLUTION,
    ),
    "project.list.role": Denial(
        ForbiddenError, "Forbidden!",
        "Only Admins can list projects!",
        "Use an Admin account to perform this action!",
    ),
    "user.create.role": Denial(
        ForbiddenError, "Forbidden!",
        "Only Admins can create users!",
        "Use an Admin account to perform this action!",
    ),
    "backup.restore.role": Denial(
        ForbiddenError, "Forbidden!",
        "Only Admins can restore backups!",
        "Use an Admin account to perform this action!",
    ),
}


class AuthorizationEngine:
    """Evaluates role and ownership rules for team and project operations."""

    def __init__(self, max_memberships: int = 5, metrics: Optional[MetricsCollector] = None):
        self.max_memberships = max_memberships
        self.metrics = metrics
        self.logger = get_logger("teams.authorization")

    def _deny(self, rule: str, actor: User, **context) -> None:
        denial = DENIALS[rule]
        self.logger.warning(
            "Authorization denied",
            rule=rule,
            actor_id=actor.id,
            reason=denial.reason,
            **context
        )
        if self.metrics:
            self.metrics.increment_counter("authorization_denials_total", operation=rule.rsplit(".", 1)[0])
        denial.raise_for()

    @staticmethod
    def parse_role(value: str) -> Role:
        """Validate a requested membership role."""
        role = Role.parse(value)
        if role is None:
            DENIALS["member.add.role"].raise_for()
        return role

    def authorize_team_create(self, actor: User) -> None:
        if not actor.is_platform_admin:
            self._deny("team.create.role", actor)
        if actor.membership_count >= self.max_memberships:
            self._deny("team.create.limit", actor, memberships=actor.membership_count)

    def authorize_team_update(self, actor: User, team: Team) -> None:
        if not (actor.is_platform_admin and team.created_by == actor.id):
            self._deny("team.update.owner", actor, team_id=team.id)

    def authorize_team_delete(self, actor: User, team: Team) -> None:
        if not (actor.is_platform_admin and team.created_by == actor.id):
            self._deny("team.delete.owner", actor, team_id=team.id)

    def authorize_member_add(self, actor: User, team: Team, target: User) -> None:
        if not (actor.is_platform_admin and team.created_by == actor.id):
            self._deny("member.add.owner", actor, team_id=team.id)
        if target.membership_count >= self.max_memberships:
            self._deny("member.add.limit", actor, team_id=team.id, target_id=target.id)
        if target.is_member_of(team.id):
            self._deny("member.add.duplicate", actor, team_id=team.id, target_id=target.id)

    def authorize_member_remove(self, actor: User, team: Team, target: User) -> None:
        if not (actor.is_platform_admin and team.created_by == actor.id):
            self._deny("member.remove.owner", actor, team_id=team.id)
        if not target.is_member_of(team.id):
            self._deny("member.remove.absent", actor, team_id=team.id, target_id=target.id)

    def _require_team_admin(self, action: str, actor: User, team_id: str) -> None:
        if not actor.is_platform_admin:
            self._deny(f"project.{action}.role", actor, team_id=team_id)
        if actor.role_in(team_id) is not Role.ADMIN:
            self._deny(f"project.{action}.team_admin", actor, team_id=team_id)

    def authorize_project_create(self, actor: User, team: Team) -> None:
        self._require_team_admin("create", actor, team.id)

    def authorize_project_update(self, actor: User, project: Project) -> None:
        self._require_team_admin("update", actor, project.team)

    def authorize_project_delete(self, actor: User, project: Project) -> None:
        self._require_team_admin("delete", actor, project.team)

    def authorize_project_list(self, actor: User) -> None:
        if not actor.is_platform_admin:
            self._deny("project.list.role", actor)

    def authorize_user_create(self, actor: User) -> None:
        if not actor.is_platform_admin:
            self._deny("user.create.role", actor)

    def authorize_restore(self, actor: User) -> None:
        if not actor.is_platform_admin:
            self._deny("backup.restore.role", actor)
