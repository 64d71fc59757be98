"""
Team lifecycle and membership management.

Membership is stored on the user; a team's members are the users whose
``teams`` list references it.
"""

import math
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from shared.errors import ConflictError, InternalServerError, NotFoundError
from shared.logging import get_logger, get_request_id

from ..auth.tokens import AuthContext
from ..authz.engine import AuthorizationEngine
from ..backup.service import BackupDispatcher, BackupJob
from ..models import (
    TEAMS,
    USERS,
    MemberAddRequest,
    MemberRemoveRequest,
    Role,
    Team,
    TeamCreateRequest,
    TeamMembership,
    TeamUpdateRequest,
    User,
    new_id,
    utcnow,
)
from ..persistence.store import DocumentStore, DuplicateKeyError
from .users import resolve_actor


def _team_exists() -> ConflictError:
    return ConflictError(
        "Team already exists!",
        reason="A team with this name already exists for this user!",
        solution="Choose a different team name!",
    )


class TeamService:
    """Team CRUD and membership operations."""

    def __init__(self, *, store: DocumentStore, authz: AuthorizationEngine,
                 dispatcher: BackupDispatcher, metrics=None):
        self.store = store
        self.authz = authz
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.logger = get_logger("teams.teams")

    async def _get_team(self, team_id: str) -> Team:
        document = await self.store.find_by_id(TEAMS, team_id)
        if document is None:
            raise NotFoundError(
                "Team not found!",
                reason="The specified team does not exist!",
                solution="Check the team ID and try again!",
            )
        return Team.from_document(document)

    async def _get_user(self, user_id: str) -> User:
        document = await self.store.find_by_id(USERS, user_id)
        if document is None:
            raise NotFoundError(
                "User not found!",
                reason="The specified user does not exist!",
                solution="Check the user ID and try again!",
            )
        return User.from_document(document)

    async def _push_membership(self, user_id: str, team_id: str, role: Role,
                               recheck: Callable[[], Awaitable[None]]) -> None:
        """Append one membership in a single store operation.

        The store refuses the push when the user already references the team
        or is at the membership limit. ``recheck`` then reloads the user and
        re-runs authorization so the caller sees the matching denial.
        """
        updated = await self.store.push(
            USERS, user_id, "teams",
            TeamMembership(role=role, team=team_id).to_document(),
            unique_on={"team": team_id},
            max_length=self.authz.max_memberships,
        )
        if updated is None:
            await recheck()
            raise ConflictError(
                "Membership changed!",
                reason="The user's memberships changed while the request was processed!",
                solution="Please try again!",
            )

    def _event(self, name: str) -> None:
        if self.metrics:
            self.metrics.record_business_event(name)

    async def create_team(self, auth: AuthContext, body: TeamCreateRequest) -> Team:
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_team_create(actor)

        if await self.store.find_one(TEAMS, {"name": body.name, "created_by": actor.id}):
            raise _team_exists()

        async def recheck() -> None:
            self.authz.authorize_team_create(await resolve_actor(self.store, auth))

        team = Team(id=new_id(), name=body.name, description=body.description, created_by=actor.id)
        try:
            async with self.store.transaction():
                await self.store.insert_one(TEAMS, team.to_document())
                await self._push_membership(actor.id, team.id, Role.ADMIN, recheck)
        except DuplicateKeyError:
            raise _team_exists()

        self._event("team_created")
        self.logger.info("Team created", team_id=team.id, created_by=actor.id)
        return team

    async def list_teams(self, auth: AuthContext, page: int = 1, limit: int = 10) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """Teams the actor belongs to, one page at a time."""
        page = max(1, page)
        limit = max(1, limit)
        actor = await resolve_actor(self.store, auth)
        filters = {"id": {"$in": actor.team_ids}}

        total = await self.store.count(TEAMS, filters)
        documents = await self.store.find(TEAMS, filters, skip=(page - 1) * limit, limit=limit)
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
        }
        return [Team.from_document(d).to_public() for d in documents], pagination

    async def update_team(self, auth: AuthContext, team_id: str, body: TeamUpdateRequest) -> Team:
        team = await self._get_team(team_id)
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_team_update(actor, team)

        changes: Dict[str, Any] = {"updated_at": utcnow()}
        if body.name is not None:
            changes["name"] = body.name
        if body.description is not None:
            changes["description"] = body.description

        try:
            document = await self.store.update_one(TEAMS, team.id, changes)
        except DuplicateKeyError:
            raise _team_exists()
        if document is None:
            # deleted between lookup and update
            return await self._get_team(team_id)

        self._event("team_updated")
        return Team.from_document(document)

    async def delete_team(self, auth: AuthContext, team_id: str) -> str:
        """Delete a team and unlink it from every member in one transaction.

        The backup snapshot is handed to the dispatcher and is not part of
        the transaction.
        """
        team = await self._get_team(team_id)
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_team_delete(actor, team)

        try:
            async with self.store.transaction():
                await self.store.delete_one(TEAMS, team.id)
                unlinked = await self.store.pull(USERS, {}, "teams", {"team": team.id})
                self.dispatcher.submit(BackupJob(
                    collection_name="Team",
                    data=team.to_document(),
                    reason="Team deletion",
                    request_id=get_request_id(),
                ))
        except Exception as e:
            self.logger.error("Team deletion failed", team_id=team.id, error=str(e))
            raise InternalServerError(
                "Team deletion failed!",
                reason=str(e),
                solution="Please try again later",
            ) from e

        self._event("team_deleted")
        self.logger.info("Team deleted", team_id=team.id, unlinked_members=unlinked)
        return team.id

    async def add_member(self, auth: AuthContext, body: MemberAddRequest) -> Dict[str, str]:
        role = self.authz.parse_role(body.role)
        team = await self._get_team(body.team_id)
        actor = await resolve_actor(self.store, auth)
        target = await self._get_user(body.user_id)
        self.authz.authorize_member_add(actor, team, target)

        async def recheck() -> None:
            self.authz.authorize_member_add(actor, team, await self._get_user(target.id))

        await self._push_membership(target.id, team.id, role, recheck)

        # a concurrent delete may have unlinked its members before this push
        if await self.store.find_by_id(TEAMS, team.id) is None:
            await self.store.pull(USERS, {"id": target.id}, "teams", {"team": team.id})
            await self._get_team(team.id)

        self._event("member_added")
        self.logger.info("Member added", team_id=team.id, user_id=target.id, role=role.value)
        return {"teamId": team.id, "userId": target.id, "role": role.value}

    async def remove_member(self, auth: AuthContext, body: MemberRemoveRequest) -> Dict[str, str]:
        team = await self._get_team(body.team_id)
        actor = await resolve_actor(self.store, auth)
        target = await self._get_user(body.user_id)
        self.authz.authorize_member_remove(actor, team, target)

        if not await self.store.pull(USERS, {"id": target.id}, "teams", {"team": team.id}):
            # removed by a concurrent request
            self.authz.authorize_member_remove(actor, team, await self._get_user(target.id))

        self._event("member_removed")
        self.logger.info("Member removed", team_id=team.id, user_id=target.id)
        return {"teamId": team.id, "userId": target.id}
