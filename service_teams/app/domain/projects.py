"""
Project management scoped to teams.

Every project belongs to one team; only Admins of that team may change it.
"""

import math
from typing import Any, Dict, List, Tuple

from shared.errors import BadRequestError, ConflictError, NotFoundError
from shared.logging import get_logger

from ..auth.tokens import AuthContext
from ..authz.engine import AuthorizationEngine
from ..models import (
    PROJECTS,
    TEAMS,
    Project,
    ProjectCreateRequest,
    ProjectUpdateRequest,
    Team,
    is_valid_id,
    new_id,
    utcnow,
)
from ..persistence.store import DocumentStore, DuplicateKeyError
from .users import resolve_actor

MAX_PAGE_SIZE = 100


def _project_exists() -> ConflictError:
    return ConflictError(
        "Project already exists!",
        reason="A project with this name already exists in the team!",
        solution="Choose a different project name!",
    )


class ProjectService:
    """Project CRUD scoped to teams."""

    def __init__(self, *, store: DocumentStore, authz: AuthorizationEngine, metrics=None):
        self.store = store
        self.authz = authz
        self.metrics = metrics
        self.logger = get_logger("teams.projects")

    async def _get_project(self, project_id: str) -> Project:
        document = await self.store.find_by_id(PROJECTS, project_id)
        if document is None:
            raise NotFoundError(
                "Project not found!",
                reason="The specified project does not exist!",
                solution="Check the project ID and try again!",
            )
        return Project.from_document(document)

    async def _get_project_with_team(self, project_id: str) -> Tuple[Project, Team]:
        project = await self._get_project(project_id)
        team_document = await self.store.find_by_id(TEAMS, project.team)
        if team_document is None:
            raise NotFoundError(
                "Project not found",
                reason="Project or its associated team doesn't exist",
                solution="Verify the project ID and try again",
            )
        return project, Team.from_document(team_document)

    async def _teams_by_id(self, team_ids: List[str]) -> Dict[str, Team]:
        documents = await self.store.find(TEAMS, {"id": {"$in": list(team_ids)}})
        return {d["id"]: Team.from_document(d) for d in documents}

    def _event(self, name: str) -> None:
        if self.metrics:
            self.metrics.record_business_event(name)

    async def create_project(self, auth: AuthContext, body: ProjectCreateRequest) -> Project:
        team_document = await self.store.find_by_id(TEAMS, body.team_id)
        if team_document is None:
            raise NotFoundError(
                "Team not found!",
                reason="The specified team does not exist!",
                solution="Check the team ID and try again!",
            )
        team = Team.from_document(team_document)
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_project_create(actor, team)

        if await self.store.find_one(PROJECTS, {"name": body.name, "team": team.id}):
            raise _project_exists()

        project = Project(
            id=new_id(),
            name=body.name,
            description=body.description,
            team=team.id,
            created_by=actor.id,
        )
        try:
            await self.store.insert_one(PROJECTS, project.to_document())
        except DuplicateKeyError:
            raise _project_exists()

        self._event("project_created")
        self.logger.info("Project created", project_id=project.id, team_id=team.id)
        return project

    async def update_project(self, auth: AuthContext, project_id: str, body: ProjectUpdateRequest) -> Dict[str, Any]:
        if not is_valid_id(project_id):
            raise BadRequestError(
                "Invalid project ID",
                reason="The provided project ID is malformed",
                solution="Provide a valid project ID",
            )
        if not body.name and not body.description:
            raise BadRequestError(
                "No updates provided",
                reason="Neither name nor description was provided",
                solution="Provide at least one field to update",
            )

        project, _ = await self._get_project_with_team(project_id)
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_project_update(actor, project)

        changes: Dict[str, Any] = {"updated_at": utcnow()}
        if body.name:
            changes["name"] = body.name
        if body.description:
            changes["description"] = body.description

        try:
            document = await self.store.update_one(PROJECTS, project.id, changes)
        except DuplicateKeyError:
            raise _project_exists()
        if document is None:
            project = await self._get_project(project_id)
        else:
            project = Project.from_document(document)

        teams = await self._teams_by_id([project.team])
        self._event("project_updated")
        return project.to_public(teams.get(project.team))

    async def delete_project(self, auth: AuthContext, project_id: str) -> str:
        project, _ = await self._get_project_with_team(project_id)
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_project_delete(actor, project)

        await self.store.delete_one(PROJECTS, project.id)
        self._event("project_deleted")
        self.logger.info("Project deleted", project_id=project.id, team_id=project.team)
        return project.id

    async def list_projects(self, auth: AuthContext, page: int = 1, limit: int = 10) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """Newest-first projects of every team the actor belongs to."""
        page = max(1, page)
        limit = min(MAX_PAGE_SIZE, max(1, limit))
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_project_list(actor)

        team_ids = actor.team_ids
        if not team_ids:
            raise NotFoundError(
                "No teams found",
                reason="User is not part of any teams",
                solution="Join a team first to see projects",
            )

        filters = {"team": {"$in": team_ids}}
        total = await self.store.count(PROJECTS, filters)
        documents = await self.store.find(
            PROJECTS,
            filters,
            sort=[("created_at", -1)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        if not documents:
            raise NotFoundError(
                "No projects found",
                reason="No projects exist for your teams",
                solution="Create a project in one of your teams",
            )

        teams = await self._teams_by_id(team_ids)
        projects = [Project.from_document(d) for d in documents]
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
            "hasNextPage": page * limit < total,
        }
        return [p.to_public(teams.get(p.team)) for p in projects], pagination
