"""
Teams service: users, teams, projects and collection backups.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.retry import RetryConfig, RetryError, retry_on_exception

from .auth.dependencies import BearerAuthenticator
from .auth.tokens import AuthContext, TokenService
from .authz.engine import AuthorizationEngine
from .backup.service import BackupDispatcher, BackupService
from .domain.projects import ProjectService
from .domain.teams import TeamService
from .domain.users import UserService, resolve_actor
from .models import (
    CreateUserRequest,
    LoginRequest,
    MemberAddRequest,
    MemberRemoveRequest,
    ProjectCreateRequest,
    ProjectDeleteRequest,
    ProjectUpdateRequest,
    RestoreRequest,
    SignupRequest,
    TeamCreateRequest,
    TeamUpdateRequest,
)
from .persistence.postgres import PostgresDocumentStore
from .persistence.store import DocumentStore, InMemoryDocumentStore
from .ratelimit.token_bucket import (
    RateLimitGuard,
    RateLimitRegistry,
    apply_rate_limit_headers,
    build_route_limits,
)


def _redact(documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{k: v for k, v in d.items() if k != "password"} for d in documents]


class TeamsService(BaseService):
    """Team management service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store: Optional[DocumentStore] = None,
                 rate_limits: Optional[RateLimitRegistry] = None):
        super().__init__("teams", 8000, config or get_config("teams", 8000))

        self.store = store or self._create_store()
        self.rate_limits = rate_limits or RateLimitRegistry(
            route_limits=build_route_limits(self.config.api_prefix)
        )
        self.rate_limit = RateLimitGuard(self.rate_limits, metrics=self.metrics)

        self.tokens = TokenService(
            self.config.access_token_secret,
            expiry_seconds=self.config.access_token_expiry_seconds,
            hash_rounds=self.config.password_hash_rounds,
        )
        self.authenticate = BearerAuthenticator(self.tokens)
        self.authz = AuthorizationEngine(self.config.max_team_memberships, metrics=self.metrics)

        self.backups = BackupService(store=self.store, metrics=self.metrics)
        self.dispatcher = BackupDispatcher(self.backups)
        self.users = UserService(store=self.store, tokens=self.tokens, authz=self.authz, metrics=self.metrics)
        self.teams = TeamService(store=self.store, authz=self.authz, dispatcher=self.dispatcher, metrics=self.metrics)
        self.projects = ProjectService(store=self.store, authz=self.authz, metrics=self.metrics)

        @self.app.middleware("http")
        async def add_rate_limit_headers(request: Request, call_next):
            response = await call_next(request)
            apply_rate_limit_headers(request, response)
            return response

        self._setup_teams_routes()

    def _create_store(self) -> DocumentStore:
        if self.config.database_dsn:
            return PostgresDocumentStore(
                self.config.database_dsn,
                min_size=self.config.db_pool_min_size,
                max_size=self.config.db_pool_max_size,
            )
        self.logger.warning("No database DSN configured, using in-memory document store")
        return InMemoryDocumentStore()

    async def startup(self) -> None:
        connect = retry_on_exception(
            (Exception,),
            RetryConfig(
                max_attempts=self.config.db_connect_attempts,
                base_delay=self.config.db_connect_base_delay,
            ),
        )(self.store.connect)
        try:
            await connect()
        except RetryError as e:
            self.logger.critical(
                "Could not connect to the document store",
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            raise
        self.logger.info("Teams service started", store=type(self.store).__name__)

    async def shutdown(self) -> None:
        await self.dispatcher.drain()
        await self.store.close()
        self.logger.info("Teams service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        try:
            await self.store.ping()
            return {"document_store": "ok"}
        except Exception as e:
            self.logger.warning("Document store ping failed", error=str(e))
            return {"document_store": "error"}

    def _setup_teams_routes(self):
        """Set up user, team, project and backup routes."""
        router = APIRouter(prefix=self.config.api_prefix, dependencies=[Depends(self.rate_limit)])
        authenticated = Depends(self.authenticate)

        # Users

        @router.post("/signup", status_code=201)
        async def signup(body: SignupRequest):
            user, token = await self.users.signup(body)
            return {
                "success": True,
                "message": "User registered successfully!",
                "data": {"user": user.to_public(), "accessToken": token},
            }

        @router.post("/login")
        async def login(body: LoginRequest):
            user, token = await self.users.login(body)
            return {
                "success": True,
                "message": "Login successful!",
                "data": {"user": user.to_public(), "accessToken": token},
            }

        @router.post("/create", status_code=201)
        async def create_user(body: CreateUserRequest, auth: AuthContext = authenticated):
            user = await self.users.create_user(auth, body)
            return {
                "success": True,
                "message": "User created successfully!",
                "data": user.to_public(),
            }

        @router.get("/all-users")
        async def all_users():
            return {
                "success": True,
                "message": "Users fetched successfully!",
                "data": {"users": await self.users.list_users()},
            }

        # Teams

        @router.post("/team/create", status_code=201)
        async def create_team(body: TeamCreateRequest, auth: AuthContext = authenticated):
            team = await self.teams.create_team(auth, body)
            return {
                "success": True,
                "message": "Team created successfully!",
                "data": team.to_public(),
            }

        @router.get("/team")
        async def list_teams(page: int = Query(1), limit: int = Query(10),
                             auth: AuthContext = authenticated):
            teams, pagination = await self.teams.list_teams(auth, page, limit)
            return {
                "success": True,
                "message": "Teams retrieved successfully!",
                "data": {"pagination": pagination, "teams": teams},
            }

        @router.put("/team/update/{team_id}")
        async def update_team(team_id: str, body: TeamUpdateRequest, auth: AuthContext = authenticated):
            team = await self.teams.update_team(auth, team_id, body)
            return {
                "success": True,
                "message": "Team updated successfully!",
                "data": team.to_public(),
            }

        @router.delete("/team/delete/{team_id}")
        async def delete_team(team_id: str, auth: AuthContext = authenticated):
            deleted = await self.teams.delete_team(auth, team_id)
            return {
                "success": True,
                "message": "Team deleted successfully!",
                "deletedTeamId": deleted,
            }

        @router.post("/team/add-member")
        async def add_member(body: MemberAddRequest, auth: AuthContext = authenticated):
            return {
                "success": True,
                "message": "Member added to team successfully!",
                "data": await self.teams.add_member(auth, body),
            }

        @router.post("/team/remove-member")
        async def remove_member(body: MemberRemoveRequest, auth: AuthContext = authenticated):
            return {
                "success": True,
                "message": "Member removed from team successfully!",
                "data": await self.teams.remove_member(auth, body),
            }

        # Projects

        @router.post("/project/create", status_code=201)
        async def create_project(body: ProjectCreateRequest, auth: AuthContext = authenticated):
            project = await self.projects.create_project(auth, body)
            return {
                "success": True,
                "message": "Project created successfully!",
                "data": project.to_public(),
            }

        @router.get("/project")
        async def list_projects(page: int = Query(1), limit: int = Query(10),
                                auth: AuthContext = authenticated):
            projects, pagination = await self.projects.list_projects(auth, page, limit)
            return {
                "success": True,
                "message": "Projects retrieved successfully",
                "data": {"pagination": pagination, "projects": projects},
            }

        @router.put("/project/update/{project_id}")
        async def update_project(project_id: str, body: ProjectUpdateRequest,
                                 auth: AuthContext = authenticated):
            return {
                "success": True,
                "message": "Project updated successfully",
                "data": await self.projects.update_project(auth, project_id, body),
            }

        @router.delete("/project/delete")
        async def delete_project(body: ProjectDeleteRequest, auth: AuthContext = authenticated):
            deleted = await self.projects.delete_project(auth, body.project_id)
            return {
                "success": True,
                "message": "Project deleted successfully!",
                "deletedProjectId": deleted,
            }

        # Backups

        @router.put("/restore-collection")
        async def restore_collection(body: RestoreRequest, auth: AuthContext = authenticated):
            actor = await resolve_actor(self.store, auth)
            self.authz.authorize_restore(actor)
            restored = await self.backups.restore(body.collection_name, body.backup_id)
            return {
                "success": True,
                "restoredCount": len(restored),
                "message": f"{len(restored)} docs restored to {body.collection_name}",
                "data": _redact(restored),
            }

        @router.get("/restore-collection")
        async def list_backups(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                               collection_name: Optional[str] = Query(None, alias="collectionName"),
                               auth: AuthContext = authenticated):
            records, pagination = await self.backups.list_backups(
                page=page, limit=limit, collection_name=collection_name
            )
            message = (
                f"Retrieved {len(records)} records filtered by collection: {collection_name}"
                if collection_name else f"Retrieved {len(records)} records successfully!"
            )
            response: Dict[str, Any] = {
                "success": True,
                "message": message,
                "pagination": pagination,
                "data": [r.to_public() for r in records],
            }
            if collection_name:
                response["filteredBy"] = {"collectionName": collection_name}
            return response

        self.app.include_router(router)


def create_app():
    """Create FastAPI application."""
    service = TeamsService()
    return service.app


if __name__ == "__main__":
    service = TeamsService()
    service.run()
