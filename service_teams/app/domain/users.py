"""
User registration, login and administration.
"""

from typing import Any, Dict, List, Tuple

from shared.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from shared.logging import get_logger

from ..auth.tokens import AuthContext, TokenService
from ..authz.engine import AuthorizationEngine
from ..models import (
    TEAMS,
    USERS,
    CreateUserRequest,
    LoginRequest,
    SignupRequest,
    TeamMembership,
    User,
    new_id,
)
from ..persistence.store import DocumentStore, DuplicateKeyError


def _user_exists(solution: str) -> ConflictError:
    return ConflictError(
        "User already exists!",
        reason="Email is already registered!",
        solution=solution,
    )


def _invalid_team() -> BadRequestError:
    return BadRequestError(
        "Invalid team!",
        reason="Team ID does not exist!",
        solution="Provide a valid team ID!",
    )


async def resolve_actor(store: DocumentStore, auth: AuthContext) -> User:
    """Load the authenticated user; the token may outlive the account.

    Platform roles come from the token, team roles from the stored user.
    """
    document = await store.find_by_id(USERS, auth.user_id)
    if document is None:
        raise NotFoundError(
            "User not found!",
            reason="The authenticated user does not exist in the database!",
            solution="Verify your authentication token or register a new account!",
        )
    return User.from_document(document).bind_token_roles(auth.roles)


class UserService:
    """Signup, login and user management."""

    def __init__(self, *, store: DocumentStore, tokens: TokenService,
                 authz: AuthorizationEngine, metrics=None):
        self.store = store
        self.tokens = tokens
        self.authz = authz
        self.metrics = metrics
        self.logger = get_logger("teams.users")

    async def _insert(self, user: User, solution: str) -> None:
        try:
            await self.store.insert_one(USERS, user.to_document())
        except DuplicateKeyError:
            raise _user_exists(solution)

    async def signup(self, body: SignupRequest) -> Tuple[User, str]:
        role = self.authz.parse_role(body.role)
        email = body.email.lower()

        if await self.store.find_one(USERS, {"email": email}):
            raise _user_exists("Use a different email or login instead!")

        user = User(
            id=new_id(),
            name=body.name,
            email=email,
            password_hash=await self.tokens.hash_password(body.password),
            teams=[TeamMembership(role=role)],
        )
        await self._insert(user, "Use a different email or login instead!")

        if self.metrics:
            self.metrics.record_business_event("user_signup")
        self.logger.info("User registered", user_id=user.id, role=role.value)
        return user, self.tokens.issue_access_token(user)

    async def login(self, body: LoginRequest) -> Tuple[User, str]:
        document = await self.store.find_one(USERS, {"email": body.email.lower()})
        if document is None:
            raise UnauthorizedError(
                "Invalid credentials!",
                reason="Email not found!",
                solution="Check the email or register a new account!",
            )

        user = User.from_document(document)
        if not await self.tokens.verify_password(body.password, user.password_hash):
            raise UnauthorizedError(
                "Invalid credentials!",
                reason="Incorrect password!",
                solution="Verify your password and try again!",
            )

        self.logger.info("User logged in", user_id=user.id)
        return user, self.tokens.issue_access_token(user)

    async def create_user(self, auth: AuthContext, body: CreateUserRequest) -> User:
        """Create a user directly inside an existing team."""
        actor = await resolve_actor(self.store, auth)
        self.authz.authorize_user_create(actor)
        role = self.authz.parse_role(body.role)
        email = body.email.lower()

        if await self.store.find_one(USERS, {"email": email}):
            raise _user_exists("Use a different email!")

        if await self.store.find_by_id(TEAMS, body.team_id) is None:
            raise _invalid_team()

        user = User(
            id=new_id(),
            name=body.name,
            email=email,
            password_hash=await self.tokens.hash_password(body.password),
            teams=[TeamMembership(role=role, team=body.team_id)],
        )
        await self._insert(user, "Use a different email!")

        # the team may have been deleted and unlinked since the check above
        if await self.store.find_by_id(TEAMS, body.team_id) is None:
            await self.store.delete_one(USERS, user.id)
            raise _invalid_team()

        if self.metrics:
            self.metrics.record_business_event("user_created")
        self.logger.info("User created", user_id=user.id, team_id=body.team_id, created_by=actor.id)
        return user

    async def list_users(self) -> List[Dict[str, Any]]:
        documents = await self.store.find(USERS)
        return [User.from_document(d).to_public() for d in documents]
