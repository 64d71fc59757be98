"""
Unit tests for the authorization engine.
"""

import pytest
from prometheus_client import CollectorRegistry

from service_teams.app.authz.engine import AuthorizationEngine
from service_teams.app.models import Project, Role, Team, TeamMembership, User, new_id
from shared.errors import BadRequestError, ConflictError, ForbiddenError
from shared.metrics import MetricsCollector


def make_user(*memberships, user_id=None):
    return User(
        id=user_id or new_id(),
        name="User",
        email="user@example.com",
        password_hash="hash",
        teams=[TeamMembership(role=Role(role), team=team) for team, role in memberships],
    )


class TestAuthorizationEngine:
    """Test cases for AuthorizationEngine."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("teams-test", CollectorRegistry())

    @pytest.fixture
    def engine(self, metrics):
        return AuthorizationEngine(max_memberships=5, metrics=metrics)

    @pytest.fixture
    def admin(self):
        return make_user((None, "Admin"))

    @pytest.fixture
    def team(self, admin):
        return Team(id=new_id(), name="Core", created_by=admin.id)

    def test_member_cannot_create_team(self, engine, metrics):
        """A Member-only user attempting team creation gets 403."""
        member = make_user((None, "Member"))

        with pytest.raises(ForbiddenError) as exc_info:
            engine.authorize_team_create(member)

        assert exc_info.value.reason == "Only Admins can create teams!"
        denials = metrics.registry.get_sample_value(
            "authorization_denials_total", {"operation": "team.create"}
        )
        assert denials == 1.0

    def test_admin_at_membership_limit_cannot_create_team(self, engine):
        admin = make_user((None, "Admin"), *[(new_id(), "Admin") for _ in range(4)])

        with pytest.raises(BadRequestError) as exc_info:
            engine.authorize_team_create(admin)

        assert exc_info.value.message == "Team limit reached!"

    def test_admin_below_limit_can_create_team(self, engine, admin):
        engine.authorize_team_create(admin)

    def test_platform_admin_not_creator_cannot_update(self, engine, team):
        """Update requires Admin AND creator."""
        other_admin = make_user((None, "Admin"))

        with pytest.raises(ForbiddenError):
            engine.authorize_team_update(other_admin, team)

    def test_creator_without_admin_role_cannot_update(self, engine, team, admin):
        creator = make_user((None, "Member"), user_id=admin.id)

        with pytest.raises(ForbiddenError):
            engine.authorize_team_update(creator, team)
        with pytest.raises(ForbiddenError):
            engine.authorize_team_delete(creator, team)

    def test_admin_creator_can_update_and_delete(self, engine, team, admin):
        engine.authorize_team_update(admin, team)
        engine.authorize_team_delete(admin, team)

    def test_add_member_rules(self, engine, team, admin):
        target = make_user((None, "Member"))
        engine.authorize_member_add(admin, team, target)

        target.add_membership(team.id, Role.MEMBER)
        with pytest.raises(ConflictError) as exc_info:
            engine.authorize_member_add(admin, team, target)
        assert exc_info.value.message == "User already in team!"

    def test_add_member_respects_limit(self, engine, team, admin):
        target = make_user(*[(new_id(), "Member") for _ in range(5)])

        with pytest.raises(BadRequestError) as exc_info:
            engine.authorize_member_add(admin, team, target)

        assert exc_info.value.message == "Team limit reached!"
        assert target.membership_count == 5

    def test_add_member_requires_creator(self, engine, team):
        stranger = make_user((None, "Admin"))

        with pytest.raises(ForbiddenError) as exc_info:
            engine.authorize_member_add(stranger, team, make_user((None, "Member")))

        assert exc_info.value.reason == "Only team admins can add members!"

    def test_remove_member_requires_membership(self, engine, team, admin):
        target = make_user((None, "Member"))

        with pytest.raises(BadRequestError) as exc_info:
            engine.authorize_member_remove(admin, team, target)
        assert exc_info.value.message == "User not in team!"

        target.add_membership(team.id, Role.MEMBER)
        engine.authorize_member_remove(admin, team, target)

    def test_parse_role(self, engine):
        assert engine.parse_role("Admin") is Role.ADMIN
        assert engine.parse_role("Member") is Role.MEMBER
        with pytest.raises(BadRequestError) as exc_info:
            engine.parse_role("Owner")
        assert exc_info.value.message == "Invalid role!"

    def test_project_create_requires_team_admin(self, engine, team):
        """Platform Admin alone is not enough; the team role must be Admin too."""
        platform_only = make_user((None, "Admin"), (team.id, "Member"))

        with pytest.raises(ForbiddenError) as exc_info:
            engine.authorize_project_create(platform_only, team)

        assert exc_info.value.reason == "Only team admins can create projects!"

    def test_team_admin_without_platform_role_cannot_create_project(self, engine, team):
        """A team-scoped Admin whose token carries no Admin role is denied."""
        team_admin = make_user((None, "Member"), (team.id, "Admin")).bind_token_roles(["Member"])

        with pytest.raises(ForbiddenError) as exc_info:
            engine.authorize_project_create(team_admin, team)

        assert exc_info.value.reason == "Only Admins can create projects!"

    def test_team_admin_with_platform_role_can_manage_projects(self, engine, team):
        actor = make_user((None, "Admin"), (team.id, "Admin"))
        project = Project(id=new_id(), name="Site", team=team.id, created_by=actor.id)

        engine.authorize_project_create(actor, team)
        engine.authorize_project_update(actor, project)
        engine.authorize_project_delete(actor, project)

    def test_project_update_in_other_team_denied(self, engine, team):
        actor = make_user((None, "Admin"), (new_id(), "Admin"))
        project = Project(id=new_id(), name="Site", team=team.id, created_by="someone")

        with pytest.raises(ForbiddenError):
            engine.authorize_project_update(actor, project)
        with pytest.raises(ForbiddenError):
            engine.authorize_project_delete(actor, project)

    def test_project_list_requires_platform_admin(self, engine, admin):
        engine.authorize_project_list(admin)

        with pytest.raises(ForbiddenError):
            engine.authorize_project_list(make_user((None, "Member"), (new_id(), "Member")))

    def test_user_create_and_restore_require_platform_admin(self, engine, admin):
        member = make_user((None, "Member"))

        engine.authorize_user_create(admin)
        engine.authorize_restore(admin)
        with pytest.raises(ForbiddenError):
            engine.authorize_user_create(member)
        with pytest.raises(ForbiddenError):
            engine.authorize_restore(member)


class TestUserRoleIndex:
    """Role lookups on User."""

    def test_platform_admin_is_any_admin_entry(self):
        assert make_user((None, "Admin")).is_platform_admin
        assert make_user((None, "Member"), ("t1", "Admin")).is_platform_admin
        assert not make_user((None, "Member"), ("t1", "Member")).is_platform_admin

    def test_token_roles_override_stored_roles(self):
        user = make_user((None, "Member"), ("t1", "Admin"))

        assert user.bind_token_roles(["Member"]).is_platform_admin is False
        assert user.bind_token_roles(["Member", "Admin"]).is_platform_admin is True

    def test_role_in_team(self):
        user = make_user((None, "Admin"), ("t1", "Member"))

        assert user.role_in("t1") is Role.MEMBER
        assert user.role_in("t2") is None
        assert user.team_ids == ["t1"]

        user.remove_membership("t1")
        assert user.role_in("t1") is None
        assert user.membership_count == 1
