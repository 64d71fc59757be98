"""
Integration tests for project management within teams.
"""

import pytest
from fastapi.testclient import TestClient

from service_teams.app.main import TeamsService
from service_teams.app.models import PROJECTS
from service_teams.app.persistence.store import InMemoryDocumentStore
from shared.config import get_config
from shared.test_helpers import get_test_config_overrides

API = "/api/v1"


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestProjectFlow:
    """Project create, update, list and delete through the HTTP app."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def client(self, store):
        config = get_config("teams", 8000, **get_test_config_overrides())
        service = TeamsService(config=config, store=store)
        with TestClient(service.app) as client:
            yield client

    def signup(self, client, email, role="Admin"):
        response = client.post(f"{API}/signup", json={
            "name": email.split("@")[0], "email": email, "password": "secret1", "role": role,
        })
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        return data["user"], data["accessToken"]

    @pytest.fixture
    def owner(self, client):
        user, token = self.signup(client, "owner@example.com")
        team = client.post(f"{API}/team/create", json={"name": "Core"}, headers=bearer(token)).json()["data"]
        return {"user": user, "token": token, "team": team}

    def create_project(self, client, owner, name="Site"):
        return client.post(
            f"{API}/project/create",
            json={"name": name, "description": "Web site", "teamId": owner["team"]["id"]},
            headers=bearer(owner["token"]),
        )

    def test_create_project(self, client, owner):
        response = self.create_project(client, owner)

        assert response.status_code == 201
        project = response.json()["data"]
        assert project["team"] == owner["team"]["id"]
        assert project["createdBy"] == owner["user"]["id"]

    def test_duplicate_project_name_in_team(self, client, store, owner):
        assert self.create_project(client, owner).status_code == 201

        response = self.create_project(client, owner)

        assert response.status_code == 409
        assert response.json()["message"] == "Project already exists!"
        assert client.portal.call(store.count, PROJECTS) == 1

    def test_create_project_in_missing_team(self, client, owner):
        response = client.post(
            f"{API}/project/create",
            json={"name": "Site", "teamId": "0" * 32},
            headers=bearer(owner["token"]),
        )

        assert response.status_code == 404
        assert response.json()["message"] == "Team not found!"

    def test_team_admin_with_member_token_cannot_create_project(self, client, owner):
        """Team-scoped Admin is not enough when the token only carries Member."""
        member, member_token = self.signup(client, "lead@example.com", role="Member")
        response = client.post(
            f"{API}/team/add-member",
            json={"teamId": owner["team"]["id"], "userId": member["id"], "role": "Admin"},
            headers=bearer(owner["token"]),
        )
        assert response.status_code == 200

        response = client.post(
            f"{API}/project/create",
            json={"name": "Site", "teamId": owner["team"]["id"]},
            headers=bearer(member_token),
        )

        assert response.status_code == 403
        assert response.json()["error"]["reason"] == "Only Admins can create projects!"

    def test_admin_outside_team_cannot_create_project(self, client, owner):
        _, outsider_token = self.signup(client, "outsider@example.com")

        response = client.post(
            f"{API}/project/create",
            json={"name": "Site", "teamId": owner["team"]["id"]},
            headers=bearer(outsider_token),
        )

        assert response.status_code == 403
        assert response.json()["error"]["reason"] == "Only team admins can create projects!"

    def test_update_project(self, client, owner):
        project_id = self.create_project(client, owner).json()["data"]["id"]

        response = client.put(
            f"{API}/project/update/{project_id}", json={"name": "Portal"}, headers=bearer(owner["token"])
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Portal"
        assert data["description"] == "Web site"
        assert data["team"] == {"id": owner["team"]["id"], "name": "Core"}

    def test_update_project_validation(self, client, owner):
        project_id = self.create_project(client, owner).json()["data"]["id"]

        response = client.put(f"{API}/project/update/not-an-id", json={"name": "X"}, headers=bearer(owner["token"]))
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid project ID"

        response = client.put(f"{API}/project/update/{project_id}", json={}, headers=bearer(owner["token"]))
        assert response.status_code == 400
        assert response.json()["message"] == "No updates provided"

        response = client.put(f"{API}/project/update/{'0' * 32}", json={"name": "X"}, headers=bearer(owner["token"]))
        assert response.status_code == 404

    def test_delete_project(self, client, store, owner):
        project_id = self.create_project(client, owner).json()["data"]["id"]

        response = client.request(
            "DELETE", f"{API}/project/delete", json={"projectId": project_id}, headers=bearer(owner["token"])
        )

        assert response.status_code == 200
        assert response.json()["deletedProjectId"] == project_id
        assert client.portal.call(store.find_by_id, PROJECTS, project_id) is None

        response = client.request(
            "DELETE", f"{API}/project/delete", json={"projectId": project_id}, headers=bearer(owner["token"])
        )
        assert response.status_code == 404

    def test_list_projects_paginates_newest_first(self, client, owner):
        for name in ("First", "Second", "Third"):
            assert self.create_project(client, owner, name).status_code == 201

        response = client.get(f"{API}/project", params={"page": 1, "limit": 2}, headers=bearer(owner["token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert [p["name"] for p in data["projects"]] == ["Third", "Second"]
        assert data["projects"][0]["team"] == {"id": owner["team"]["id"], "name": "Core"}
        assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2, "hasNextPage": True}

        response = client.get(f"{API}/project", params={"page": 2, "limit": 2}, headers=bearer(owner["token"]))
        data = response.json()["data"]
        assert [p["name"] for p in data["projects"]] == ["First"]
        assert data["pagination"]["hasNextPage"] is False

    def test_list_projects_empty_results(self, client, owner):
        response = client.get(f"{API}/project", headers=bearer(owner["token"]))
        assert response.status_code == 404
        assert response.json()["message"] == "No projects found"

        _, loner_token = self.signup(client, "loner@example.com")
        response = client.get(f"{API}/project", headers=bearer(loner_token))
        assert response.status_code == 404
        assert response.json()["message"] == "No teams found"

    def test_member_cannot_list_projects(self, client):
        _, token = self.signup(client, "member@example.com", role="Member")

        response = client.get(f"{API}/project", headers=bearer(token))

        assert response.status_code == 403

    def test_project_of_deleted_team_is_not_found(self, client, owner):
        project_id = self.create_project(client, owner).json()["data"]["id"]
        response = client.delete(f"{API}/team/delete/{owner['team']['id']}", headers=bearer(owner["token"]))
        assert response.status_code == 200

        response = client.put(
            f"{API}/project/update/{project_id}", json={"name": "Portal"}, headers=bearer(owner["token"])
        )
        assert response.status_code == 404
        assert response.json()["message"] == "Project not found"
        assert response.json()["error"]["reason"] == "Project or its associated team doesn't exist"

        response = client.request(
            "DELETE", f"{API}/project/delete", json={"projectId": project_id}, headers=bearer(owner["token"])
        )
        assert response.status_code == 404
        assert response.json()["message"] == "Project not found"
