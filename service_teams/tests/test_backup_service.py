"""
Unit tests for BackupService and BackupDispatcher.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from service_teams.app.backup.service import BackupDispatcher, BackupJob, BackupService, serialized_size
from service_teams.app.models import BACKUPS, TEAMS
from service_teams.app.persistence.store import DuplicateKeyError, InMemoryDocumentStore
from shared.errors import BadRequestError, NotFoundError
from shared.test_helpers import data_factory


class TestBackupService:
    """Test cases for BackupService."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def backups(self, store):
        return BackupService(store=store)

    @pytest.fixture
    def team(self):
        return data_factory.team_document("Core", created_by="u1", description="Core team")

    def test_serialized_size(self):
        documents = [{"id": "a", "name": "x" * 1000}]
        size, formatted = serialized_size(documents)

        assert size == len(json.dumps(documents, separators=(",", ":")).encode("utf-8"))
        assert formatted == f"{size / 1024:.2f} KB"

    @pytest.mark.asyncio
    async def test_backup_wraps_single_document(self, backups, store, team):
        record = await backups.backup("Team", team, "Team deletion")

        assert record.data == [team]
        assert record.deleted_item_ids == [team["id"]]
        assert record.backup_reason == "Team deletion"
        assert record.size_formatted.endswith(" KB")
        assert await store.find_by_id(BACKUPS, record.id) is not None

    @pytest.mark.asyncio
    async def test_backup_many_documents(self, backups):
        teams = [data_factory.team_document(f"T{i}", created_by="u1") for i in range(3)]

        record = await backups.backup("Team", teams)

        assert len(record.data) == 3
        assert record.deleted_item_ids == [t["id"] for t in teams]
        assert record.backup_reason == "manual"

    @pytest.mark.asyncio
    async def test_round_trip_restores_equal_document(self, backups, store, team):
        """backup then restore reinserts a document deep-equal to the original."""
        await store.insert_one(TEAMS, team)
        record = await backups.backup("Team", team, "Team deletion")
        await store.delete_one(TEAMS, team["id"])

        restored = await backups.restore("Team", record.id)

        assert restored == [team]
        assert await store.find_by_id(TEAMS, team["id"]) == team

    @pytest.mark.asyncio
    async def test_restore_collision_raises_duplicate_key(self, backups, store, team):
        """Restoring while the original is still live propagates the store error."""
        await store.insert_one(TEAMS, team)
        record = await backups.backup("Team", team)

        with pytest.raises(DuplicateKeyError):
            await backups.restore("Team", record.id)

    @pytest.mark.asyncio
    async def test_restore_mismatched_collection(self, backups, team):
        record = await backups.backup("Team", team)

        with pytest.raises(NotFoundError):
            await backups.restore("Project", record.id)
        with pytest.raises(NotFoundError):
            await backups.restore("Team", "0" * 32)

    @pytest.mark.asyncio
    async def test_restore_unknown_collection(self, backups):
        with pytest.raises(BadRequestError):
            await backups.restore("Widgets", "0" * 32)

    @pytest.mark.asyncio
    async def test_list_backups_paginates_and_filters(self, backups):
        for index in range(3):
            await backups.backup("Team", data_factory.team_document(f"T{index}", created_by="u1"))
        await backups.backup("Project", data_factory.project_document("P", team="t1", created_by="u1"))

        records, pagination = await backups.list_backups(page=1, limit=2, collection_name="Team")

        assert len(records) == 2
        assert all(r.collection_name == "Team" for r in records)
        assert pagination == {
            "totalRecords": 3,
            "currentPage": 1,
            "totalPages": 2,
            "recordsPerPage": 2,
            "hasNextPage": True,
            "hasPreviousPage": False,
        }

    @pytest.mark.asyncio
    async def test_list_backups_empty_page_is_not_found(self, backups):
        with pytest.raises(NotFoundError) as exc_info:
            await backups.list_backups(collection_name="Team")

        assert exc_info.value.message == "Records Not Found!"
        assert exc_info.value.reason == "No records found for collection: Team"


class TestBackupDispatcher:
    """Test cases for BackupDispatcher."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def dispatcher(self, store):
        return BackupDispatcher(BackupService(store=store))

    @pytest.mark.asyncio
    async def test_submit_runs_in_background(self, dispatcher, store):
        team = data_factory.team_document("Core", created_by="u1")

        dispatcher.submit(BackupJob("Team", team, "Team deletion"))
        await dispatcher.drain()

        assert await store.count(BACKUPS) == 1
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, dispatcher):
        with patch.object(dispatcher.backups, "backup", new_callable=AsyncMock) as mock_backup:
            mock_backup.side_effect = RuntimeError("store down")

            dispatcher.submit(BackupJob("Team", {"id": "t1"}, "Team deletion"))
            await dispatcher.drain()

        assert dispatcher.failed == 1

    @pytest.mark.asyncio
    async def test_job_outlives_aborted_transaction(self, dispatcher, store):
        """A backup submitted inside a transaction is not undone by its abort."""
        team = data_factory.team_document("Core", created_by="u1")

        with pytest.raises(RuntimeError):
            async with store.transaction():
                dispatcher.submit(BackupJob("Team", team, "Team deletion"))
                await dispatcher.drain()
                raise RuntimeError("abort")

        assert await store.count(BACKUPS) == 1
