from __future__ import annotations

import asyncio
import contextvars
import json
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from shared.errors import BadRequestError, NotFoundError
from shared.logging import get_logger, set_request_id

from ..models import BACKUPS, PROJECTS, TEAMS, USERS, BackupRecord, new_id
from ..persistence.store import DocumentStore

# Collection names as exposed by the API -> store collections
COLLECTION_NAMES: Dict[str, str] = {
    "User": USERS,
    "Team": TEAMS,
    "Project": PROJECTS,
}


def serialized_size(documents: List[Dict[str, Any]]) -> Tuple[int, str]:
    """Byte size of the JSON form of ``documents`` and its KB rendering."""
    size = len(json.dumps(documents, separators=(",", ":"), default=str).encode("utf-8"))
    return size, f"{size / 1024:.2f} KB"


class BackupService:
    """Snapshots documents before destructive writes and restores them."""

    def __init__(self, *, store: DocumentStore, metrics=None) -> None:
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("teams.backup")

    @staticmethod
    def _live_collection(collection_name: str) -> str:
        collection = COLLECTION_NAMES.get(collection_name)
        if collection is None:
            raise BadRequestError(
                "Invalid collection name!",
                reason=f"Unknown collection: {collection_name}",
                solution=f"Use one of: {', '.join(COLLECTION_NAMES)}",
            )
        return collection

    def _count(self, collection_name: str, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("backups_total", collection=collection_name, status=status)

    async def backup(
        self,
        collection_name: str,
        data: Union[Dict[str, Any], List[Dict[str, Any]]],
        reason: str = "manual",
    ) -> BackupRecord:
        """Persist a write-once snapshot of one or many documents."""
        documents = data if isinstance(data, list) else [data]
        size, size_formatted = serialized_size(documents)
        record = BackupRecord(
            id=new_id(),
            collection_name=collection_name,
            data=documents,
            deleted_item_ids=[d.get("id") for d in documents],
            backup_reason=reason,
            backup_size=size,
            size_formatted=size_formatted,
        )

        try:
            await self.store.insert_one(BACKUPS, record.to_document())
        except Exception:
            self._count(collection_name, "failed")
            raise

        self._count(collection_name, "created")
        self.logger.info(
            "Backup created",
            backup_id=record.id,
            collection=collection_name,
            items=len(documents),
            size=size_formatted,
            reason=reason
        )
        return record

    async def restore(self, collection_name: str, backup_id: str) -> List[Dict[str, Any]]:
        """Reinsert the documents of a backup into their live collection.

        Original ids are kept, so restoring over live documents fails with a
        duplicate key error from the store.
        """
        collection = self._live_collection(collection_name)
        document = await self.store.find_by_id(BACKUPS, backup_id)
        if document is None or document.get("collection_name") != collection_name:
            raise NotFoundError(
                "Backup not found!",
                reason="Backup not found or mismatched collection",
                solution="Verify the backup ID and collection name!",
            )

        record = BackupRecord.from_document(document)
        restored = await self.store.insert_many(collection, record.data)
        self._count(collection_name, "restored")
        self.logger.info(
            "Backup restored",
            backup_id=backup_id,
            collection=collection_name,
            restored=len(restored)
        )
        return restored

    async def list_backups(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        collection_name: Optional[str] = None,
    ) -> Tuple[List[BackupRecord], Dict[str, Any]]:
        filters = {"collection_name": collection_name} if collection_name else {}
        total = await self.store.count(BACKUPS, filters)
        documents = await self.store.find(
            BACKUPS,
            filters,
            sort=[("created_at", -1)],
            skip=(page - 1) * limit,
            limit=limit,
        )

        if not documents:
            raise NotFoundError(
                "Records Not Found!",
                reason=(
                    f"No records found for collection: {collection_name}"
                    if collection_name else "No records available"
                ),
                solution=(
                    "Verify the collection name or check backup data"
                    if collection_name else "Check if any backups exist in the system"
                ),
            )

        total_pages = math.ceil(total / limit)
        pagination = {
            "totalRecords": total,
            "currentPage": page,
            "totalPages": total_pages,
            "recordsPerPage": limit,
            "hasNextPage": page < total_pages,
            "hasPreviousPage": page > 1,
        }
        return [BackupRecord.from_document(d) for d in documents], pagination


@dataclass(frozen=True)
class BackupJob:
    collection_name: str
    data: Union[Dict[str, Any], List[Dict[str, Any]]]
    reason: str
    request_id: Optional[str] = None


class BackupDispatcher:
    """Runs backup jobs in the background, outside the caller's transaction.

    Jobs start in a fresh context so they never join a transaction that is
    open in the submitting task. Failures are logged and counted only.
    """

    def __init__(self, backups: BackupService) -> None:
        self.backups = backups
        self.logger = get_logger("teams.backup.dispatcher")
        self._tasks: Set[asyncio.Task] = set()
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, job: BackupJob) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(job), context=contextvars.Context())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: BackupJob) -> Optional[BackupRecord]:
        if job.request_id:
            set_request_id(job.request_id)
        try:
            return await self.backups.backup(job.collection_name, job.data, job.reason)
        except Exception as e:
            self.failed += 1
            self.logger.error(
                "Background backup failed",
                collection=job.collection_name,
                reason=job.reason,
                error=str(e)
            )
            return None

    async def drain(self) -> None:
        """Wait for every submitted job to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
