"""
Document store abstraction and the in-memory implementation.

The store is a generic CRUD datastore with equality queries, unique indexes
and multi-document transactions. Filters are maps of field path to value;
a dotted path matches inside lists of sub-documents (``{"teams.team": id}``)
and ``{"$in": [...]}`` matches any of the listed values.
"""

from __future__ import annotations

import copy
import functools
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from shared.logging import get_logger

from ..models import PROJECTS, TEAMS, USERS

Filters = Dict[str, Any]
Sort = Sequence[Tuple[str, int]]

UNIQUE_INDEXES: Dict[str, List[Tuple[str, ...]]] = {
    USERS: [("email",)],
    TEAMS: [("name", "created_by")],
    PROJECTS: [("name", "team")],
}


class PersistenceError(Exception):
    """Unexpected datastore failure."""


class DuplicateKeyError(PersistenceError):
    """A write violated the primary key or a unique index."""

    def __init__(self, collection: str, key: Tuple[str, ...], value: Tuple[Any, ...]):
        self.collection = collection
        self.key = key
        self.value = value
        super().__init__(f"E11000 duplicate key error collection: {collection} index: {'_'.join(key)} dup key: {value}")


class DocumentStore(Protocol):
    """Interface for document persistence."""

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def ping(self) -> float:
        ...

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def insert_many(self, collection: str, documents: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...

    async def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def find_one(self, collection: str, filters: Filters) -> Optional[Dict[str, Any]]:
        ...

    async def find(
        self,
        collection: str,
        filters: Optional[Filters] = None,
        *,
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def count(self, collection: str, filters: Optional[Filters] = None) -> int:
        ...

    async def update_one(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    async def delete_one(self, collection: str, doc_id: str) -> bool:
        ...

    async def push(
        self,
        collection: str,
        doc_id: str,
        field: str,
        item: Dict[str, Any],
        *,
        unique_on: Optional[Dict[str, Any]] = None,
        max_length: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Atomically append ``item`` to the list ``field`` of one document.

        Returns the updated document, or None when the document is missing,
        the list already holds an entry matching ``unique_on``, or it already
        has ``max_length`` entries.
        """
        ...

    async def pull(self, collection: str, filters: Filters, field: str, match: Dict[str, Any]) -> int:
        """Atomically remove every entry matching ``match`` from the list
        ``field`` of each document selected by top-level ``filters``.

        Returns the number of documents changed.
        """
        ...

    def transaction(self):
        """Async context manager; writes inside it commit or abort together."""
        ...


def _resolve(value: Any, parts: List[str]) -> List[Any]:
    if not parts:
        return value if isinstance(value, list) else [value]
    if isinstance(value, list):
        resolved: List[Any] = []
        for item in value:
            resolved.extend(_resolve(item, parts))
        return resolved
    if isinstance(value, dict) and parts[0] in value:
        return _resolve(value[parts[0]], parts[1:])
    return []


def match_document(document: Dict[str, Any], filters: Optional[Filters]) -> bool:
    """Return True when the document satisfies every filter entry."""
    for path, expected in (filters or {}).items():
        values = _resolve(document, path.split("."))
        if isinstance(expected, dict) and "$in" in expected:
            if not any(v in expected["$in"] for v in values):
                return False
        elif expected not in values:
            return False
    return True


def sort_documents(documents: List[Dict[str, Any]], sort: Optional[Sort]) -> List[Dict[str, Any]]:
    for field_name, direction in reversed(list(sort or [])):
        documents.sort(key=lambda d: (d.get(field_name) is None, d.get(field_name) or ""), reverse=direction < 0)
    return documents


def entry_matches(entry: Any, match: Dict[str, Any]) -> bool:
    """True when a list entry holds every key/value pair of ``match``."""
    return isinstance(entry, dict) and all(k in entry and entry[k] == v for k, v in match.items())


def unique_key(document: Dict[str, Any], fields: Tuple[str, ...]) -> Optional[Tuple[Any, ...]]:
    values = tuple(document.get(f) for f in fields)
    if any(v is None for v in values):
        return None
    return values


class InMemoryDocumentStore:
    """In-memory document store for development and tests.

    Transactions keep an undo journal in a context variable, so an abort
    reverts exactly the writes made by the task that opened the transaction.
    """

    def __init__(self, unique_indexes: Optional[Dict[str, List[Tuple[str, ...]]]] = None):
        self.logger = get_logger("teams.persistence.memory")
        self.unique_indexes = UNIQUE_INDEXES if unique_indexes is None else unique_indexes
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.connected = False
        self._journal: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar(
            f"memory_store_journal_{id(self)}", default=None
        )

    async def connect(self) -> None:
        self.connected = True
        self.logger.info("In-memory document store ready")

    async def close(self) -> None:
        self.connected = False

    async def ping(self) -> float:
        start = time.perf_counter()
        if not self.connected:
            raise PersistenceError("Document store is not connected")
        return (time.perf_counter() - start) * 1000

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.collections.clear()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})

    def _record_undo(self, undo: Callable[[], None]) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append(undo)

    def _check_unique(self, collection: str, document: Dict[str, Any], *, ignore_id: Optional[str] = None) -> None:
        docs = self._collection(collection)
        for fields in self.unique_indexes.get(collection, []):
            key = unique_key(document, fields)
            if key is None:
                continue
            for other in docs.values():
                if other["id"] != ignore_id and unique_key(other, fields) == key:
                    raise DuplicateKeyError(collection, fields, key)

    def _put(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        docs = self._collection(collection)
        doc_id = document.get("id")
        if not doc_id:
            raise PersistenceError("Document is missing an id")
        if doc_id in docs:
            raise DuplicateKeyError(collection, ("id",), (doc_id,))
        self._check_unique(collection, document)
        docs[doc_id] = copy.deepcopy(document)
        self._record_undo(lambda: docs.pop(doc_id, None))
        return copy.deepcopy(document)

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        return self._put(collection, document)

    async def insert_many(self, collection: str, documents: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        documents = list(documents)
        seen = set()
        for document in documents:
            if document.get("id") in seen:
                raise DuplicateKeyError(collection, ("id",), (document.get("id"),))
            seen.add(document.get("id"))
        return [self._put(collection, document) for document in documents]

    async def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        document = self._collection(collection).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def find_one(self, collection: str, filters: Filters) -> Optional[Dict[str, Any]]:
        for document in self._collection(collection).values():
            if match_document(document, filters):
                return copy.deepcopy(document)
        return None

    async def find(
        self,
        collection: str,
        filters: Optional[Filters] = None,
        *,
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        matched = [
            copy.deepcopy(d) for d in self._collection(collection).values()
            if match_document(d, filters)
        ]
        matched = sort_documents(matched, sort)
        end = None if limit is None else skip + limit
        return matched[skip:end]

    async def count(self, collection: str, filters: Optional[Filters] = None) -> int:
        return sum(1 for d in self._collection(collection).values() if match_document(d, filters))

    async def update_one(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        docs = self._collection(collection)
        current = docs.get(doc_id)
        if current is None:
            return None
        updated = {**current, **copy.deepcopy(changes), "id": doc_id}
        self._check_unique(collection, updated, ignore_id=doc_id)
        docs[doc_id] = updated
        self._record_undo(lambda: docs.__setitem__(doc_id, current))
        return copy.deepcopy(updated)

    async def delete_one(self, collection: str, doc_id: str) -> bool:
        docs = self._collection(collection)
        current = docs.pop(doc_id, None)
        if current is None:
            return False
        self._record_undo(lambda: docs.__setitem__(doc_id, current))
        return True

    @staticmethod
    def _drop_entry(docs: Dict[str, Dict[str, Any]], doc_id: str, field: str, entry: Any) -> None:
        document = docs.get(doc_id)
        if document is None:
            return
        entries = list(document.get(field) or [])
        for index in range(len(entries) - 1, -1, -1):
            if entries[index] == entry:
                del entries[index]
                break
        docs[doc_id] = {**document, field: entries}

    @staticmethod
    def _append_entries(docs: Dict[str, Dict[str, Any]], doc_id: str, field: str, entries: List[Any]) -> None:
        document = docs.get(doc_id)
        if document is not None:
            docs[doc_id] = {**document, field: list(document.get(field) or []) + entries}

    async def push(
        self,
        collection: str,
        doc_id: str,
        field: str,
        item: Dict[str, Any],
        *,
        unique_on: Optional[Dict[str, Any]] = None,
        max_length: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        docs = self._collection(collection)
        current = docs.get(doc_id)
        if current is None:
            return None
        entries = list(current.get(field) or [])
        if unique_on is not None and any(entry_matches(e, unique_on) for e in entries):
            return None
        if max_length is not None and len(entries) >= max_length:
            return None

        entry = copy.deepcopy(item)
        docs[doc_id] = {**current, field: entries + [entry]}
        self._record_undo(functools.partial(self._drop_entry, docs, doc_id, field, entry))
        return copy.deepcopy(docs[doc_id])

    async def pull(self, collection: str, filters: Filters, field: str, match: Dict[str, Any]) -> int:
        docs = self._collection(collection)
        changed = 0
        for doc_id, current in list(docs.items()):
            if not match_document(current, filters):
                continue
            entries = list(current.get(field) or [])
            removed = [e for e in entries if entry_matches(e, match)]
            if not removed:
                continue
            docs[doc_id] = {**current, field: [e for e in entries if not entry_matches(e, match)]}
            self._record_undo(functools.partial(self._append_entries, docs, doc_id, field, removed))
            changed += 1
        return changed

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._journal.get() is not None:
            # nested: join the outer transaction
            yield
            return

        journal: List[Callable[[], None]] = []
        token = self._journal.set(journal)
        try:
            yield
        except BaseException:
            for undo in reversed(journal):
                undo()
            self.logger.warning("Transaction aborted", reverted_writes=len(journal))
            raise
        finally:
            self._journal.reset(token)
