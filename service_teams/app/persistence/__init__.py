"""
Persistence layer for the Teams service.

Modules of interest:
- store: DocumentStore protocol, filter matching and the in-memory store.
- postgres: asyncpg store keeping documents in JSONB tables.
"""
