"""
Teams Service package.

The service manages users, teams and projects, enforcing:
- Rate limiting: in-process token buckets per identity, route and method
- Authentication: HS256 bearer tokens issued at signup/login
- Authorization: role and ownership rules per operation
- Backups: snapshots of deleted teams that can be restored later

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.models: Domain documents and request bodies.
- app.ratelimit: Token bucket registry and route dependency.
- app.auth: Password hashing, tokens and bearer authentication.
- app.authz: Authorization engine.
- app.persistence: Document store implementations.
- app.backup: Backup service and background dispatcher.
- app.domain: User, team and project operations.
"""
