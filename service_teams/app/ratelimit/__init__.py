"""
Rate limiting package for the Teams service.

Holds the token-bucket implementation and the route dependency that
enforces per-identity request quotas with burst tolerance.
"""
