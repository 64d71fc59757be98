"""
Domain operations for the Teams service.

Each service resolves the entities a request refers to, asks the
authorization engine, checks uniqueness and capacity, then writes.
"""
