"""
Authorization package.

The engine evaluates role and ownership rules against resolved users,
teams and projects. Every refusal carries its own message, reason and
solution so clients can tell the rules apart.
"""
