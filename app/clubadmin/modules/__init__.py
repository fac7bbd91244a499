"""
Feature modules live under this package.

Each module owns its routes, models and service functions, and reuses the platform
primitives (auth, RBAC, audit, storage, jobs, DB session).
"""
