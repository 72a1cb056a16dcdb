"""
Lookup-driven persistence for pydantic entities.

This package turns registered table metadata into SQL and back:

Modules:
    orm: PersistenceORM, the read/write entry point
    reconcile: Lookup-based upsert engine with child cascades
    lookups: Composite lookup keys and the queries that resolve them
    query: Query builder and hydrator
    statements: INSERT/UPDATE/DELETE construction and execution
    codec: JSONB and encrypted column encoding
    values: Dotted property access on entities

Usage:
    from persistence import PersistenceORM
    from schemas.requests import FilterRequest, Association

Example:
    async with async_session_maker() as session:
        orm = PersistenceORM(session, registry, tenant_id, user_id)
        await orm.deploy(teams)
        teams = await orm.filter_model(
            FilterRequest(filter_model=Team, associations=[Association(name="players")])
        )
"""

from persistence.changes import Change, ChangeSet
from persistence.orm import PersistenceORM
from persistence.reconcile import Reconciler

__all__ = [
    "PersistenceORM",
    "Reconciler",
    "Change",
    "ChangeSet",
]
