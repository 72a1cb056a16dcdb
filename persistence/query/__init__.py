"""
Read path: query building and hydration.

Modules:
    table: Aliased table tree and SELECT generation
    builder: Filter values and associations to table trees
    hydrate: Result rows back to nested entities
"""

from persistence.query.builder import build, build_child_query, build_multi
from persistence.query.hydrate import Hydrator, hydrate
from persistence.query.table import FieldDescriptor, QueryTable

__all__ = [
    "build",
    "build_multi",
    "build_child_query",
    "hydrate",
    "Hydrator",
    "FieldDescriptor",
    "QueryTable",
]
