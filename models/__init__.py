"""
Schema model describing how entity types map onto tables.

Models:
    base: Shared enums (AuditType, ContainerKind, ChangeType, JoinType)
    table_metadata: TableMetadata, FieldMetadata, ForeignKey, Child, Lookup
    registry: SchemaRegistry mapping entity types to their TableMetadata

Usage:
    from models.table_metadata import TableMetadata, FieldMetadata, ForeignKey
    from models.registry import SchemaRegistry

Example:
    registry = SchemaRegistry()
    registry.register(
        Team,
        TableMetadata(
            "team",
            [
                FieldMetadata("id", "id", is_primary_key=True),
                FieldMetadata("organization_id", "organization_id", is_multitenancy_key=True),
                FieldMetadata("name", "name", is_lookup=True),
            ],
        ),
    )
"""

__all__ = [
    "AuditType",
    "ContainerKind",
    "ChangeType",
    "JoinType",
    "TableMetadata",
    "FieldMetadata",
    "ForeignKey",
    "Child",
    "Lookup",
    "SchemaRegistry",
]
