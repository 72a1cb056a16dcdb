import enum


# ============================================================================
# ENUMS
# ============================================================================

class AuditType(str, enum.Enum):
    """Audit roles stamped automatically on insert/update"""
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    CREATED_BY = "created_by"
    UPDATED_BY = "updated_by"


class ContainerKind(str, enum.Enum):
    """Container holding a child collection on its parent"""
    SEQUENCE = "sequence"
    MAPPING = "mapping"


class ChangeType(str, enum.Enum):
    """Statement classification produced by reconciliation"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class JoinType(str, enum.Enum):
    """Join flavours supported by the query builder"""
    LEFT = "left"
    INNER = "inner"
