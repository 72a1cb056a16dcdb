"""
Schema model describing how an entity type maps onto a table.

Instances are built once per entity type, registered with a
SchemaRegistry and only read afterwards.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from core.exceptions import SchemaError
from models.base import AuditType, ContainerKind


@dataclass
class FieldMetadata:
    """One persisted field of an entity and its column"""

    name: str
    column_name: str
    is_primary_key: bool = False
    is_multitenancy_key: bool = False
    is_encrypted: bool = False
    is_jsonb: bool = False
    is_lookup: bool = False
    is_foreign_key: bool = False
    related_field_name: Optional[str] = None
    audit: Optional[AuditType] = None
    value_type: Any = None

    def include_in_update(self) -> bool:
        """Primary, tenant and creation audit columns are never updated"""
        return not (
            self.is_primary_key
            or self.is_multitenancy_key
            or self.audit in (AuditType.CREATED_AT, AuditType.CREATED_BY)
        )


@dataclass
class Lookup:
    """
    Business key column/property pair used to match stored rows.

    ``join_key`` is the dotted path of foreign key columns leading from the
    base table to ``table_name``; it is empty for lookups on the base table.
    """

    match_column: str
    match_object_property: str
    table_name: str = ""
    join_key: str = ""
    value: Any = None
    sub_query: Optional[List["Lookup"]] = None
    sub_query_foreign_key: str = ""
    sub_query_metadata: Optional["TableMetadata"] = None


@dataclass
class ForeignKey:
    """Reference from one of an entity's fields to another table"""

    field_name: str
    key_column: str
    related_field_name: str
    table_metadata: "TableMetadata"
    required: bool = False
    needs_lookup: bool = False
    key_map_field: str = ""


@dataclass
class Child:
    """
    Collection of dependent entities owned by a parent.

    ``foreign_key`` names the field on the element type that receives the
    parent's primary key. For mappings, ``key_mapping`` names the element
    field holding the map key and ``value_mappings`` copies parent fields
    (parent path -> element path) onto each element.
    """

    field_name: str
    element_type: type
    kind: ContainerKind = ContainerKind.SEQUENCE
    foreign_key: str = ""
    key_mapping: str = ""
    value_mappings: Dict[str, str] = field(default_factory=dict)
    grouping_criteria: Dict[str, str] = field(default_factory=dict)
    delete_orphans: bool = False


class TableMetadata:
    """Table name, ordered fields, lookups, foreign keys and children of one entity type"""

    def __init__(
        self,
        table_name: str,
        fields: List[FieldMetadata],
        foreign_keys: Optional[List[ForeignKey]] = None,
        children: Optional[List[Child]] = None,
        lookups: Optional[List[Lookup]] = None,
    ):
        self.table_name = table_name
        self.entity_type: Optional[type] = None
        self.foreign_keys = list(foreign_keys or [])
        self.children = list(children or [])

        by_name = {f.name: f for f in fields}
        for foreign_key in self.foreign_keys:
            declared = by_name.get(foreign_key.field_name)
            if declared is None:
                raise SchemaError(
                    "Foreign key refers to an undeclared field",
                    context={"table_name": table_name, "field_name": foreign_key.field_name}
                )
            by_name[foreign_key.field_name] = replace(
                declared,
                is_foreign_key=True,
                related_field_name=foreign_key.related_field_name,
            )

        self._fields: Dict[str, FieldMetadata] = {}
        self._field_order: List[str] = []
        for f in fields:
            self._fields[f.name] = by_name[f.name]
            self._field_order.append(f.name)

        primary_keys = [f.name for f in self.fields if f.is_primary_key]
        tenant_keys = [f.name for f in self.fields if f.is_multitenancy_key]
        if len(primary_keys) > 1:
            raise SchemaError(
                "At most one primary key field is allowed",
                context={"table_name": table_name, "fields": primary_keys}
            )
        if len(tenant_keys) > 1:
            raise SchemaError(
                "At most one multitenancy key field is allowed",
                context={"table_name": table_name, "fields": tenant_keys}
            )
        self.primary_key_field = primary_keys[0] if primary_keys else ""
        self.multitenancy_key_field = tenant_keys[0] if tenant_keys else ""

        if lookups is None:
            lookups = [
                Lookup(match_column=f.column_name, match_object_property=f.name)
                for f in self.fields
                if f.is_lookup and not f.is_foreign_key
            ]
        self.lookups = lookups

    def __repr__(self) -> str:
        return f"TableMetadata({self.table_name!r})"

    def bind(self, entity_type: type, value_types: Dict[str, Any]) -> None:
        """Attach the entity type and record each field's declared value type"""
        self.entity_type = entity_type
        for name in self._field_order:
            declared = self._fields[name]
            if declared.value_type is None:
                self._fields[name] = replace(declared, value_type=value_types.get(name))

    @property
    def fields(self) -> List[FieldMetadata]:
        """Fields in declaration order"""
        return [self._fields[name] for name in self._field_order]

    def get_field(self, name: str) -> Optional[FieldMetadata]:
        return self._fields.get(name)

    @property
    def primary_key_column(self) -> str:
        pk = self._fields.get(self.primary_key_field)
        return pk.column_name if pk else ""

    @property
    def multitenancy_key_column(self) -> str:
        mt = self._fields.get(self.multitenancy_key_field)
        return mt.column_name if mt else ""

    def column_names(self) -> List[str]:
        return [f.column_name for f in self.fields]

    def column_names_without_primary_key(self) -> List[str]:
        return [f.column_name for f in self.fields if not f.is_primary_key]

    def column_names_for_update(self) -> List[str]:
        return [f.column_name for f in self.fields if f.include_in_update()]

    def encrypted_columns(self) -> List[str]:
        return [f.column_name for f in self.fields if f.is_encrypted]

    def jsonb_columns(self) -> List[str]:
        return [f.column_name for f in self.fields if f.is_jsonb]

    def get_child(self, field_name: str) -> Optional[Child]:
        for child in self.children:
            if child.field_name == field_name:
                return child
        return None

    def get_child_by_foreign_key(self, foreign_key: str, element_type: type) -> Optional[Child]:
        for child in self.children:
            if child.foreign_key == foreign_key and child.element_type is element_type:
                return child
        return None

    def get_foreign_key(self, field_name: str) -> Optional[ForeignKey]:
        for foreign_key in self.foreign_keys:
            if foreign_key.field_name == field_name:
                return foreign_key
        return None

    def get_foreign_key_by_relation(self, related_field_name: str) -> Optional[ForeignKey]:
        for foreign_key in self.foreign_keys:
            if foreign_key.related_field_name == related_field_name:
                return foreign_key
        return None
