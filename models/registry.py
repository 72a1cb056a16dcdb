"""
Schema registry: the single source of table metadata for the ORM.

Metadata is registered once per entity type at startup and read for the
lifetime of the process. The registry is passed explicitly to the query
builder and reconciliation engine rather than kept as global state.
"""

from typing import Any, Dict, Iterator, Type

from pydantic import BaseModel

from core.exceptions import MissingTableNameError, SchemaError
from models.table_metadata import TableMetadata
import logging

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """Maps pydantic entity types to their TableMetadata"""

    def __init__(self):
        self._tables: Dict[type, TableMetadata] = {}

    def register(self, entity_type: Type[BaseModel], table_metadata: TableMetadata) -> TableMetadata:
        """
        Validate and register metadata for an entity type.

        Raises:
            MissingTableNameError: If the metadata has no table name
            SchemaError: If the type is not a pydantic model or a declared
                field, relation or child does not exist on it
        """
        if not (isinstance(entity_type, type) and issubclass(entity_type, BaseModel)):
            raise SchemaError(
                "Entity types must be pydantic models",
                context={"entity_type": repr(entity_type)}
            )

        if not table_metadata.table_name:
            raise MissingTableNameError(
                "No table name specified in table metadata",
                context={"entity_type": entity_type.__name__}
            )

        model_fields = entity_type.model_fields
        declared = [f.name for f in table_metadata.fields]
        declared += [fk.related_field_name for fk in table_metadata.foreign_keys]
        declared += [child.field_name for child in table_metadata.children]
        for name in declared:
            if name not in model_fields:
                raise SchemaError(
                    "Declared field does not exist on entity type",
                    context={
                        "entity_type": entity_type.__name__,
                        "table_name": table_metadata.table_name,
                        "field_name": name,
                    }
                )

        if table_metadata.children and not table_metadata.primary_key_field:
            raise SchemaError(
                "Tables with child relations need a primary key",
                context={"entity_type": entity_type.__name__, "table_name": table_metadata.table_name}
            )

        table_metadata.bind(
            entity_type,
            {name: info.annotation for name, info in model_fields.items()},
        )
        self._tables[entity_type] = table_metadata

        logger.debug(f"Registered {entity_type.__name__} -> {table_metadata.table_name}")
        return table_metadata

    def get(self, entity_type: type) -> TableMetadata:
        """Return metadata for a type, raising MissingTableNameError if unregistered"""
        table_metadata = self._tables.get(entity_type)
        if table_metadata is None:
            name = getattr(entity_type, "__name__", repr(entity_type))
            raise MissingTableNameError(
                "No table metadata registered for entity type",
                context={"entity_type": name}
            )
        return table_metadata

    def for_value(self, value: Any) -> TableMetadata:
        """Metadata for an entity instance, an entity class, or the first item of a batch"""
        if isinstance(value, (list, tuple)):
            if not value:
                raise SchemaError("Cannot determine the entity type of an empty batch")
            value = value[0]
        if isinstance(value, type):
            return self.get(value)
        return self.get(type(value))

    def __contains__(self, entity_type: type) -> bool:
        return entity_type in self._tables

    def __iter__(self) -> Iterator[TableMetadata]:
        return iter(self._tables.values())
