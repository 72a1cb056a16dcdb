"""
Query builder: turns a filter value and an association tree into an
aliased QueryTable tree.

Tables are aliased depth first in the order foreign keys are met while
walking fields in declaration order. Child collections are never joined;
they are loaded by a second query per parent batch (see
``child_associations``).
"""

from itertools import count
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import and_, or_

from core.exceptions import (
    AssociationNotFoundError,
    EncryptedFilterError,
    InputError,
    InvalidFilterModelError,
    SchemaError,
)
from models.registry import SchemaRegistry
from models.table_metadata import Child, FieldMetadata, TableMetadata
from persistence.query.table import QueryTable
from persistence.values import get_property, is_zero_value
from schemas.requests import Association, Filterable, OrderByRequest
import logging

logger = logging.getLogger(__name__)


def entity_type_of(filter_model: Any) -> type:
    """Entity class of a filter value, which may be an instance or the class itself"""
    entity_type = filter_model if isinstance(filter_model, type) else type(filter_model)
    if not issubclass(entity_type, BaseModel):
        raise InvalidFilterModelError(
            "Filter model must be a pydantic model instance or class",
            context={"filter_model": repr(filter_model)}
        )
    return entity_type


def validate_associations(metadata: TableMetadata, associations: Sequence[Association]) -> None:
    for association in associations:
        if metadata.get_foreign_key_by_relation(association.name) is None and metadata.get_child(association.name) is None:
            raise AssociationNotFoundError(
                "Association does not exist on type",
                context={"association": association.name, "table_name": metadata.table_name}
            )


def _filter_predicate(table: QueryTable, field: FieldMetadata, metadata: TableMetadata, value: Any):
    if field.is_encrypted:
        raise EncryptedFilterError(
            "cannot perform queries with where clauses on encrypted fields",
            context={"field_name": field.name, "table_name": metadata.table_name}
        )
    if field.is_jsonb:
        raise InputError(
            "cannot perform queries with where clauses on JSONB fields",
            context={"field_name": field.name, "table_name": metadata.table_name}
        )
    return table.column(field.column_name) == value


def _selected_fields(metadata: TableMetadata, select_fields: Sequence[str]) -> Optional[set]:
    if not select_fields:
        return None
    for name in select_fields:
        if metadata.get_field(name) is None:
            raise InputError(
                "Selected field does not exist on type",
                context={"field_name": name, "table_name": metadata.table_name}
            )
    return set(select_fields) | {metadata.primary_key_field}


def _apply_ordering(table: QueryTable, metadata: TableMetadata, order_by: Sequence[OrderByRequest]) -> None:
    for order in order_by:
        field = metadata.get_field(order.field)
        if field is None:
            raise InputError(
                "Order by field does not exist on type",
                context={"field_name": order.field, "table_name": metadata.table_name}
            )
        table.add_order_by(field.column_name, order.descending)


def _build_table(
    registry: SchemaRegistry,
    multitenancy_value: Any,
    metadata: TableMetadata,
    filter_value: Any,
    associations: Sequence[Association],
    select_fields: Sequence[str],
    order_by: Sequence[OrderByRequest],
    field_filters: Optional[Filterable],
    table: QueryTable,
    path_types: Tuple[type, ...],
) -> QueryTable:
    validate_associations(metadata, associations)
    selected = _selected_fields(metadata, select_fields)
    instance = filter_value if isinstance(filter_value, BaseModel) else None

    for field in metadata.fields:
        value = getattr(instance, field.name, None) if instance is not None else None

        if field.is_multitenancy_key:
            table.add_multitenancy_where(field.column_name, multitenancy_value)

        if field.is_foreign_key:
            foreign_key = metadata.get_foreign_key(field.name)
            related = foreign_key.table_metadata
            association = next((a for a in associations if a.name == foreign_key.related_field_name), None)
            related_value = (
                getattr(instance, foreign_key.related_field_name, None) if instance is not None else None
            )
            join = (
                association is not None
                or not is_zero_value(related_value)
                or (foreign_key.required and related.entity_type not in path_types)
            )
            if join or selected is None or field.name in selected:
                table.add_column(field.column_name)
            if join:
                ref_path = (
                    f"{table.ref_path}.{foreign_key.related_field_name}"
                    if table.ref_path else foreign_key.related_field_name
                )
                joined = table.new_table(related.table_name, related.column_names(), ref_path=ref_path)
                table.append_join(joined, field.column_name, related.primary_key_column)
                _build_table(
                    registry,
                    multitenancy_value,
                    related,
                    related_value,
                    association.associations if association else [],
                    association.select_fields if association else [],
                    association.order_by if association else [],
                    association.field_filters if association else None,
                    joined,
                    path_types + (related.entity_type,),
                )
            if not is_zero_value(value):
                table.add_where(field.column_name, value)
            continue

        if selected is None or field.name in selected or field.is_multitenancy_key:
            table.add_column(field.column_name)

        if field.is_multitenancy_key or is_zero_value(value):
            continue
        table.add_where_clause(_filter_predicate(table, field, metadata, value))

    if field_filters is not None:
        table.add_where_clause(field_filters.apply(table, metadata))
    _apply_ordering(table, metadata, order_by)
    return table


def build(
    registry: SchemaRegistry,
    multitenancy_value: Any,
    filter_model: Any,
    associations: Sequence[Association] = (),
    select_fields: Sequence[str] = (),
    order_by: Sequence[OrderByRequest] = (),
    field_filters: Optional[Filterable] = None,
) -> QueryTable:
    """
    Build the aliased table tree for one filter request.

    Non-zero fields of ``filter_model`` become equality predicates at their
    table's alias. Every table carrying a multitenancy key is scoped to
    ``multitenancy_value``.
    """
    entity_type = entity_type_of(filter_model)
    metadata = registry.get(entity_type)
    root = QueryTable(metadata.table_name, metadata.column_names(), counter=count())
    _build_table(
        registry,
        multitenancy_value,
        metadata,
        filter_model,
        associations,
        select_fields,
        order_by,
        field_filters,
        root,
        (entity_type,),
    )
    logger.debug(f"Built query over {len(list(root.tables()))} tables for {metadata.table_name}")
    return root


def build_multi(
    registry: SchemaRegistry,
    multitenancy_value: Any,
    filter_models: Sequence[Any],
    select_fields: Sequence[str] = (),
    explicit_only: bool = False,
) -> QueryTable:
    """
    Build one query matching any of several filter values of the same type.

    Each value's non-zero fields are AND-ed and the values are OR-ed. No
    relations are joined. With ``explicit_only`` only fields in each
    value's ``model_fields_set`` are matched, so model defaults never
    become predicates.
    """
    if not filter_models:
        raise InvalidFilterModelError("At least one filter model is required")
    entity_type = entity_type_of(filter_models[0])
    metadata = registry.get(entity_type)
    root = QueryTable(metadata.table_name, metadata.column_names(), counter=count())
    selected = _selected_fields(metadata, select_fields)

    for field in metadata.fields:
        if selected is None or field.name in selected or field.is_multitenancy_key:
            root.add_column(field.column_name)
        if field.is_multitenancy_key:
            root.add_multitenancy_where(field.column_name, multitenancy_value)

    alternatives = []
    for filter_model in filter_models:
        if entity_type_of(filter_model) is not entity_type:
            raise InvalidFilterModelError(
                "All filter models must have the same type",
                context={"expected": entity_type.__name__, "received": type(filter_model).__name__}
            )
        clauses = []
        for field in metadata.fields:
            value = getattr(filter_model, field.name, None) if isinstance(filter_model, BaseModel) else None
            if field.is_multitenancy_key or is_zero_value(value):
                continue
            if explicit_only and field.name not in filter_model.model_fields_set:
                continue
            clauses.append(_filter_predicate(root, field, metadata, value))
        if clauses:
            alternatives.append(and_(*clauses))
    if alternatives:
        root.add_where_clause(or_(*alternatives))
    return root


def child_associations(
    metadata: TableMetadata, associations: Sequence[Association]
) -> List[Tuple[Child, Association]]:
    """Requested associations that name child collections"""
    validate_associations(metadata, associations)
    pairs = []
    for association in associations:
        child = metadata.get_child(association.name)
        if child is not None:
            pairs.append((child, association))
    return pairs


def build_child_query(
    registry: SchemaRegistry,
    multitenancy_value: Any,
    parent_metadata: TableMetadata,
    parents: Sequence[Any],
    child: Child,
    association: Association,
) -> Optional[QueryTable]:
    """
    Query loading one child collection for a batch of parents.

    Children are selected by ``foreign key IN (parent primary keys)`` or,
    with grouping criteria, by each child field matching the values of its
    parent field. Returns None when no parent can have children.
    """
    child_metadata = registry.get(child.element_type)
    table = build(
        registry,
        multitenancy_value,
        child.element_type,
        association.associations,
        association.select_fields,
        association.order_by,
        association.field_filters,
    )

    if child.grouping_criteria:
        for child_path, parent_path in child.grouping_criteria.items():
            field = child_metadata.get_field(child_path)
            if field is None:
                raise SchemaError(
                    "Grouping criteria names an unknown child field",
                    context={"table_name": child_metadata.table_name, "field_name": child_path}
                )
            values = _distinct_values(parents, parent_path)
            if not values:
                return None
            table.add_column(field.column_name)
            table.add_where(field.column_name, values)
        return table

    parent_keys = _distinct_values(parents, parent_metadata.primary_key_field)
    if not parent_keys:
        return None
    foreign_key_field = child_metadata.get_field(child.foreign_key)
    if foreign_key_field is None:
        raise AssociationNotFoundError(
            "Child foreign key is not a field of the child type",
            context={"association": association.name, "foreign_key": child.foreign_key}
        )
    table.add_column(foreign_key_field.column_name)
    table.add_where(foreign_key_field.column_name, parent_keys)
    return table


def _distinct_values(entities: Sequence[Any], path: str) -> List[Any]:
    values: Dict[str, Any] = {}
    for entity in entities:
        value = get_property(entity, path)
        if not is_zero_value(value):
            values.setdefault(str(value), value)
    return list(values.values())
