"""
Lookup-key engine.

Composes the composite string keys that match in-memory entities to
stored rows, and builds the SELECT that finds those rows through any
chain of foreign-key joins the lookups need.

Key composition order is the order of the lookup list: the primary key
alone when the batch carries one, otherwise declared lookups followed by
lookups pulled in through foreign keys, in declaration order. Lookups
with a literal ``value`` or a ``sub_query`` filter the query but do not
take part in the key.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Text, cast, func, literal, select
from sqlalchemy.sql import Select

from core.exceptions import SchemaError
from models.base import JoinType
from models.table_metadata import ForeignKey, Lookup, TableMetadata
from persistence.query.table import QueryTable, plain_table
from persistence.values import get_property, is_zero_value, property_string, to_key_string
import logging

logger = logging.getLogger(__name__)

BASE_ALIAS = "t0"


def key_lookups(lookups: Sequence[Lookup]) -> List[Lookup]:
    """Lookups that contribute a value to the composite key"""
    return [lookup for lookup in lookups if lookup.value is None and not lookup.sub_query]


def compose_key(entity: Any, lookups: Sequence[Lookup], separator: str = "|") -> str:
    """Join the string form of each lookup property, in lookup order"""
    return separator.join(
        property_string(entity, lookup.match_object_property) for lookup in key_lookups(lookups)
    )


def is_empty_key(key: str, separator: str = "|") -> bool:
    return key.replace(separator, "") == ""


def table_alias(table_name: str, join_key: str, alias_cache: Dict[str, str]) -> str:
    """
    Alias for a table reached through ``join_key``.

    Aliases are reused for the same table and join path across every
    lookup query of one reconciliation pass; ``t0`` is the base table.
    """
    cache_key = f"{table_name}_{join_key}"
    alias = alias_cache.get(cache_key)
    if alias is None:
        alias = f"t{len(alias_cache) + 1}"
        alias_cache[cache_key] = alias
    return alias


def _related_values(batch: Sequence[Any], object_prefix: str) -> List[Any]:
    if not object_prefix:
        return list(batch)
    path = object_prefix.rstrip(".")
    return [get_property(entity, path) for entity in batch]


def lookups_for_deploy(
    batch: Sequence[Any],
    metadata: TableMetadata,
    foreign_key: Optional[ForeignKey] = None,
) -> List[Lookup]:
    """
    Lookups used to match a batch (or the related entities behind one of
    its foreign keys) against stored rows.

    If any entity carries a primary key, the primary key becomes the only
    lookup for the whole batch.
    """
    object_prefix = f"{foreign_key.related_field_name}." if foreign_key else ""

    if metadata.primary_key_field:
        pk_property = object_prefix + metadata.primary_key_field
        for entity in batch:
            if not is_zero_value(get_property(entity, pk_property)):
                return [
                    Lookup(
                        match_column=metadata.primary_key_column,
                        match_object_property=pk_property,
                        table_name=metadata.table_name,
                    )
                ]

    lookups = [
        Lookup(
            match_column=lookup.match_column,
            match_object_property=object_prefix + lookup.match_object_property,
            table_name=metadata.table_name,
            join_key=lookup.join_key,
            value=lookup.value,
            sub_query=lookup.sub_query,
            sub_query_foreign_key=lookup.sub_query_foreign_key,
            sub_query_metadata=lookup.sub_query_metadata,
        )
        for lookup in metadata.lookups
    ]
    lookups.extend(lookups_from_foreign_keys(batch, metadata, "", object_prefix))
    return lookups


def lookups_from_foreign_keys(
    batch: Sequence[Any],
    metadata: TableMetadata,
    parent_join_key: str,
    parent_object_key: str,
) -> List[Lookup]:
    """
    Lookups pulled in through foreign keys flagged ``needs_lookup``.

    Each hop extends the join key with the foreign key column and the
    object path with the related field. When the batch already carries the
    foreign key value itself, the key column is matched directly and the
    related table is not joined.
    """
    lookups: List[Lookup] = []
    for foreign_key in metadata.foreign_keys:
        if not foreign_key.needs_lookup:
            continue

        related = foreign_key.table_metadata
        join_key = f"{parent_join_key}.{foreign_key.key_column}" if parent_join_key else foreign_key.key_column
        object_key = parent_object_key + foreign_key.related_field_name

        key_property = parent_object_key + foreign_key.field_name
        if any(not is_zero_value(get_property(entity, key_property)) for entity in batch):
            lookups.append(
                Lookup(
                    match_column=foreign_key.key_column,
                    match_object_property=key_property,
                    table_name=metadata.table_name,
                    join_key=parent_join_key,
                )
            )
            continue

        for lookup in related.lookups:
            lookups.append(
                Lookup(
                    match_column=lookup.match_column,
                    match_object_property=f"{object_key}.{lookup.match_object_property}",
                    table_name=related.table_name,
                    join_key=join_key,
                    value=lookup.value,
                    sub_query=lookup.sub_query,
                    sub_query_foreign_key=lookup.sub_query_foreign_key,
                    sub_query_metadata=lookup.sub_query_metadata,
                )
            )
        lookups.extend(lookups_from_foreign_keys(batch, related, join_key, object_key + "."))
    return lookups


def lookup_object_keys(
    batch: Sequence[Any],
    lookups: Sequence[Lookup],
    foreign_key: Optional[ForeignKey] = None,
    separator: str = "|",
) -> List[str]:
    """
    Distinct composite keys of a batch, in batch order.

    Entities whose related entity is missing and entities whose lookup
    values are all empty contribute no key.
    """
    keys: List[str] = []
    seen = set()
    related = _related_values(batch, f"{foreign_key.related_field_name}." if foreign_key else "")
    for entity, related_value in zip(batch, related):
        if foreign_key is not None and is_zero_value(related_value):
            continue
        key = compose_key(entity, lookups, separator)
        if is_empty_key(key, separator) or key in seen:
            continue
        seen.add(key)
        keys.append(key)
    return keys


def _join_path(
    tables: Dict[str, Tuple[QueryTable, TableMetadata]],
    join_key: str,
    alias_cache: Dict[str, str],
    multitenancy_value: Any,
) -> Tuple[QueryTable, TableMetadata]:
    """Join every table along ``join_key`` that is not joined yet"""
    if join_key in tables:
        return tables[join_key]

    prefix = ""
    for part in join_key.split("."):
        path = f"{prefix}.{part}" if prefix else part
        if path not in tables:
            parent_table, parent_metadata = tables[prefix]
            foreign_key = next(
                (fk for fk in parent_metadata.foreign_keys if fk.key_column == part), None
            )
            if foreign_key is None:
                raise SchemaError(
                    "Lookup join key does not follow a declared foreign key",
                    context={"table_name": parent_metadata.table_name, "join_key": join_key}
                )
            related = foreign_key.table_metadata
            joined = QueryTable(
                related.table_name,
                related.column_names(),
                alias=table_alias(related.table_name, path, alias_cache),
            )
            if related.multitenancy_key_column:
                joined.add_multitenancy_where(related.multitenancy_key_column, multitenancy_value)
            parent_table.append_join(joined, part, related.primary_key_column, JoinType.INNER)
            tables[path] = (joined, related)
        prefix = path
    return tables[join_key]


def sub_query_select(lookup: Lookup, multitenancy_value: Any) -> Select:
    """``SELECT <sub_query_foreign_key> FROM <sub table> WHERE <sub lookups>``"""
    sub_metadata = lookup.sub_query_metadata
    if sub_metadata is None:
        raise SchemaError(
            "Sub query lookup has no table metadata",
            context={"match_column": lookup.match_column}
        )
    extra = [l.match_column for l in lookup.sub_query] + [lookup.sub_query_foreign_key]
    sub_table = plain_table(sub_metadata.table_name, sub_metadata.column_names() + extra)
    stmt = select(sub_table.c[lookup.sub_query_foreign_key])
    if sub_metadata.multitenancy_key_column:
        stmt = stmt.where(sub_table.c[sub_metadata.multitenancy_key_column] == multitenancy_value)
    for sub_lookup in lookup.sub_query:
        if sub_lookup.sub_query:
            stmt = stmt.where(
                sub_table.c[sub_lookup.match_column].in_(sub_query_select(sub_lookup, multitenancy_value))
            )
        elif sub_lookup.value is not None:
            stmt = stmt.where(sub_table.c[sub_lookup.match_column] == sub_lookup.value)
    return stmt.correlate(None)


def build_lookup_query(
    metadata: TableMetadata,
    lookups: Sequence[Lookup],
    keys: Sequence[str],
    multitenancy_value: Any,
    alias_cache: Dict[str, str],
    separator: str = "|",
) -> Tuple[Select, List[str]]:
    """
    SELECT the primary key and lookup columns of rows whose composite key
    is one of ``keys``.

    Returns the statement and the result labels of the key columns, in
    key order.
    """
    base = QueryTable(metadata.table_name, metadata.column_names(), alias=BASE_ALIAS)
    if metadata.primary_key_column:
        base.add_column(metadata.primary_key_column)
    if metadata.multitenancy_key_column:
        base.add_multitenancy_where(metadata.multitenancy_key_column, multitenancy_value)

    tables = {"": (base, metadata)}
    labels: List[str] = []
    parts = []
    for lookup in lookups:
        owner, _ = _join_path(tables, lookup.join_key, alias_cache, multitenancy_value)
        if lookup.sub_query:
            owner.add_where_clause(
                owner.column(lookup.match_column).in_(sub_query_select(lookup, multitenancy_value))
            )
            continue
        if lookup.value is not None:
            owner.add_where(lookup.match_column, lookup.value)
            continue
        owner.add_column(lookup.match_column)
        labels.append(f"{owner.alias}.{lookup.match_column}")
        parts.append(func.coalesce(cast(owner.column(lookup.match_column), Text), ""))

    if parts:
        composite = parts[0]
        for part in parts[1:]:
            composite = composite.op("||")(literal(separator)).op("||")(part)
        base.add_where_clause(composite.in_(list(keys)))

    return base.build_sql(), labels


def key_from_row(row: Dict[str, Any], labels: Sequence[str], separator: str = "|") -> str:
    """Composite key of a result row, built from the same columns as the in-memory key"""
    return separator.join(to_key_string(row.get(label)) for label in labels)
