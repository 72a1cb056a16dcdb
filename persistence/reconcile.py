"""
Reconciliation engine: upserts batches of entities by matching them to
stored rows through their lookups.

Deletes selected by the caller's filters run first. Then, one pass per
chunk of DEPLOY_BATCH_SIZE entities:

1. Gather the lookups usable for the chunk and for each foreign key
2. Resolve existing rows with one lookup query per (type, foreign key)
3. Classify every entity as an insert or an update
4. Run updates (one per row), then a multi-row insert

A chunk's statements run before the next chunk is looked up, so later
chunks match rows inserted by earlier ones. Child collections cascade
last, with the parents' keys stamped on.

All statements run on the caller's session; committing or rolling back
is up to the caller.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.crypto import FieldCipher
from core.exceptions import (
    ChildFieldKindError,
    ForeignKeyError,
    InputError,
    PersistenceError,
    ValidationFailedError,
    squash_errors,
)
from models.base import AuditType, ChangeType, ContainerKind
from models.registry import SchemaRegistry
from models.table_metadata import Child, ForeignKey, Lookup, TableMetadata
from persistence.changes import Change, ChangeSet
from persistence.codec import convert, encrypt_value, marshal
from persistence.lookups import (
    build_lookup_query,
    compose_key,
    is_empty_key,
    key_from_row,
    lookup_object_keys,
    lookups_for_deploy,
)
from persistence.query.builder import build_multi
from persistence.query.hydrate import hydrate
from persistence.statements import (
    delete_by_keys_statement,
    execute,
    insert_statement,
    update_statement,
)
from persistence.values import get_property, is_zero_value, with_properties
import logging

logger = logging.getLogger(__name__)

# Composite key -> existing row (label -> value)
LookupResults = Dict[str, Dict[str, Any]]


class Reconciler:
    """
    Upsert engine bound to one session, tenant and performer.

    Table aliases used by lookup joins are cached for the lifetime of the
    instance, which is one top-level write call.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: SchemaRegistry,
        multitenancy_value: Any,
        performed_by: Any,
        cipher: Optional[FieldCipher] = None,
        batch_size: Optional[int] = None,
        separator: Optional[str] = None,
    ):
        self.session = session
        self.registry = registry
        self.multitenancy_value = multitenancy_value
        self.performed_by = performed_by
        self.cipher = cipher
        self.batch_size = batch_size or settings.DEPLOY_BATCH_SIZE
        self.separator = separator or settings.LOOKUP_KEY_SEPARATOR
        self.alias_cache: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def upsert(
        self,
        batch: Sequence[BaseModel],
        entity_type: Optional[type] = None,
        delete_filters: Optional[List[BaseModel]] = None,
    ) -> ChangeSet:
        """
        Reconcile a batch of entities of one type with storage.

        ``delete_filters`` select stored rows that should be removed unless
        the batch updates them.

        Returns:
            The combined ChangeSet of every sub-batch
        """
        batch = list(batch)
        if not batch and not delete_filters:
            return ChangeSet()

        if entity_type is None:
            entity_type = type(batch[0])
        metadata = self.registry.get(entity_type)
        for entity in batch:
            if not isinstance(entity, entity_type):
                raise InputError(
                    "All entities in a batch must have the same type",
                    context={"expected": entity_type.__name__, "received": type(entity).__name__}
                )

        chunks = [batch[start:start + self.batch_size] for start in range(0, len(batch), self.batch_size)]
        combined = ChangeSet()

        prefetched: Optional[Tuple[LookupResults, List[Lookup]]] = None
        if delete_filters:
            stamped = self._stamp_key_map_fields(batch, metadata)
            existing, lookups = await self.check_for_existing(stamped, metadata)
            combined.deletes = await self.generate_deletes(delete_filters, stamped, existing, lookups, metadata)
            await self.perform_deletes(combined.deletes, metadata)
            if len(chunks) == 1:
                prefetched = (existing, lookups)

        for index, chunk in enumerate(chunks):
            change_set = await self.generate_changes(chunk, metadata, prefetched)
            await self.perform_updates(change_set.updates, metadata)
            await self.perform_inserts(change_set.inserts, change_set.inserts_have_primary_key, metadata)
            if index == 0:
                combined.lookups_used = change_set.lookups_used
            combined.extend(change_set)

        logger.info(
            f"Reconciled {len(batch)} {metadata.table_name} records: "
            f"{len(combined.inserts)} inserted, {len(combined.updates)} updated, "
            f"{len(combined.deletes)} deleted"
        )

        await self.upsert_children(combined.updates + combined.inserts, metadata)
        return combined

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def check_for_existing(
        self,
        batch: Sequence[BaseModel],
        metadata: TableMetadata,
        foreign_key: Optional[ForeignKey] = None,
    ) -> Tuple[LookupResults, List[Lookup]]:
        """
        Find stored rows matching the batch (or the related entities behind
        ``foreign_key``).

        Returns:
            Existing rows keyed by composite key, and the lookups the keys
            were composed from
        """
        lookups = lookups_for_deploy(batch, metadata, foreign_key)
        keys = lookup_object_keys(batch, lookups, foreign_key, self.separator)
        if not lookups or not keys or not metadata.primary_key_column:
            return {}, lookups

        statement, labels = build_lookup_query(
            metadata, lookups, keys, self.multitenancy_value, self.alias_cache, self.separator
        )
        result = await execute(self.session, statement, "SELECT")
        rows = result.mappings().all()

        existing: LookupResults = {}
        for row in rows:
            existing[key_from_row(row, labels, self.separator)] = dict(row)
        logger.debug(f"Lookup on {metadata.table_name} matched {len(existing)} of {len(keys)} keys")
        return existing, lookups

    def _stamp_key_map_fields(self, batch: Sequence[BaseModel], metadata: TableMetadata) -> List[BaseModel]:
        """Copy each foreign key value onto its related entity's key map field"""
        mapped = [fk for fk in metadata.foreign_keys if fk.key_map_field]
        if not mapped:
            return list(batch)
        stamped = []
        for entity in batch:
            updates = {
                f"{fk.related_field_name}.{fk.key_map_field}": getattr(entity, fk.field_name, None)
                for fk in mapped
                if not is_zero_value(getattr(entity, fk.related_field_name, None))
            }
            stamped.append(with_properties(entity, updates))
        return stamped

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    async def generate_changes(
        self,
        batch: Sequence[BaseModel],
        metadata: TableMetadata,
        prefetched: Optional[Tuple[LookupResults, List[Lookup]]] = None,
    ) -> ChangeSet:
        """Classify one chunk; ``prefetched`` reuses a lookup already run for exactly this chunk"""
        batch = self._stamp_key_map_fields(batch, metadata)
        if prefetched is None:
            existing, lookups = await self.check_for_existing(batch, metadata)
        else:
            existing, lookups = prefetched

        foreign_results: Dict[str, Tuple[LookupResults, List[Lookup]]] = {}
        for foreign_key in metadata.foreign_keys:
            foreign_results[foreign_key.field_name] = await self.check_for_existing(
                batch, foreign_key.table_metadata, foreign_key
            )

        change_set = ChangeSet(lookups_used=lookups)
        errors: List[PersistenceError] = []
        for entity in batch:
            key = compose_key(entity, lookups, self.separator) if lookups else ""
            existing_row = existing.get(key) if key else None
            try:
                change = self.process_object(entity, existing_row, metadata, foreign_results)
            except PersistenceError as e:
                errors.append(e)
                continue
            change.key = key
            if change.change_type == ChangeType.UPDATE:
                change_set.updates.append(change)
            else:
                if change.changes.get(metadata.primary_key_column) is not None:
                    change_set.inserts_have_primary_key = True
                change_set.inserts.append(change)

        if errors:
            raise squash_errors(errors)
        return change_set

    def process_object(
        self,
        entity: BaseModel,
        existing_row: Optional[Dict[str, Any]],
        metadata: TableMetadata,
        foreign_results: Optional[Dict[str, Tuple[LookupResults, List[Lookup]]]] = None,
    ) -> Change:
        """
        Column values to write for one entity.

        Updates carry the stored primary key and never touch primary,
        tenant or creation audit columns. Inserts carry the tenant and are
        validated before they are accepted.
        """
        is_update = existing_row is not None
        now = datetime.now(timezone.utc)
        defined = entity.model_fields_set
        values: Dict[str, Any] = {}

        for field in metadata.fields:
            if is_update and not field.include_in_update():
                continue

            if field.audit in (AuditType.CREATED_BY, AuditType.UPDATED_BY):
                value = self.performed_by
            elif field.audit in (AuditType.CREATED_AT, AuditType.UPDATED_AT):
                value = now
            else:
                value = getattr(entity, field.name, None)
                if field.name not in defined and is_zero_value(value):
                    continue

            if not is_update and field.is_primary_key and (value is None or value == ""):
                continue
            values[field.column_name] = value

        if is_update:
            values[metadata.primary_key_column] = existing_row.get(f"t0.{metadata.primary_key_column}")
        elif metadata.multitenancy_key_column:
            values[metadata.multitenancy_key_column] = self.multitenancy_value

        for column in metadata.encrypted_columns():
            if column in values:
                values[column] = encrypt_value(self.cipher, values[column], column)
        for column in metadata.jsonb_columns():
            if column in values:
                values[column] = marshal(values[column])

        if foreign_results is not None:
            self._resolve_foreign_keys(entity, values, metadata, foreign_results)

        if not is_update:
            self._validate(entity, metadata)

        return Change(
            change_type=ChangeType.UPDATE if is_update else ChangeType.INSERT,
            changes=values,
            original=entity,
        )

    def _resolve_foreign_keys(
        self,
        entity: BaseModel,
        values: Dict[str, Any],
        metadata: TableMetadata,
        foreign_results: Dict[str, Tuple[LookupResults, List[Lookup]]],
    ) -> None:
        for foreign_key in metadata.foreign_keys:
            known = values.get(foreign_key.key_column)
            if known is not None and known != "" and not foreign_key.key_map_field:
                continue

            results, lookups = foreign_results.get(foreign_key.field_name, ({}, []))
            key = compose_key(entity, lookups, self.separator)
            row = results.get(key)
            if row is not None:
                related_pk = foreign_key.table_metadata.primary_key_column
                values[foreign_key.key_column] = row.get(f"t0.{related_pk}")
            elif foreign_key.required:
                raise ForeignKeyError(
                    "Missing Required Foreign Key Lookup",
                    table_name=metadata.table_name,
                    key=key,
                    key_column=foreign_key.key_column,
                    related_field=foreign_key.related_field_name,
                )

    def _validate(self, entity: BaseModel, metadata: TableMetadata) -> None:
        """Re-run the model's validators over its current state"""
        try:
            type(entity).model_validate(entity.model_dump())
        except ValidationError as e:
            raise ValidationFailedError(
                "Entity failed validation before insert",
                context={"table_name": metadata.table_name, "errors": e.errors(include_url=False)},
                original_exception=e
            )

    async def generate_deletes(
        self,
        delete_filters: List[BaseModel],
        batch: Sequence[BaseModel],
        existing: LookupResults,
        lookups: List[Lookup],
        metadata: TableMetadata,
    ) -> List[Change]:
        """
        Stored rows matched by the delete filters that the batch neither
        updates nor re-inserts.

        Runs before any of the batch is written, so rows the batch will
        update are recognised by the lookup results in ``existing`` and by
        the batch's own composite keys. Only fields set explicitly on a
        filter are matched.
        """
        key_fields = [metadata.primary_key_field] + [
            lookup.match_object_property
            for lookup in lookups
            if metadata.get_field(lookup.match_object_property) is not None
        ]
        table = build_multi(
            self.registry, self.multitenancy_value, delete_filters, key_fields, explicit_only=True
        )
        result = await execute(self.session, table.build_sql(), "SELECT")
        candidates = hydrate(result.mappings().all(), metadata, table.field_aliases(), self.cipher)

        pk_label = f"t0.{metadata.primary_key_column}"
        kept_ids = {str(row.get(pk_label)) for row in existing.values()}
        kept_ids.update(
            str(getattr(entity, metadata.primary_key_field, None))
            for entity in batch
            if not is_zero_value(getattr(entity, metadata.primary_key_field, None))
        )
        kept_keys = set()
        if lookups:
            for entity in batch:
                key = compose_key(entity, lookups, self.separator)
                if not is_empty_key(key, self.separator):
                    kept_keys.add(key)

        deletes = []
        for candidate in candidates:
            primary_key = getattr(candidate, metadata.primary_key_field, None)
            if str(primary_key) in kept_ids:
                continue
            if lookups and compose_key(candidate, lookups, self.separator) in kept_keys:
                continue
            deletes.append(
                Change(
                    change_type=ChangeType.DELETE,
                    changes={metadata.primary_key_column: primary_key},
                    original=candidate,
                )
            )
        return deletes

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def perform_deletes(self, deletes: List[Change], metadata: TableMetadata) -> None:
        if not deletes:
            return
        keys = [change.changes[metadata.primary_key_column] for change in deletes]
        statement = delete_by_keys_statement(metadata, keys, self.multitenancy_value)
        await execute(self.session, statement, "DELETE")
        logger.debug(f"Deleted {len(keys)} rows from {metadata.table_name}")

    async def perform_updates(self, updates: List[Change], metadata: TableMetadata) -> None:
        pk_column = metadata.primary_key_column
        for change in updates:
            values = {
                column: value
                for column, value in change.changes.items()
                if column != pk_column
            }
            if not values:
                continue
            statement = update_statement(metadata, values, change.changes[pk_column], self.multitenancy_value)
            await execute(self.session, statement, "UPDATE")

    async def perform_inserts(
        self,
        inserts: List[Change],
        inserts_have_primary_key: bool,
        metadata: TableMetadata,
    ) -> None:
        """Insert all rows in one statement and write the returned keys back in order"""
        if not inserts:
            return
        pk_column = metadata.primary_key_column
        rows = [
            {
                column: value
                for column, value in change.changes.items()
                if inserts_have_primary_key or column != pk_column
            }
            for change in inserts
        ]

        if not any(rows):
            # Nothing but defaults; insert row by row
            returned = []
            for row in rows:
                result = await execute(self.session, insert_statement(metadata, [row]), "INSERT")
                if pk_column:
                    returned.extend(result.scalars().all())
        else:
            result = await execute(self.session, insert_statement(metadata, rows), "INSERT")
            returned = result.scalars().all() if pk_column else []

        if pk_column:
            pk_type = metadata.get_field(metadata.primary_key_field).value_type
            for change, key in zip(inserts, returned):
                change.changes[pk_column] = convert(key, pk_type)

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    async def upsert_children(self, changes: List[Change], metadata: TableMetadata) -> None:
        """
        Upsert every child collection of the given parents as one batch per
        child relation, with the parents' keys stamped on each child.
        """
        pk_column = metadata.primary_key_column
        for child in metadata.children:
            batch: List[BaseModel] = []
            delete_filters: List[BaseModel] = []

            for change in changes:
                parent = change.original
                parent_key = change.changes.get(pk_column)
                value = getattr(parent, child.field_name, None)
                if value is None:
                    continue

                if child.delete_orphans and change.change_type == ChangeType.UPDATE and child.foreign_key:
                    delete_filters.append(child.element_type.model_construct(**{child.foreign_key: parent_key}))

                batch.extend(self._stamp_children(child, parent, parent_key, value))

            if not batch and not delete_filters:
                continue
            logger.debug(
                f"Cascading {len(batch)} {child.field_name} children of {metadata.table_name}"
            )
            await self.upsert(batch, child.element_type, delete_filters)

    def _stamp_children(self, child: Child, parent: BaseModel, parent_key: Any, value: Any) -> List[BaseModel]:
        if child.kind == ContainerKind.SEQUENCE and isinstance(value, (list, tuple)):
            items = [(None, item) for item in value]
        elif child.kind == ContainerKind.MAPPING and isinstance(value, dict):
            items = list(value.items())
        else:
            raise ChildFieldKindError(
                "Child field must hold a list or a dict",
                context={"field_name": child.field_name, "kind": child.kind.value, "value_type": type(value).__name__}
            )

        stamped = []
        for map_key, item in items:
            updates: Dict[str, Any] = {}
            if child.foreign_key:
                updates[child.foreign_key] = parent_key
            if map_key is not None and child.key_mapping:
                updates[child.key_mapping] = map_key
            if child.kind == ContainerKind.MAPPING:
                for parent_path, child_path in child.value_mappings.items():
                    updates[child_path] = get_property(parent, parent_path)
            stamped.append(with_properties(item, updates))
        return stamped

    # ------------------------------------------------------------------
    # Single models
    # ------------------------------------------------------------------

    async def insert_model(self, entity: BaseModel) -> Any:
        """Insert one entity without lookups or cascades; returns the new primary key"""
        metadata = self.registry.get(type(entity))
        change = self.process_object(entity, None, metadata)
        has_key = change.changes.get(metadata.primary_key_column) not in (None, "")
        await self.perform_inserts([change], has_key, metadata)
        return change.changes.get(metadata.primary_key_column)

    async def existing_by_id(self, metadata: TableMetadata, primary_key: Any) -> Optional[Dict[str, Any]]:
        lookup = Lookup(
            match_column=metadata.primary_key_column,
            match_object_property=metadata.primary_key_field,
            table_name=metadata.table_name,
        )
        statement, _ = build_lookup_query(
            metadata, [lookup], [str(primary_key)], self.multitenancy_value, self.alias_cache, self.separator
        )
        result = await execute(self.session, statement, "SELECT")
        rows = result.mappings().all()
        return dict(rows[0]) if rows else None

    async def update_model(self, entity: BaseModel, existing_row: Dict[str, Any]) -> None:
        metadata = self.registry.get(type(entity))
        change = self.process_object(entity, existing_row, metadata)
        await self.perform_updates([change], metadata)
