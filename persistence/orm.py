"""
PersistenceORM: read and write entry points over one AsyncSession.

Every call is scoped to one tenant (``multitenancy_value``) and stamps
audit columns with one performer (``performed_by``).

Transactions:
    Without start_transaction() each write call commits on success and
    rolls back on error. After start_transaction() every call runs in the
    caller's transaction; errors still roll it back but only commit()
    makes the work permanent.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.crypto import FieldCipher
from core.exceptions import (
    EncryptedFilterError,
    InputError,
    ModelNotFoundError,
    PersistenceError,
    QueryError,
)
from models.base import ContainerKind
from models.registry import SchemaRegistry
from models.table_metadata import Child, TableMetadata
from persistence.changes import ChangeSet
from persistence.query.builder import (
    build,
    build_child_query,
    build_multi,
    entity_type_of,
    validate_associations,
)
from persistence.query.hydrate import hydrate
from persistence.query.table import delete_statement
from persistence.reconcile import Reconciler
from persistence.statements import execute
from persistence.values import get_property, is_zero_value, to_key_string
from schemas.requests import Association, FilterRequest
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceORM:
    """
    Metadata-driven persistence for pydantic entities.

    Example:
        orm = PersistenceORM(session, registry, tenant_id, user_id)
        await orm.deploy([Team(name="pops")])
        teams = await orm.filter_model(FilterRequest(filter_model=Team(name="pops")))
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: SchemaRegistry,
        multitenancy_value: Any,
        performed_by: Any,
        *,
        cipher: Optional[FieldCipher] = None,
        batch_size: Optional[int] = None,
        separator: Optional[str] = None,
    ):
        self.session = session
        self.registry = registry
        self.multitenancy_value = multitenancy_value
        self.performed_by = performed_by
        self.cipher = cipher
        self.batch_size = batch_size
        self.separator = separator
        self._in_transaction = False

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    async def start_transaction(self) -> None:
        """Hold every following call in one transaction until commit() or rollback()"""
        self._in_transaction = True
        logger.debug("Started caller transaction")

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise QueryError("Commit failed", context={"operation": "COMMIT"}, original_exception=e)
        finally:
            self._in_transaction = False

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        finally:
            self._in_transaction = False

    async def _run_write(self, operation: str, action: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await action()
            if not self._in_transaction:
                await self.session.commit()
            return result

        except PersistenceError as e:
            logger.error(
                f"{operation} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            await self.rollback()
            raise

        except SQLAlchemyError as e:
            await self.rollback()
            error = QueryError(
                f"{operation} failed",
                context={"operation": operation},
                original_exception=e
            )
            logger.error(error.message, extra={"error_context": error.to_dict()})
            raise error

        except Exception as e:
            logger.error(f"{operation} failed: {str(e)}")
            await self.rollback()
            raise

    def _reconciler(self) -> Reconciler:
        return Reconciler(
            self.session,
            self.registry,
            self.multitenancy_value,
            self.performed_by,
            cipher=self.cipher,
            batch_size=self.batch_size,
            separator=self.separator,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def filter_model(self, request: FilterRequest) -> List[BaseModel]:
        """
        Load entities matching a filter request, with the requested
        relations joined and child collections loaded.

        Raises:
            InvalidFilterModelError: If the filter value is not a pydantic record
            AssociationNotFoundError: If an association is not on the type
            EncryptedFilterError: If a filter targets an encrypted field
        """
        try:
            metadata = self.registry.get(entity_type_of(request.filter_model))
            table = build(
                self.registry,
                self.multitenancy_value,
                request.filter_model,
                request.associations,
                request.select_fields,
                request.order_by,
                request.field_filters,
            )
            result = await execute(self.session, table.build_sql(), "SELECT")
            results = hydrate(result.mappings().all(), metadata, table.field_aliases(), self.cipher)
            await self._populate_children(results, metadata, request.associations)
        except PersistenceError as e:
            await self._after_read_error(e)
            raise

        logger.debug(f"Filter on {metadata.table_name} returned {len(results)} records")
        return results

    async def filter_models(self, filter_models: Sequence[BaseModel]) -> List[BaseModel]:
        """Load entities matching any of several filter values of one type"""
        if not filter_models:
            return []
        try:
            metadata = self.registry.get(entity_type_of(filter_models[0]))
            table = build_multi(self.registry, self.multitenancy_value, filter_models)
            result = await execute(self.session, table.build_sql(), "SELECT")
            return hydrate(result.mappings().all(), metadata, table.field_aliases(), self.cipher)
        except PersistenceError as e:
            await self._after_read_error(e)
            raise

    async def _after_read_error(self, error: PersistenceError) -> None:
        logger.error(
            f"Filter failed: {error.message}",
            extra={"error_context": error.to_dict()}
        )
        if isinstance(error, QueryError) and not self._in_transaction:
            await self.session.rollback()

    async def _populate_children(
        self,
        parents: List[BaseModel],
        metadata: TableMetadata,
        associations: Sequence[Association],
    ) -> None:
        if not parents:
            return
        validate_associations(metadata, associations)

        for association in associations:
            child = metadata.get_child(association.name)
            if child is None:
                # Joined relation; look for child associations below it
                foreign_key = metadata.get_foreign_key_by_relation(association.name)
                related = [
                    value for value in (getattr(p, association.name, None) for p in parents)
                    if value is not None
                ]
                await self._populate_children(related, foreign_key.table_metadata, association.associations)
                continue

            child_metadata = self.registry.get(child.element_type)
            table = build_child_query(
                self.registry, self.multitenancy_value, metadata, parents, child, association
            )
            if table is None:
                continue
            result = await execute(self.session, table.build_sql(), "SELECT")
            children = hydrate(result.mappings().all(), child_metadata, table.field_aliases(), self.cipher)
            await self._populate_children(children, child_metadata, association.associations)
            self._merge_children(parents, children, metadata, child)

    def _merge_children(
        self,
        parents: List[BaseModel],
        children: List[BaseModel],
        metadata: TableMetadata,
        child: Child,
    ) -> None:
        """Attach each child to the parent it belongs to"""
        if child.grouping_criteria:
            child_paths = list(child.grouping_criteria)
            parent_paths = [child.grouping_criteria[path] for path in child_paths]
        else:
            child_paths = [child.foreign_key]
            parent_paths = [metadata.primary_key_field]

        grouped: Dict[tuple, List[BaseModel]] = {}
        for item in children:
            key = tuple(to_key_string(get_property(item, path)) for path in child_paths)
            grouped.setdefault(key, []).append(item)

        for parent in parents:
            key = tuple(to_key_string(get_property(parent, path)) for path in parent_paths)
            matches = grouped.get(key, [])
            if child.kind == ContainerKind.MAPPING:
                value = {get_property(item, child.key_mapping): item for item in matches}
            else:
                value = list(matches)
            setattr(parent, child.field_name, value)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def deploy(self, batch: Sequence[BaseModel]) -> ChangeSet:
        """Upsert a batch of entities of one type, cascading into children"""
        reconciler = self._reconciler()
        return await self._run_write("deploy", lambda: reconciler.upsert(batch))

    async def deploy_multiple(self, batches: Sequence[Sequence[BaseModel]]) -> List[ChangeSet]:
        """Upsert several batches in one transaction"""
        reconciler = self._reconciler()

        async def action() -> List[ChangeSet]:
            return [await reconciler.upsert(batch) for batch in batches]

        return await self._run_write("deploy_multiple", action)

    async def create_model(self, entity: BaseModel) -> BaseModel:
        """Insert one entity and return a copy carrying its primary key"""
        metadata = self.registry.get(entity_type_of(entity))
        reconciler = self._reconciler()

        async def action() -> BaseModel:
            key = await reconciler.insert_model(entity)
            if not metadata.primary_key_field:
                return entity
            return entity.model_copy(update={metadata.primary_key_field: key})

        return await self._run_write("create_model", action)

    async def save_model(self, entity: BaseModel) -> BaseModel:
        """
        Insert the entity when it has no primary key, otherwise update the
        stored row with its defined fields.

        Raises:
            ModelNotFoundError: If no row with the primary key exists for the tenant
        """
        metadata = self.registry.get(entity_type_of(entity))
        primary_key = getattr(entity, metadata.primary_key_field, None) if metadata.primary_key_field else None
        if is_zero_value(primary_key):
            return await self.create_model(entity)

        reconciler = self._reconciler()

        async def action() -> BaseModel:
            existing = await reconciler.existing_by_id(metadata, primary_key)
            if existing is None:
                raise ModelNotFoundError(
                    "Model not found",
                    context={"table_name": metadata.table_name, "primary_key": str(primary_key)}
                )
            await reconciler.update_model(entity, existing)
            return entity

        return await self._run_write("save_model", action)

    async def delete_model(self, filter_model: Any) -> int:
        """
        Delete rows matching the filter's non-zero fields for the tenant.

        Returns:
            Number of rows deleted
        """
        metadata = self.registry.get(entity_type_of(filter_model))
        instance = filter_model if isinstance(filter_model, BaseModel) else None

        predicates: Dict[str, Any] = {}
        for field in metadata.fields:
            if field.is_multitenancy_key:
                predicates[field.column_name] = self.multitenancy_value
                continue
            value = getattr(instance, field.name, None) if instance is not None else None
            if is_zero_value(value):
                continue
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
            predicates[field.column_name] = value

        statement = delete_statement(metadata.table_name, metadata.column_names(), predicates)

        async def action() -> int:
            result = await execute(self.session, statement, "DELETE")
            return result.rowcount

        count = await self._run_write("delete_model", action)
        logger.info(f"Deleted {count} rows from {metadata.table_name}")
        return count
