"""
Pydantic schemas for read requests: filters, associations and ordering
"""

from pydantic import BaseModel, Field
from typing import Any, List, Optional, Union, TYPE_CHECKING
from sqlalchemy import and_, or_
from core.exceptions import EncryptedFilterError, InputError

if TYPE_CHECKING:
    from models.table_metadata import TableMetadata
    from persistence.query.table import QueryTable


class OrderByRequest(BaseModel):
    """
    Request to order results by a field.

    The field's column is resolved at the alias of the table the request is
    attached to, e.g. ``ORDER BY t1.name DESC``.
    """
    field: str
    descending: bool = False


class FieldFilter(BaseModel):
    """Equality filter on a single field: ``t0.<column> = <value>``"""
    field_name: str
    filter_value: Any = None

    def apply(self, table: "QueryTable", metadata: "TableMetadata"):
        # Empty filters contribute nothing
        if not self.field_name:
            return None
        field_metadata = metadata.get_field(self.field_name)
        if field_metadata is None:
            raise InputError(
                "Field filter refers to an unknown field",
                context={"field_name": self.field_name, "table_name": metadata.table_name}
            )
        if field_metadata.is_encrypted:
            raise EncryptedFilterError(
                "cannot perform queries with where clauses on encrypted fields",
                context={"field_name": self.field_name, "table_name": metadata.table_name}
            )
        return table.column(field_metadata.column_name) == self.filter_value


class AndFilterGroup(BaseModel):
    """Filters combined with AND"""
    filters: List["Filterable"] = Field(default_factory=list)

    def apply(self, table: "QueryTable", metadata: "TableMetadata"):
        clauses = [c for c in (f.apply(table, metadata) for f in self.filters) if c is not None]
        return and_(*clauses) if clauses else None


class OrFilterGroup(BaseModel):
    """Filters combined with OR"""
    filters: List["Filterable"] = Field(default_factory=list)

    def apply(self, table: "QueryTable", metadata: "TableMetadata"):
        clauses = [c for c in (f.apply(table, metadata) for f in self.filters) if c is not None]
        return or_(*clauses) if clauses else None


Filterable = Union[FieldFilter, AndFilterGroup, OrFilterGroup]


class Association(BaseModel):
    """
    Relationship to eager load alongside the filtered entities.

    ``name`` is either the related field of a foreign key (joined into the
    same query) or a child collection field (loaded with its own query).
    Associations nest to load relations of relations.
    """
    name: str
    associations: List["Association"] = Field(default_factory=list)
    order_by: List[OrderByRequest] = Field(default_factory=list)
    select_fields: List[str] = Field(default_factory=list)
    field_filters: Optional[Filterable] = None


class FilterRequest(BaseModel):
    """
    Read request for FilterModel.

    ``filter_model`` is an entity instance (non-zero fields become equality
    predicates) or an entity class (no predicates).
    """
    filter_model: Any
    associations: List[Association] = Field(default_factory=list)
    order_by: List[OrderByRequest] = Field(default_factory=list)
    select_fields: List[str] = Field(default_factory=list)
    field_filters: Optional[Filterable] = None

    class Config:
        arbitrary_types_allowed = True


AndFilterGroup.model_rebuild()
OrFilterGroup.model_rebuild()
Association.model_rebuild()
FilterRequest.model_rebuild()
