"""
Entity types and table metadata shared by the tests.

Relations:
    ToyModel --child_id--> ChildModel --parent_id (required)--> ParentModel
    ParentModel.children: list of ChildModel (orphans deleted)
    ParentModel.tags: dict of TagModel keyed by name
    OwnerModel.pets: list of PetModel (orphans deleted, PetModel.active defaults to True)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from models.base import AuditType, ContainerKind
from models.registry import SchemaRegistry
from models.table_metadata import Child, FieldMetadata, ForeignKey, TableMetadata


class ParentModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    other_info: Optional[str] = None
    children: Optional[List["ChildModel"]] = None
    tags: Optional[Dict[str, "TagModel"]] = None


class ChildModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    parent_id: Optional[str] = None
    parent: Optional[ParentModel] = None
    toys: Optional[List["ToyModel"]] = None


class ToyModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    child_id: Optional[str] = None
    child: Optional[ChildModel] = None


class TagModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    parent_id: Optional[str] = None
    parent_name: Optional[str] = None


class PetModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    owner_id: Optional[str] = None
    active: bool = True


class OwnerModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    pets: Optional[List[PetModel]] = None


class SecretModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    secret: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class AuditedModel(BaseModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def name_not_invalid(cls, v):
        if v == "invalid":
            raise ValueError("name must not be 'invalid'")
        return v


ChildModel.model_rebuild()
ParentModel.model_rebuild()
ToyModel.model_rebuild()


def _base_fields(lookup_name: bool = True) -> List[FieldMetadata]:
    return [
        FieldMetadata("id", "id", is_primary_key=True),
        FieldMetadata("organization_id", "organization_id", is_multitenancy_key=True),
        FieldMetadata("name", "name", is_lookup=lookup_name),
    ]


def build_registry() -> SchemaRegistry:
    registry = SchemaRegistry()

    parent = TableMetadata(
        "parentmodel",
        _base_fields() + [FieldMetadata("other_info", "other_info")],
        children=[
            Child("children", ChildModel, foreign_key="parent_id", delete_orphans=True),
            Child(
                "tags",
                TagModel,
                kind=ContainerKind.MAPPING,
                foreign_key="parent_id",
                key_mapping="name",
                value_mappings={"name": "parent_name"},
            ),
        ],
    )
    child = TableMetadata(
        "childmodel",
        _base_fields() + [FieldMetadata("parent_id", "parent_id")],
        foreign_keys=[
            ForeignKey("parent_id", "parent_id", "parent", parent, required=True, needs_lookup=True),
        ],
        children=[Child("toys", ToyModel, foreign_key="child_id")],
    )
    toy = TableMetadata(
        "toymodel",
        _base_fields() + [FieldMetadata("child_id", "child_id")],
        foreign_keys=[
            ForeignKey("child_id", "child_id", "child", child, needs_lookup=True),
        ],
    )
    tag = TableMetadata(
        "tagmodel",
        _base_fields() + [
            FieldMetadata("parent_id", "parent_id"),
            FieldMetadata("parent_name", "parent_name"),
        ],
    )
    pet = TableMetadata(
        "petmodel",
        _base_fields() + [
            FieldMetadata("owner_id", "owner_id"),
            FieldMetadata("active", "active"),
        ],
    )
    owner = TableMetadata(
        "ownermodel",
        _base_fields(),
        children=[Child("pets", PetModel, foreign_key="owner_id", delete_orphans=True)],
    )
    secret = TableMetadata(
        "secretmodel",
        _base_fields() + [
            FieldMetadata("secret", "secret", is_encrypted=True),
            FieldMetadata("config", "config", is_jsonb=True),
        ],
    )
    audited = TableMetadata(
        "auditedmodel",
        _base_fields() + [
            FieldMetadata("created_by", "created_by", audit=AuditType.CREATED_BY),
            FieldMetadata("created_at", "created_at", audit=AuditType.CREATED_AT),
            FieldMetadata("updated_by", "updated_by", audit=AuditType.UPDATED_BY),
            FieldMetadata("updated_at", "updated_at", audit=AuditType.UPDATED_AT),
        ],
    )

    registry.register(ParentModel, parent)
    registry.register(ChildModel, child)
    registry.register(ToyModel, toy)
    registry.register(TagModel, tag)
    registry.register(SecretModel, secret)
    registry.register(AuditedModel, audited)
    registry.register(PetModel, pet)
    registry.register(OwnerModel, owner)
    return registry
