"""
Unit tests for rebuilding entities from aliased rows
"""

import base64

import pytest

from core.exceptions import DecryptionError
from persistence.query.builder import build
from persistence.query.hydrate import hydrate, map_rows_to_aliases
from schemas.requests import Association
from fakes import TENANT
from testdata import ChildModel, ParentModel, SecretModel, ToyModel


class TestMapRowsToAliases:
    def test_groups_by_alias(self, registry):
        table = build(registry, TENANT, ChildModel)
        row = {"t0.id": "c1", "t0.name": "a", "t1.id": "p1", "unknown": 1}

        grouped = map_rows_to_aliases([row], table.field_aliases())

        assert grouped == [{"t0": {"id": "c1", "name": "a"}, "t1": {"id": "p1"}}]


class TestHydrate:
    """Test entity construction from joined rows"""

    def test_nested_relations(self, registry):
        table = build(registry, TENANT, ToyModel, [Association(name="child")])
        row = {
            "t0.id": "y1", "t0.organization_id": TENANT, "t0.name": "ball", "t0.child_id": "c1",
            "t1.id": "c1", "t1.organization_id": TENANT, "t1.name": "kid", "t1.parent_id": "p1",
            "t2.id": "p1", "t2.organization_id": TENANT, "t2.name": "pops", "t2.other_info": None,
        }

        toys = hydrate([row], registry.get(ToyModel), table.field_aliases())

        assert len(toys) == 1
        toy = toys[0]
        assert isinstance(toy, ToyModel)
        assert toy.name == "ball"
        assert toy.child.name == "kid"
        assert toy.child.parent.id == "p1"
        assert toy.child.parent.name == "pops"

    def test_missing_relation_is_none(self, registry):
        table = build(registry, TENANT, ChildModel)
        row = {
            "t0.id": "c1", "t0.organization_id": TENANT, "t0.name": "kid", "t0.parent_id": None,
            "t1.id": None, "t1.organization_id": None, "t1.name": None, "t1.other_info": None,
        }

        child = hydrate([row], registry.get(ChildModel), table.field_aliases())[0]

        assert child.parent is None

    def test_unjoined_relation_left_unset(self, registry):
        table = build(registry, TENANT, ToyModel)
        row = {"t0.id": "y1", "t0.organization_id": TENANT, "t0.name": "ball", "t0.child_id": "c1"}

        toy = hydrate([row], registry.get(ToyModel), table.field_aliases())[0]

        assert toy.child is None
        assert "child" not in toy.model_fields_set
        assert toy.child_id == "c1"

    def test_selected_fields_only(self, registry):
        table = build(registry, TENANT, ParentModel, select_fields=["name"])
        row = {"t0.id": "p1", "t0.organization_id": TENANT, "t0.name": "pops"}

        parent = hydrate([row], registry.get(ParentModel), table.field_aliases())[0]

        assert parent.name == "pops"
        assert parent.other_info is None
        assert "other_info" not in parent.model_fields_set

    def test_uuid_bytes_rendered_as_string(self, registry):
        table = build(registry, TENANT, ParentModel)
        raw = bytes(range(16))
        row = {"t0.id": raw, "t0.organization_id": TENANT, "t0.name": "pops", "t0.other_info": None}

        parent = hydrate([row], registry.get(ParentModel), table.field_aliases())[0]

        assert parent.id == "00010203-0405-0607-0809-0a0b0c0d0e0f"

    def test_encrypted_and_jsonb_columns(self, registry, cipher):
        table = build(registry, TENANT, SecretModel)
        sealed = base64.b64encode(cipher.encrypt(b"hunter2")).decode("ascii")
        row = {
            "t0.id": "s1", "t0.organization_id": TENANT, "t0.name": "db",
            "t0.secret": sealed, "t0.config": '{"retries": 3}',
        }

        secret = hydrate([row], registry.get(SecretModel), table.field_aliases(), cipher)[0]

        assert secret.secret == "hunter2"
        assert secret.config == {"retries": 3}

    def test_empty_encrypted_value(self, registry, cipher):
        table = build(registry, TENANT, SecretModel)
        row = {"t0.id": "s1", "t0.organization_id": TENANT, "t0.name": "db", "t0.secret": "", "t0.config": None}

        secret = hydrate([row], registry.get(SecretModel), table.field_aliases(), cipher)[0]

        assert secret.secret is None
        assert secret.config is None

    def test_encrypted_value_without_cipher(self, registry, cipher):
        table = build(registry, TENANT, SecretModel)
        sealed = base64.b64encode(cipher.encrypt(b"hunter2")).decode("ascii")
        row = {"t0.id": "s1", "t0.organization_id": TENANT, "t0.name": "db", "t0.secret": sealed, "t0.config": None}

        with pytest.raises(DecryptionError):
            hydrate([row], registry.get(SecretModel), table.field_aliases())

    def test_no_rows(self, registry):
        table = build(registry, TENANT, ParentModel)

        assert hydrate([], registry.get(ParentModel), table.field_aliases()) == []
