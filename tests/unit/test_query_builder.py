"""
Unit tests for the query builder
"""

from dataclasses import replace

import pytest

from core.exceptions import (
    AssociationNotFoundError,
    EncryptedFilterError,
    InputError,
    InvalidFilterModelError,
    SchemaError,
)
from persistence.query.builder import build, build_child_query, build_multi, child_associations
from schemas.requests import Association, FieldFilter, OrderByRequest, OrFilterGroup
from fakes import TENANT, param_values, sql_of
from testdata import ChildModel, ParentModel, PetModel, SecretModel, ToyModel


class TestBuild:
    """Test SELECT generation for filter requests"""

    def test_simple_filter(self, registry):
        table = build(registry, TENANT, ParentModel(name="pops"))
        sql = sql_of(table.build_sql())

        assert "FROM parentmodel AS t0" in sql
        assert "WHERE t0.organization_id = " in sql
        assert "t0.name = " in sql
        assert "pops" in param_values(table.build_sql())
        assert TENANT in param_values(table.build_sql())

    def test_class_filter_has_no_predicates(self, registry):
        table = build(registry, TENANT, ParentModel)
        sql = sql_of(table.build_sql())

        assert "t0.name = " not in sql
        assert param_values(table.build_sql()) == [TENANT]

    def test_required_foreign_key_joined_with_tenant_in_on_clause(self, registry):
        table = build(registry, TENANT, ChildModel(name="a"))
        sql = sql_of(table.build_sql())

        assert (
            "FROM childmodel AS t0 LEFT OUTER JOIN parentmodel AS t1 "
            "ON t1.id = t0.parent_id AND t1.organization_id = "
        ) in sql
        assert "t1.organization_id" not in sql.split("WHERE", 1)[1]

    def test_optional_foreign_key_not_joined_without_association(self, registry):
        table = build(registry, TENANT, ToyModel(name="t"))

        assert [t.alias for t in table.tables()] == ["t0"]
        assert "t0.child_id" in table.field_aliases()

    def test_aliases_unique_depth_first(self, registry):
        table = build(registry, TENANT, ToyModel, [Association(name="child")])

        tables = list(table.tables())
        assert [t.alias for t in tables] == ["t0", "t1", "t2"]
        assert [t.ref_path for t in tables] == ["", "child", "child.parent"]
        assert [t.table_name for t in tables] == ["toymodel", "childmodel", "parentmodel"]

    def test_related_filter_value_joins_and_filters(self, registry):
        table = build(registry, TENANT, ChildModel(parent=ParentModel(name="pops")))
        sql = sql_of(table.build_sql())

        assert "t1.name = " in sql
        assert "pops" in param_values(table.build_sql())

    def test_foreign_key_value_is_predicate(self, registry):
        table = build(registry, TENANT, ChildModel(parent_id="p1"))

        assert "t0.parent_id = " in sql_of(table.build_sql())
        assert "p1" in param_values(table.build_sql())

    def test_encrypted_filter_rejected(self, registry):
        with pytest.raises(EncryptedFilterError):
            build(registry, TENANT, SecretModel(secret="shh"))

    def test_jsonb_filter_rejected(self, registry):
        with pytest.raises(InputError):
            build(registry, TENANT, SecretModel(config={"a": 1}))

    def test_unknown_association(self, registry):
        with pytest.raises(AssociationNotFoundError) as exc_info:
            build(registry, TENANT, ParentModel, [Association(name="nope")])

        assert exc_info.value.context["association"] == "nope"

    def test_invalid_filter_model(self, registry):
        with pytest.raises(InvalidFilterModelError):
            build(registry, TENANT, {"name": "pops"})

    def test_field_filters_or(self, registry):
        filters = OrFilterGroup(filters=[
            FieldFilter(field_name="name", filter_value="a"),
            FieldFilter(field_name="name", filter_value="b"),
        ])

        table = build(registry, TENANT, ParentModel, field_filters=filters)
        sql = sql_of(table.build_sql())

        assert "t0.name = " in sql
        assert " OR " in sql
        assert {"a", "b"} <= set(param_values(table.build_sql()))

    def test_field_filter_on_encrypted_field(self, registry):
        with pytest.raises(EncryptedFilterError):
            build(registry, TENANT, SecretModel, field_filters=FieldFilter(field_name="secret", filter_value="x"))

    def test_order_by(self, registry):
        table = build(registry, TENANT, ParentModel, order_by=[OrderByRequest(field="name", descending=True)])

        assert sql_of(table.build_sql()).endswith("ORDER BY t0.name DESC")

    def test_order_by_unknown_field(self, registry):
        with pytest.raises(InputError):
            build(registry, TENANT, ParentModel, order_by=[OrderByRequest(field="nope")])

    def test_select_fields_keep_primary_key(self, registry):
        table = build(registry, TENANT, ParentModel, select_fields=["name"])

        assert sorted(table.field_aliases()) == ["t0.id", "t0.name", "t0.organization_id"]

    def test_defaults_matched_unless_explicit_only(self, registry):
        """
        Test: explicit_only ignores fields a filter value only holds by default
        """
        filter_model = PetModel.model_construct(owner_id="o1")

        default_sql = sql_of(build_multi(registry, TENANT, [filter_model]).build_sql())
        explicit_sql = sql_of(build_multi(registry, TENANT, [filter_model], explicit_only=True).build_sql())

        assert "t0.active = " in default_sql
        assert "t0.owner_id = " in explicit_sql
        assert "t0.active = " not in explicit_sql

    def test_select_unknown_field(self, registry):
        with pytest.raises(InputError):
            build(registry, TENANT, ParentModel, select_fields=["nope"])

    def test_association_options_apply_at_joined_alias(self, registry):
        association = Association(
            name="parent",
            order_by=[OrderByRequest(field="name")],
            field_filters=FieldFilter(field_name="other_info", filter_value="x"),
        )

        table = build(registry, TENANT, ChildModel, [association])
        sql = sql_of(table.build_sql())

        assert "t1.other_info = " in sql
        assert sql.endswith("ORDER BY t1.name ASC")


class TestBuildMulti:
    """Test OR-ing several filter values"""

    def test_alternatives_or_ed(self, registry):
        table = build_multi(registry, TENANT, [ParentModel(name="a"), ParentModel(name="b", other_info="x")])
        sql = sql_of(table.build_sql())

        assert "WHERE t0.organization_id = " in sql
        assert " OR " in sql
        assert "JOIN" not in sql
        assert {"a", "b", "x"} <= set(param_values(table.build_sql()))

    def test_mixed_types_rejected(self, registry):
        with pytest.raises(InvalidFilterModelError):
            build_multi(registry, TENANT, [ParentModel(name="a"), ChildModel(name="b")])

    def test_empty_list_rejected(self, registry):
        with pytest.raises(InvalidFilterModelError):
            build_multi(registry, TENANT, [])

    def test_select_fields(self, registry):
        table = build_multi(registry, TENANT, [ParentModel(name="a")], select_fields=["name"])

        assert sorted(table.field_aliases()) == ["t0.id", "t0.name", "t0.organization_id"]


class TestChildQueries:
    """Test the second query that loads child collections"""

    def test_child_associations(self, registry):
        pairs = child_associations(
            registry.get(ChildModel), [Association(name="parent"), Association(name="toys")]
        )

        assert [(child.field_name, association.name) for child, association in pairs] == [("toys", "toys")]

    def test_foreign_key_in_parent_keys(self, registry):
        metadata = registry.get(ParentModel)
        parents = [ParentModel(id="p1"), ParentModel(id="p2"), ParentModel(id="p1")]

        table = build_child_query(
            registry, TENANT, metadata, parents, metadata.get_child("children"), Association(name="children")
        )

        assert "t0.parent_id IN" in sql_of(table.build_sql())
        assert ["p1", "p2"] in param_values(table.build_sql())

    def test_no_parent_keys(self, registry):
        metadata = registry.get(ParentModel)

        table = build_child_query(
            registry, TENANT, metadata, [ParentModel()], metadata.get_child("children"), Association(name="children")
        )

        assert table is None

    def test_grouping_criteria(self, registry):
        metadata = registry.get(ParentModel)
        child = replace(metadata.get_child("children"), grouping_criteria={"name": "name"})

        table = build_child_query(
            registry, TENANT, metadata, [ParentModel(name="a"), ParentModel(name="b")], child,
            Association(name="children"),
        )

        assert "t0.name IN" in sql_of(table.build_sql())
        assert ["a", "b"] in param_values(table.build_sql())

    def test_grouping_criteria_unknown_field(self, registry):
        """
        Test: grouping on a field the child type does not declare fails
        instead of loading every child row
        """
        metadata = registry.get(ParentModel)
        child = replace(metadata.get_child("children"), grouping_criteria={"nickname": "name"})

        with pytest.raises(SchemaError) as exc_info:
            build_child_query(
                registry, TENANT, metadata, [ParentModel(name="a")], child, Association(name="children")
            )

        assert exc_info.value.context["field_name"] == "nickname"
