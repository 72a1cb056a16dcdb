"""
Tests for single-model writes through PersistenceORM
"""

import pytest

from core.exceptions import EncryptedFilterError, ModelNotFoundError
from persistence.orm import PersistenceORM
from fakes import PERFORMER, TENANT, FakeResult, executed, param_values, returning, sql_of
from testdata import AuditedModel, ParentModel, SecretModel


@pytest.fixture
def orm(mock_session, registry):
    return PersistenceORM(mock_session, registry, TENANT, PERFORMER)


@pytest.mark.asyncio
async def test_create_model_returns_copy_with_key(orm, mock_session):
    """
    Test: create_model inserts without a lookup and returns the new key
    """
    mock_session.execute.return_value = returning("p1")
    entity = ParentModel(name="pops")

    created = await orm.create_model(entity)

    assert created.id == "p1"
    assert entity.id is None
    statements = executed(mock_session)
    assert len(statements) == 1
    assert sql_of(statements[0]).startswith("INSERT INTO parentmodel")
    mock_session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_model_stamps_audit_fields(orm, mock_session):
    mock_session.execute.return_value = returning("a1")

    await orm.create_model(AuditedModel(name="a"))

    assert param_values(executed(mock_session)[0]).count(PERFORMER) == 2


@pytest.mark.asyncio
async def test_save_model_without_key_creates(orm, mock_session):
    mock_session.execute.return_value = returning("p1")

    saved = await orm.save_model(ParentModel(name="pops"))

    assert saved.id == "p1"


@pytest.mark.asyncio
async def test_save_model_updates_existing(orm, mock_session):
    """
    Test: save_model updates the stored row found by primary key
    """
    mock_session.execute.side_effect = [FakeResult([{"t0.id": "p1"}]), FakeResult()]

    await orm.save_model(ParentModel(id="p1", name="renamed"))

    lookup, update = executed(mock_session)
    assert "t0.id" in sql_of(lookup)
    assert ["p1"] in param_values(lookup)
    assert sql_of(update).startswith("UPDATE parentmodel SET name=")
    assert "renamed" in param_values(update)
    mock_session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_save_model_missing_row(orm, mock_session):
    """
    Test: saving a primary key that does not exist for the tenant fails
    """
    with pytest.raises(ModelNotFoundError) as exc_info:
        await orm.save_model(ParentModel(id="p404", name="ghost"))

    assert exc_info.value.context["primary_key"] == "p404"
    mock_session.rollback.assert_awaited_once()
    mock_session.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_delete_model_returns_rowcount(orm, mock_session):
    """
    Test: delete_model deletes by the filter's non-zero fields within the tenant
    """
    mock_session.execute.return_value = FakeResult(rowcount=2)

    count = await orm.delete_model(ParentModel(name="pops"))

    assert count == 2
    statement = executed(mock_session)[0]
    sql = sql_of(statement)
    assert sql.startswith("DELETE FROM parentmodel WHERE")
    assert "parentmodel.organization_id = " in sql
    assert "parentmodel.name = " in sql
    assert set(param_values(statement)) == {TENANT, "pops"}


@pytest.mark.asyncio
async def test_delete_model_by_type_deletes_tenant_rows(orm, mock_session):
    mock_session.execute.return_value = FakeResult(rowcount=5)

    assert await orm.delete_model(ParentModel) == 5
    assert param_values(executed(mock_session)[0]) == [TENANT]


@pytest.mark.asyncio
async def test_delete_model_encrypted_filter(orm, mock_session):
    with pytest.raises(EncryptedFilterError):
        await orm.delete_model(SecretModel(secret="shh"))

    mock_session.execute.assert_not_called()
