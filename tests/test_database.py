"""
Tests for patient persistence.

These tests verify that:
1. The upsert targets phone_number and refreshes created_at on conflict
2. Only table columns are written (age/gender are dropped), absent fields are NULL
3. save_patient reports any database or connect error as a failed PersistResult instead of raising
4. An unconfigured repository never touches a database
"""

import asyncio
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from app.database import PatientRepository, build_upsert, database_url_from_env

PHONE = "+919876543210"

COLLECTED = {
    "full_name": "Ravi Kumar",
    "age": 42,
    "gender": "male",
    "address": "12 Temple Street, Nashik",
    "health_condition": "high blood pressure",
}


class FakeConnection:
    def __init__(self, error=None):
        self.error = error
        self.executed = []

    async def execute(self, stmt):
        if self.error is not None:
            raise self.error
        self.executed.append(stmt)


class FakeEngine:
    def __init__(self, error=None):
        self.connection = FakeConnection(error)
        self.disposed = False

    @asynccontextmanager
    async def begin(self):
        yield self.connection

    async def dispose(self):
        self.disposed = True


class FailingEngine(FakeEngine):
    """Engine whose connect step raises something other than a DBAPI error."""

    def __init__(self, error):
        super().__init__()
        self.begin_error = error

    @asynccontextmanager
    async def begin(self):
        raise self.begin_error
        yield self.connection


def compile_pg(stmt):
    return stmt.compile(dialect=postgresql.dialect())


class TestBuildUpsert:

    def test_on_conflict_updates_all_fields(self):
        sql = str(compile_pg(build_upsert(PHONE, COLLECTED)))

        assert "INSERT INTO patients" in sql
        assert "ON CONFLICT (phone_number) DO UPDATE SET" in sql
        assert "full_name = excluded.full_name" in sql
        assert "address = excluded.address" in sql
        assert "health_condition = excluded.health_condition" in sql
        assert "created_at = now()" in sql

    def test_only_table_columns_written(self):
        params = compile_pg(build_upsert(PHONE, COLLECTED)).params

        assert params["phone_number"] == PHONE
        assert params["full_name"] == "Ravi Kumar"
        assert params["address"] == "12 Temple Street, Nashik"
        assert params["health_condition"] == "high blood pressure"
        assert "age" not in params
        assert "gender" not in params

    def test_absent_fields_are_null(self):
        params = compile_pg(build_upsert(PHONE, {"full_name": "Sunita"})).params

        assert params["full_name"] == "Sunita"
        assert params["address"] is None
        assert params["health_condition"] is None

    def test_non_string_values_stored_as_text(self):
        params = compile_pg(build_upsert(PHONE, {"address": 42})).params
        assert params["address"] == "42"


class TestPatientRepository:

    @pytest.mark.asyncio
    async def test_save_success(self):
        engine = FakeEngine()
        repository = PatientRepository(engine=engine)

        result = await repository.save_patient(PHONE, COLLECTED)

        assert result.ok
        assert result.phone_number == PHONE
        assert result.error is None
        assert len(engine.connection.executed) == 1

    @pytest.mark.asyncio
    async def test_database_error_is_reported_not_raised(self):
        error = OperationalError("INSERT INTO patients", {}, Exception("connection refused"))
        repository = PatientRepository(engine=FakeEngine(error=error))

        result = await repository.save_patient(PHONE, COLLECTED)

        assert not result.ok
        assert "OperationalError" in result.error

    @pytest.mark.asyncio
    async def test_connection_os_error_is_reported(self):
        repository = PatientRepository(engine=FakeEngine(error=ConnectionRefusedError("refused")))

        result = await repository.save_patient(PHONE, COLLECTED)

        assert not result.ok

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [RuntimeError("asyncpg connect failed"), asyncio.TimeoutError()]
    )
    async def test_any_connect_error_is_reported(self, error):
        repository = PatientRepository(engine=FailingEngine(error))

        result = await repository.save_patient(PHONE, COLLECTED)

        assert not result.ok
        assert result.phone_number == PHONE
        assert type(error).__name__ in result.error

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.delenv("DB_HOST", raising=False)
        repository = PatientRepository()

        assert repository.is_configured is False
        result = await repository.save_patient(PHONE, COLLECTED)
        assert not result.ok
        assert result.error == "database_not_configured"

    @pytest.mark.asyncio
    async def test_close_disposes_engine(self):
        engine = FakeEngine()
        await PatientRepository(engine=engine).close()
        assert engine.disposed


class TestDatabaseUrl:

    def test_none_without_host(self, monkeypatch):
        monkeypatch.delenv("DB_HOST", raising=False)
        assert database_url_from_env() is None

    def test_built_from_env(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("DB_PORT", "6543")
        monkeypatch.setenv("DB_USER", "asha")
        monkeypatch.setenv("DB_PASSWORD", "secret")
        monkeypatch.setenv("DB_DATABASE", "intake")

        url = database_url_from_env()

        assert url.drivername == "postgresql+asyncpg"
        assert url.host == "db.internal"
        assert url.port == 6543
        assert url.username == "asha"
        assert url.database == "intake"
