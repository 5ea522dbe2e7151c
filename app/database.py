"""
Patient persistence - one upsert into the PostgreSQL patients table.

save_patient() NEVER raises. Failures (including a missing database
configuration) are logged as a METRIC line and returned as a
PersistResult so the caller can observe them without the call failing.

Python 3.9 compatible - uses typing.Dict, typing.Optional
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

metadata = MetaData()

patients = Table(
    "patients",
    metadata,
    Column("full_name", Text),
    Column("phone_number", String(32), primary_key=True),
    Column("address", Text),
    Column("health_condition", Text),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


@dataclass
class PersistResult:
    """Outcome of one save_patient call."""
    ok: bool
    phone_number: str
    error: Optional[str] = None


def build_upsert(phone_number: str, data: Dict[str, Any]):
    """
    Build the upsert statement for one patient.

    Fields absent from data are written as NULL. On a phone_number
    conflict every field is overwritten and created_at is refreshed.
    """
    stmt = insert(patients).values(
        full_name=_as_text(data.get("full_name")),
        phone_number=phone_number,
        address=_as_text(data.get("address")),
        health_condition=_as_text(data.get("health_condition")),
    )
    return stmt.on_conflict_do_update(
        index_elements=[patients.c.phone_number],
        set_={
            "full_name": stmt.excluded.full_name,
            "address": stmt.excluded.address,
            "health_condition": stmt.excluded.health_condition,
            "created_at": func.now(),
        },
    )


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def database_url_from_env() -> Optional[URL]:
    """Build the asyncpg URL from DB_* variables, or None if DB_HOST is unset."""
    host = os.getenv("DB_HOST")
    if not host:
        return None
    return URL.create(
        "postgresql+asyncpg",
        username=os.getenv("DB_USER"),
        password=os.getenv("DB_PASSWORD"),
        host=host,
        port=int(os.getenv("DB_PORT", "5432")),
        database=os.getenv("DB_DATABASE"),
    )


class PatientRepository:
    """Writes collected intake fields to the patients table."""

    def __init__(self, engine: Optional[AsyncEngine] = None):
        """Use the given engine, or build one from DB_* env vars.

        Does NOT crash if the database is not configured - saves are then
        reported as failed PersistResults.
        """
        if engine is None:
            url = database_url_from_env()
            if url is not None:
                engine = create_async_engine(url, pool_pre_ping=True)
                logger.info(f"PatientRepository configured for {url.host}:{url.port}/{url.database}")
            else:
                logger.warning("PatientRepository: DB_HOST not configured - patient data will not be saved")
        self.engine = engine

    @property
    def is_configured(self) -> bool:
        return self.engine is not None

    async def save_patient(self, phone_number: str, data: Dict[str, Any]) -> PersistResult:
        """Upsert one patient keyed by phone_number."""
        if not self.is_configured:
            return self._failed(phone_number, "database_not_configured")

        stmt = build_upsert(phone_number, data)
        try:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
        except Exception as e:
            logger.error(f"Error saving patient data: {e}", exc_info=True)
            return self._failed(phone_number, f"{type(e).__name__}: {e}")

        logger.info(f"Successfully saved/updated data for {phone_number}")
        return PersistResult(ok=True, phone_number=phone_number)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    def _failed(self, phone_number: str, error: str) -> PersistResult:
        logger.error(f"METRIC patient_persist_failed phone={phone_number} error={error}")
        return PersistResult(ok=False, phone_number=phone_number, error=error)
