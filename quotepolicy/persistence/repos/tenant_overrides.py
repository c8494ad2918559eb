from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Mapping

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotepolicy.core.config import Settings, get_settings
from quotepolicy.core.errors import ConfigValidationError, StoreWriteError
from quotepolicy.domain.models import TenantLlmOverride
from quotepolicy.domain.policy import TenantOverrides, alias_document, coerce_document, first_validation_message
from quotepolicy.persistence.guards import require_tenant_id, with_store_timeout
from quotepolicy.persistence.upsert import build_upsert


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TenantOverridesStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if session_factory is None:
            from quotepolicy.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._time_provider = time_provider or _utc_now

    async def load(self, tenant_id: str | None) -> TenantOverrides | None:
        # An all-empty row reads exactly like a missing row.
        cleaned = str(tenant_id or "").strip()
        if not cleaned:
            return None
        try:
            row = await with_store_timeout(self._read(cleaned), self._settings.config_store_timeout_ms)
        except Exception as exc:  # noqa: BLE001 - tenant layer degrades to industry/platform
            logger.warning("tenant_overrides_read_failed tenant_id=%s", cleaned, exc_info=exc)
            return None
        if row is None:
            return None
        overrides = coerce_document(TenantOverrides, row.overrides)
        if overrides is None or overrides.is_empty():
            return None
        if overrides.updated_at is None:
            overrides = overrides.model_copy(update={"updated_at": row.updated_at})
        return overrides

    async def save(self, tenant_id: str | None, overrides: TenantOverrides | Mapping[str, Any]) -> TenantOverrides:
        cleaned = require_tenant_id(tenant_id)
        if isinstance(overrides, TenantOverrides):
            document = overrides.to_document()
        elif isinstance(overrides, Mapping):
            document = dict(overrides)
        else:
            raise ConfigValidationError("tenant overrides must be an object")
        document.pop("updatedAt", None)
        document.pop("updated_at", None)
        try:
            # Older clients still send the free-text choice; the model splits it on validation.
            document = alias_document(TenantOverrides, document, passthrough=("aiMode", "ai_mode"))
        except ValueError as exc:
            raise ConfigValidationError(str(exc)) from exc
        try:
            parsed = TenantOverrides.model_validate(document)
        except ValidationError as exc:
            raise ConfigValidationError(first_validation_message(exc)) from exc

        now = self._time_provider()
        parsed = parsed.model_copy(update={"updated_at": now})
        try:
            await with_store_timeout(self._write(cleaned, parsed, now), self._settings.config_store_timeout_ms)
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise StoreWriteError(f"tenant overrides write failed for {cleaned}: {exc}") from exc
        logger.info("tenant_overrides_saved tenant_id=%s empty=%s", cleaned, parsed.is_empty())
        return parsed

    async def reset(self, tenant_id: str | None) -> None:
        cleaned = require_tenant_id(tenant_id)
        try:
            await with_store_timeout(self._delete(cleaned), self._settings.config_store_timeout_ms)
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise StoreWriteError(f"tenant overrides reset failed for {cleaned}: {exc}") from exc
        logger.info("tenant_overrides_reset tenant_id=%s", cleaned)

    async def _read(self, tenant_id: str) -> TenantLlmOverride | None:
        async with self._session_factory() as session:
            result = await session.execute(select(TenantLlmOverride).where(TenantLlmOverride.tenant_id == tenant_id))
            return result.scalar_one_or_none()

    async def _write(self, tenant_id: str, overrides: TenantOverrides, now: datetime) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantLlmOverride.version).where(TenantLlmOverride.tenant_id == tenant_id)
            )
            previous_version = result.scalar_one_or_none()
            stmt = build_upsert(
                session,
                TenantLlmOverride.__table__,
                {
                    "tenant_id": tenant_id,
                    "overrides": overrides.to_document(),
                    "version": (previous_version or 0) + 1,
                    "updated_at": now,
                },
                index_elements=["tenant_id"],
            )
            await session.execute(stmt)
            await session.commit()

    async def _delete(self, tenant_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(TenantLlmOverride).where(TenantLlmOverride.tenant_id == tenant_id))
            await session.commit()
