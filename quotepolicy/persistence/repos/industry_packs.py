from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotepolicy.core.config import Settings, get_settings
from quotepolicy.core.errors import ConfigValidationError, IndustryPackEmptyError, StoreWriteError
from quotepolicy.domain.models import Industry, IndustryLlmPack, TenantSettings, legacy_industry_llm_packs
from quotepolicy.domain.policy import (
    IndustryPack,
    IndustryPackMeta,
    SchemaGeneration,
    clamp_int,
    coerce_document,
    first_validation_message,
)
from quotepolicy.persistence.guards import normalize_industry_key, require_industry_key, with_store_timeout
from quotepolicy.persistence.upsert import build_upsert


logger = logging.getLogger(__name__)

T = TypeVar("T")

UNDEFINED_COLUMN_SQLSTATE = "42703"
PACK_SECTIONS = ("models", "prompts")
DEFAULT_MISSING_PACK_LIMIT = 500
MAX_MISSING_PACK_LIMIT = 2000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_undefined_column_error(exc: BaseException) -> bool:
    # Prefer the driver's SQLSTATE; only drivers without codes fall back to message matching.
    orig = getattr(exc, "orig", None)
    candidates = [exc, orig, getattr(orig, "__cause__", None)]
    for candidate in candidates:
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code) == UNDEFINED_COLUMN_SQLSTATE
        if type(candidate).__name__ == "UndefinedColumnError":
            return True
    message = str(orig if orig is not None else exc).lower()
    if "no such column" in message or "has no column named" in message:
        return True
    return "column" in message and "does not exist" in message


def sanitize_pack(industry_key: str, pack: IndustryPack | Mapping[str, Any]) -> dict[str, Any]:
    # Industry packs only ever carry models and prompts; guardrails stay platform-owned.
    if isinstance(pack, IndustryPack):
        return pack.to_document()
    if not isinstance(pack, Mapping):
        raise ConfigValidationError("industry pack must be an object")
    dropped = sorted(str(name) for name in pack if name not in PACK_SECTIONS)
    if dropped:
        logger.info("industry_pack_keys_stripped key=%s dropped=%s", industry_key, ",".join(dropped))
    try:
        parsed = IndustryPack.model_validate({name: pack[name] for name in PACK_SECTIONS if name in pack})
    except ValidationError as exc:
        raise ConfigValidationError(first_validation_message(exc)) from exc
    return parsed.to_document()


def _logical_pack(document: Any) -> IndustryPack | None:
    if not isinstance(document, dict):
        return None
    pack = coerce_document(IndustryPack, {name: document[name] for name in PACK_SECTIONS if name in document})
    if pack is None or pack.is_empty():
        return None
    return pack


def _legacy_document(row: Mapping[str, Any]) -> dict[str, Any]:
    # Legacy rows may hold sections in dedicated columns, the pack column, or both.
    document = dict(row["pack"]) if isinstance(row["pack"], dict) else {}
    for name in PACK_SECTIONS:
        value = row[name]
        if isinstance(value, dict) and value:
            document[name] = value
    return document


class IndustryPackStore:
    """Per-industry model and prompt overrides.

    Two physical shapes of ``industry_llm_packs`` exist in the field. The
    schema generation is probed once; an undefined-column error on the
    canonical path flips the store to the legacy shape and retries. Callers
    always see the same logical ``IndustryPack``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
        schema_generation: SchemaGeneration | None = None,
    ) -> None:
        if session_factory is None:
            from quotepolicy.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._time_provider = time_provider or _utc_now
        self._generation: SchemaGeneration | None = schema_generation
        self._probe_lock = asyncio.Lock()

    async def schema_generation(self) -> SchemaGeneration:
        if self._generation is not None:
            return self._generation
        async with self._probe_lock:
            if self._generation is None:
                probed = await self._probe()
                if probed is None:
                    # Undetermined; try canonical and let per-call fallback decide.
                    return "canonical"
                self._generation = probed
                logger.info("industry_pack_schema_detected generation=%s", probed)
        return self._generation

    async def get(self, industry_key: str | None) -> IndustryPack | None:
        pack, _meta = await self.get_with_meta(industry_key)
        return pack

    async def get_with_meta(
        self, industry_key: str | None
    ) -> tuple[IndustryPack | None, IndustryPackMeta | None]:
        key = normalize_industry_key(industry_key)
        if not key:
            return None, None
        try:
            return await with_store_timeout(
                self._dispatch(lambda: self._read_canonical(key), lambda: self._read_legacy(key)),
                self._settings.config_store_timeout_ms,
            )
        except Exception as exc:  # noqa: BLE001 - industry layer degrades to platform
            logger.warning("industry_pack_read_failed key=%s", key, exc_info=exc)
            return None, None

    async def upsert(
        self,
        industry_key: str | None,
        pack: IndustryPack | Mapping[str, Any],
        *,
        version: int | None = None,
        updated_by: str | None = None,
        source: Any = None,
    ) -> IndustryPackMeta:
        key = require_industry_key(industry_key)
        document = sanitize_pack(key, pack)
        if _logical_pack(document) is None:
            raise IndustryPackEmptyError(f"industry pack for {key} has no models or prompts")
        explicit_version = max(1, int(version)) if version is not None else None
        try:
            meta = await with_store_timeout(
                self._dispatch(
                    lambda: self._upsert_canonical(key, document, explicit_version, updated_by, source),
                    lambda: self._upsert_legacy(key, document, explicit_version),
                ),
                self._settings.config_store_timeout_ms,
            )
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise StoreWriteError(f"industry pack write failed for {key}: {exc}") from exc
        logger.info(
            "industry_pack_upserted key=%s version=%s generation=%s",
            key,
            meta.version,
            meta.schema_generation,
        )
        return meta

    async def list_keys_missing_pack(self, limit: int | None = DEFAULT_MISSING_PACK_LIMIT) -> list[str]:
        # Backfill discovery: catalog keys plus keys observed on tenants, minus keys with a pack row.
        bounded = clamp_int(limit or DEFAULT_MISSING_PACK_LIMIT, 1, MAX_MISSING_PACK_LIMIT)
        try:
            return await with_store_timeout(self._missing_keys(bounded), self._settings.config_store_timeout_ms)
        except Exception as exc:  # noqa: BLE001 - discovery is tooling, never fatal
            logger.warning("industry_pack_missing_scan_failed", exc_info=exc)
            return []

    async def _dispatch(
        self,
        canonical: Callable[[], Awaitable[T]],
        legacy: Callable[[], Awaitable[T]],
    ) -> T:
        if await self.schema_generation() == "legacy":
            return await legacy()
        try:
            return await canonical()
        except SQLAlchemyError as exc:
            if not is_undefined_column_error(exc):
                raise
            logger.info("industry_pack_schema_fallback generation=legacy reason=undefined_column")
            self._generation = "legacy"
        # Retry in a fresh session; the failed statement poisoned the previous transaction.
        return await legacy()

    async def _probe(self) -> SchemaGeneration | None:
        try:
            async with self._session_factory() as session:
                await session.execute(select(IndustryLlmPack.updated_by).limit(0))
        except SQLAlchemyError as exc:
            if is_undefined_column_error(exc):
                return "legacy"
            logger.warning("industry_pack_schema_probe_failed", exc_info=exc)
            return None
        return "canonical"

    async def _read_canonical(self, key: str) -> tuple[IndustryPack | None, IndustryPackMeta | None]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndustryLlmPack)
                .where(IndustryLlmPack.industry_key == key)
                .order_by(IndustryLlmPack.version.desc(), IndustryLlmPack.updated_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None, None
        meta = IndustryPackMeta(
            industry_key=row.industry_key,
            version=row.version,
            updated_at=row.updated_at,
            schema_generation="canonical",
            created_at=row.created_at,
            updated_by=row.updated_by,
            source=row.source,
        )
        return _logical_pack(row.pack), meta

    async def _read_legacy(self, key: str) -> tuple[IndustryPack | None, IndustryPackMeta | None]:
        table = legacy_industry_llm_packs
        async with self._session_factory() as session:
            result = await session.execute(
                select(table)
                .where(table.c.industry_key == key, table.c.enabled.is_(True))
                .order_by(table.c.version.desc(), table.c.updated_at.desc())
                .limit(1)
            )
            row = result.mappings().first()
        if row is None:
            return None, None
        meta = IndustryPackMeta(
            industry_key=row["industry_key"],
            version=row["version"],
            updated_at=row["updated_at"],
            schema_generation="legacy",
        )
        return _logical_pack(_legacy_document(row)), meta

    def _next_version(
        self,
        existing: tuple[int, dict[str, Any] | None] | None,
        document: dict[str, Any],
        explicit_version: int | None,
    ) -> int:
        # Explicit wins; otherwise bump on change and keep the version for identical retries.
        if explicit_version is not None:
            return explicit_version
        if existing is None:
            return 1
        previous_version, previous_document = existing
        previous_pack = _logical_pack(previous_document)
        if previous_pack is not None and previous_pack.to_document() == document:
            return previous_version
        return previous_version + 1

    async def _upsert_canonical(
        self,
        key: str,
        document: dict[str, Any],
        explicit_version: int | None,
        updated_by: str | None,
        source: Any,
    ) -> IndustryPackMeta:
        now = self._time_provider()
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndustryLlmPack.version, IndustryLlmPack.pack).where(IndustryLlmPack.industry_key == key)
            )
            existing = result.first()
            version = self._next_version(
                (existing.version, existing.pack) if existing is not None else None,
                document,
                explicit_version,
            )
            stmt = build_upsert(
                session,
                IndustryLlmPack.__table__,
                {
                    "industry_key": key,
                    "pack": document,
                    "version": version,
                    "updated_by": updated_by,
                    "source": source,
                    "updated_at": now,
                },
                index_elements=["industry_key"],
            )
            await session.execute(stmt)
            await session.commit()
        return IndustryPackMeta(
            industry_key=key,
            version=version,
            updated_at=now,
            schema_generation="canonical",
            updated_by=updated_by,
            source=source,
        )

    async def _upsert_legacy(
        self,
        key: str,
        document: dict[str, Any],
        explicit_version: int | None,
    ) -> IndustryPackMeta:
        table = legacy_industry_llm_packs
        now = self._time_provider()
        async with self._session_factory() as session:
            result = await session.execute(select(table).where(table.c.industry_key == key))
            existing = result.mappings().first()
            version = self._next_version(
                (existing["version"], _legacy_document(existing)) if existing is not None else None,
                document,
                explicit_version,
            )
            stmt = build_upsert(
                session,
                table,
                {
                    "industry_key": key,
                    "enabled": True,
                    "version": version,
                    "pack": document,
                    "models": document.get("models", {}),
                    "prompts": document.get("prompts", {}),
                    "updated_at": now,
                },
                index_elements=["industry_key"],
            )
            await session.execute(stmt)
            await session.commit()
        return IndustryPackMeta(industry_key=key, version=version, updated_at=now, schema_generation="legacy")

    async def _missing_keys(self, limit: int) -> list[str]:
        async with self._session_factory() as session:
            catalog = (await session.execute(select(Industry.key))).scalars().all()
            observed = (
                await session.execute(
                    select(TenantSettings.industry_key).where(TenantSettings.industry_key.is_not(None)).distinct()
                )
            ).scalars().all()
            packed = (
                await session.execute(select(legacy_industry_llm_packs.c.industry_key))
            ).scalars().all()
        known = {normalize_industry_key(key) for key in [*catalog, *observed]}
        known.discard("")
        have_pack = {normalize_industry_key(key) for key in packed}
        return sorted(known - have_pack)[:limit]
