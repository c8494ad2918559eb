from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable, Mapping

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotepolicy.core.config import Settings, get_settings
from quotepolicy.core.errors import ConfigValidationError, StoreWriteError
from quotepolicy.domain.defaults import default_platform_document
from quotepolicy.domain.models import PlatformConfigBlob
from quotepolicy.domain.policy import (
    PlatformConfig,
    alias_document,
    coerce_document,
    first_validation_message,
    merge_documents,
)
from quotepolicy.persistence.cache import TTLCache
from quotepolicy.persistence.guards import with_store_timeout
from quotepolicy.persistence.upsert import build_upsert


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_env_seed(raw: str | None) -> dict[str, Any] | None:
    # A malformed seed is ignored so a bad deploy variable never blocks resolution.
    if not raw or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        logger.warning("platform_config_env_seed_invalid error=%s", exc)
        return None
    if not isinstance(parsed, dict):
        logger.warning("platform_config_env_seed_invalid error=not_an_object")
        return None
    return parsed


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value >= 1 else None


def _project(raw: dict[str, Any], normalized: dict[str, Any]) -> dict[str, Any]:
    # Keep the stored document sparse: only keys the operator wrote, carrying normalized values.
    projected: dict[str, Any] = {}
    for key, value in raw.items():
        normalized_value = normalized.get(key)
        if isinstance(value, dict) and isinstance(normalized_value, dict):
            projected[key] = _project(value, normalized_value)
        elif normalized_value is not None:
            projected[key] = normalized_value
        else:
            projected[key] = value
    return projected


class PlatformConfigStore:
    """Platform-wide AI policy baseline.

    The effective document is layered as built-in defaults, then the
    deploy-time env seed, then the persisted blob; later layers win per leaf.
    Reads never raise. Writes raise ``ConfigValidationError`` or
    ``StoreWriteError``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        settings: Settings | None = None,
        cache: TTLCache | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if session_factory is None:
            from quotepolicy.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._cache = cache
        self._time_provider = time_provider or _utc_now

    @property
    def blob_key(self) -> str:
        return self._settings.platform_config_blob_key

    async def load(self) -> PlatformConfig:
        if self._cache is not None:
            cached = await self._cache.get(self.blob_key)
            if cached is not None:
                # Callers may mutate what they get; the cached instance stays private.
                return cached.model_copy(deep=True)
        persisted = await self._read_persisted_safely()
        config = self._layer(persisted)
        if self._cache is not None:
            await self._cache.set(self.blob_key, config.model_copy(deep=True))
        return config

    async def save(self, patch: PlatformConfig | Mapping[str, Any]) -> PlatformConfig:
        if isinstance(patch, PlatformConfig):
            patch_document = patch.to_document()
        elif isinstance(patch, Mapping):
            patch_document = dict(patch)
        else:
            raise ConfigValidationError("platform config must be an object")
        # The store owns the timestamp.
        patch_document.pop("updatedAt", None)
        patch_document.pop("updated_at", None)
        try:
            patch_document = alias_document(PlatformConfig, patch_document)
        except ValueError as exc:
            raise ConfigValidationError(str(exc)) from exc

        try:
            persisted = await with_store_timeout(self._read_persisted(), self._settings.config_store_timeout_ms)
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise StoreWriteError(f"platform config read before write failed: {exc}") from exc

        previous = merge_documents(self._env_seed() or {}, persisted or {})
        next_persisted = merge_documents(persisted or {}, patch_document)
        version = _positive_int(patch_document.get("version"))
        if version is None:
            version = _positive_int(previous.get("version")) or 1
        next_persisted["version"] = version

        layered = merge_documents(self._base_document(), next_persisted)
        try:
            config = PlatformConfig.model_validate(layered)
        except ValidationError as exc:
            raise ConfigValidationError(first_validation_message(exc)) from exc
        config = config.model_copy(update={"updated_at": self._time_provider(), "version": version})

        normalized = config.model_dump(mode="json", by_alias=True)
        stored = _project(next_persisted, normalized)
        stored["updatedAt"] = normalized["updatedAt"]

        try:
            await with_store_timeout(self._write(stored), self._settings.config_store_timeout_ms)
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise StoreWriteError(f"platform config write failed: {exc}") from exc
        finally:
            if self._cache is not None:
                self._cache.invalidate(self.blob_key)
        logger.info("platform_config_saved key=%s version=%s", self.blob_key, version)
        return config

    async def reset(self) -> PlatformConfig:
        # Drop persisted edits; the env seed and built-in defaults still apply.
        try:
            await with_store_timeout(self._delete(), self._settings.config_store_timeout_ms)
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise StoreWriteError(f"platform config reset failed: {exc}") from exc
        finally:
            if self._cache is not None:
                self._cache.invalidate(self.blob_key)
        logger.info("platform_config_reset key=%s", self.blob_key)
        return self._layer(None)

    def _env_seed(self) -> dict[str, Any] | None:
        seed = _parse_env_seed(self._settings.pcc_llm_config)
        return alias_document(PlatformConfig, seed, strict=False) if seed else None

    def _base_document(self) -> dict[str, Any]:
        seed = self._env_seed()
        base = default_platform_document()
        return merge_documents(base, seed) if seed else base

    def _layer(self, persisted: dict[str, Any] | None) -> PlatformConfig:
        document = self._base_document()
        if persisted:
            document = merge_documents(document, persisted)
        config = coerce_document(PlatformConfig, document)
        if config is None:
            logger.warning("platform_config_unusable key=%s falling_back=defaults", self.blob_key)
            return PlatformConfig.model_validate(default_platform_document())
        return config

    async def _read_persisted_safely(self) -> dict[str, Any] | None:
        try:
            return await with_store_timeout(self._read_persisted(), self._settings.config_store_timeout_ms)
        except Exception as exc:  # noqa: BLE001 - config reads degrade to defaults
            logger.warning("platform_config_read_failed key=%s", self.blob_key, exc_info=exc)
            return None

    async def _read_persisted(self) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlatformConfigBlob.document).where(PlatformConfigBlob.key == self.blob_key)
            )
            document = result.scalar_one_or_none()
        if document is None:
            return None
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except ValueError:
                logger.warning("platform_config_blob_malformed key=%s", self.blob_key)
                return None
        if not isinstance(document, dict):
            return None
        return alias_document(PlatformConfig, document, strict=False)

    async def _write(self, document: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            stmt = build_upsert(
                session,
                PlatformConfigBlob.__table__,
                {"key": self.blob_key, "document": document, "updated_at": self._time_provider()},
                index_elements=["key"],
            )
            await session.execute(stmt)
            await session.commit()

    async def _delete(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(PlatformConfigBlob).where(PlatformConfigBlob.key == self.blob_key))
            await session.commit()
