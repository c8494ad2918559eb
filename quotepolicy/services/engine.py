from __future__ import annotations

from datetime import datetime
from functools import lru_cache
import logging
from typing import Any, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotepolicy.core.config import Settings, get_settings
from quotepolicy.domain.policy import (
    EffectiveConfig,
    IndustryPack,
    IndustryPackMeta,
    KeyPolicyStatus,
    PlatformConfig,
    TenantOverrides,
    TenantPromptContext,
)
from quotepolicy.persistence.cache import TTLCache
from quotepolicy.persistence.guards import with_store_timeout
from quotepolicy.persistence.repos.industry_packs import IndustryPackStore
from quotepolicy.persistence.repos.platform_config import PlatformConfigStore
from quotepolicy.persistence.repos.tenant_overrides import TenantOverridesStore
from quotepolicy.persistence.repos.tenants import TenantProfile, get_tenant_profile
from quotepolicy.services.key_policy import KeyPolicyResolver
# Re-export composer functions so callers import the whole surface from one module.
from quotepolicy.services.prompt_composer import (  # noqa: F401
    build_render_layers,
    compose_estimator_prompt,
    compose_qa_prompt,
    compose_render_prompt,
)
from quotepolicy.services.resolver import LayeredConfigResolver, ResolvedLayers


logger = logging.getLogger(__name__)


class PolicyEngine:
    """Library surface for the HTTP layer: resolution, key policy and admin writes.

    Prompt composition is pure and lives in ``prompt_composer``; the engine
    only gathers the inputs it needs.
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
        self.settings = settings or get_settings()
        if cache is None and self.settings.config_cache_ttl_s > 0:
            cache = TTLCache(self.settings.config_cache_ttl_s)
        self._session_factory = session_factory
        self.platform_store = PlatformConfigStore(
            session_factory, settings=self.settings, cache=cache, time_provider=time_provider
        )
        self.industry_store = IndustryPackStore(session_factory, settings=self.settings, time_provider=time_provider)
        self.tenant_store = TenantOverridesStore(session_factory, settings=self.settings, time_provider=time_provider)
        self.resolver = LayeredConfigResolver(
            self.platform_store, self.industry_store, self.tenant_store, settings=self.settings
        )
        self.key_policy = KeyPolicyResolver(session_factory, settings=self.settings)

    async def resolve_effective_config(self, tenant_id: str, industry_key: str | None = None) -> EffectiveConfig:
        return await self.resolver.resolve(tenant_id, industry_key)

    async def resolve_layers(self, tenant_id: str, industry_key: str | None = None) -> ResolvedLayers:
        return await self.resolver.resolve_layers(tenant_id, industry_key)

    async def resolve_for_tenant(self, tenant_id: str) -> EffectiveConfig:
        # Use the industry recorded on the tenant; a missing profile resolves without an industry layer.
        profile = await self._tenant_profile(tenant_id)
        return await self.resolver.resolve(tenant_id, profile.industry_key if profile is not None else None)

    async def get_key_policy_status(self, tenant_id: str) -> KeyPolicyStatus:
        return await self.key_policy.get_status(tenant_id)

    async def load_tenant_prompt_context(self, tenant_id: str) -> TenantPromptContext:
        profile = await self._tenant_profile(tenant_id)
        overrides = await self.tenant_store.load(tenant_id)
        rendering_policy = overrides.rendering_policy if overrides is not None else None
        style_key = rendering_policy.style if rendering_policy is not None else None
        if style_key is None and profile is not None:
            style_key = profile.rendering_style
        return TenantPromptContext(
            style_key=style_key,
            render_notes=profile.rendering_notes if profile is not None else None,
        )

    async def save_platform_config(self, patch: PlatformConfig | Mapping[str, Any]) -> PlatformConfig:
        return await self.platform_store.save(patch)

    async def reset_platform_config(self) -> PlatformConfig:
        return await self.platform_store.reset()

    async def upsert_industry_pack(
        self,
        industry_key: str,
        pack: IndustryPack | Mapping[str, Any],
        *,
        version: int | None = None,
        updated_by: str | None = None,
        source: Any = None,
    ) -> IndustryPackMeta:
        return await self.industry_store.upsert(
            industry_key, pack, version=version, updated_by=updated_by, source=source
        )

    async def list_industries_missing_pack(self, limit: int | None = None) -> list[str]:
        return await self.industry_store.list_keys_missing_pack(limit)

    async def save_tenant_overrides(
        self, tenant_id: str, overrides: TenantOverrides | Mapping[str, Any]
    ) -> TenantOverrides:
        return await self.tenant_store.save(tenant_id, overrides)

    async def reset_tenant_overrides(self, tenant_id: str) -> None:
        await self.tenant_store.reset(tenant_id)

    async def _tenant_profile(self, tenant_id: str) -> TenantProfile | None:
        cleaned = str(tenant_id or "").strip()
        if not cleaned:
            return None
        try:
            return await with_store_timeout(self._read_profile(cleaned), self.settings.config_store_timeout_ms)
        except Exception as exc:  # noqa: BLE001 - tenant context is optional prompt input
            logger.warning("tenant_profile_read_failed tenant_id=%s", cleaned, exc_info=exc)
            return None

    async def _read_profile(self, tenant_id: str) -> TenantProfile | None:
        async with self._session_factory() as session:
            return await get_tenant_profile(session, tenant_id)


@lru_cache
def get_engine() -> PolicyEngine:
    return PolicyEngine()


async def resolve_effective_config(tenant_id: str, industry_key: str | None = None) -> EffectiveConfig:
    return await get_engine().resolve_effective_config(tenant_id, industry_key)


async def resolve_for_tenant(tenant_id: str) -> EffectiveConfig:
    return await get_engine().resolve_for_tenant(tenant_id)


async def get_key_policy_status(tenant_id: str) -> KeyPolicyStatus:
    return await get_engine().get_key_policy_status(tenant_id)


async def load_tenant_prompt_context(tenant_id: str) -> TenantPromptContext:
    return await get_engine().load_tenant_prompt_context(tenant_id)


async def save_platform_config(patch: PlatformConfig | Mapping[str, Any]) -> PlatformConfig:
    return await get_engine().save_platform_config(patch)


async def upsert_industry_pack(
    industry_key: str,
    pack: IndustryPack | Mapping[str, Any],
    *,
    version: int | None = None,
    updated_by: str | None = None,
    source: Any = None,
) -> IndustryPackMeta:
    return await get_engine().upsert_industry_pack(
        industry_key, pack, version=version, updated_by=updated_by, source=source
    )


async def save_tenant_overrides(tenant_id: str, overrides: TenantOverrides | Mapping[str, Any]) -> TenantOverrides:
    return await get_engine().save_tenant_overrides(tenant_id, overrides)
