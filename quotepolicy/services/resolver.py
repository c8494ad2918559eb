from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from quotepolicy.core.config import Settings, get_settings
from quotepolicy.domain.policy import (
    MODEL_FIELDS,
    MODEL_SOURCE_PLATFORM_DEFAULT,
    MODEL_SOURCE_TENANT_EXPLICIT,
    MODEL_SOURCE_TENANT_PRESET,
    MODEL_SOURCE_TENANT_REJECTED,
    PROMPT_FIELDS,
    EffectiveConfig,
    EffectivePrompts,
    EffectiveRendering,
    IndustryPack,
    IndustryPackMeta,
    ModelSet,
    PlatformConfig,
    TenantOverrides,
)
from quotepolicy.persistence.guards import normalize_industry_key
from quotepolicy.persistence.repos.industry_packs import IndustryPackStore
from quotepolicy.persistence.repos.platform_config import PlatformConfigStore
from quotepolicy.persistence.repos.tenant_overrides import TenantOverridesStore


logger = logging.getLogger(__name__)

# "balanced" is intentionally absent: it defers to whatever platform/industry resolved.
PRESET_MODELS: dict[str, dict[str, str]] = {
    "fast": {"estimator_model": "gpt-4o-mini", "qa_model": "gpt-4o-mini"},
    "quality": {"estimator_model": "gpt-4o", "qa_model": "gpt-4o-mini"},
}


@dataclass(frozen=True)
class ResolvedLayers:
    # Raw inputs to a resolution, kept for the admin audit view.
    platform: PlatformConfig
    industry: IndustryPack | None
    industry_meta: IndustryPackMeta | None
    tenant: TenantOverrides | None
    effective: EffectiveConfig


def _resolve_models(
    platform: PlatformConfig,
    industry: IndustryPack | None,
    tenant: TenantOverrides | None,
    allowlist: tuple[str, ...] | None,
) -> tuple[ModelSet, str]:
    models: dict[str, Any] = platform.models.model_dump()
    if industry is not None and industry.models is not None:
        for name in MODEL_FIELDS:
            value = getattr(industry.models, name)
            if value:
                models[name] = value

    source = MODEL_SOURCE_PLATFORM_DEFAULT
    if tenant is None:
        return ModelSet(**models), source

    if tenant.model_preset is not None:
        models.update(PRESET_MODELS.get(tenant.model_preset, {}))
        source = MODEL_SOURCE_TENANT_PRESET

    accepted = rejected = False
    if tenant.models is not None:
        for name in MODEL_FIELDS:
            requested = getattr(tenant.models, name)
            if not requested:
                continue
            if allowlist is None or requested in allowlist:
                models[name] = requested
                accepted = True
            else:
                rejected = True
                logger.info("tenant_model_rejected field=%s model=%s", name, requested)
    if rejected:
        source = MODEL_SOURCE_TENANT_REJECTED
    elif accepted:
        source = MODEL_SOURCE_TENANT_EXPLICIT
    return ModelSet(**models), source


def merge_layers(
    tenant_id: str,
    platform: PlatformConfig,
    industry: IndustryPack | None = None,
    tenant: TenantOverrides | None = None,
    *,
    industry_key: str | None = None,
    industry_version: int | None = None,
    allowlist: tuple[str, ...] | None = None,
) -> EffectiveConfig:
    # Platform -> industry -> tenant; a layer only replaces a value with a non-empty one.
    if industry is not None and industry.is_empty():
        industry = None
    if tenant is not None and tenant.is_empty():
        tenant = None

    models, model_source = _resolve_models(platform, industry, tenant, allowlist)

    prompts: dict[str, str] = {name: getattr(platform.prompts, name) or "" for name in PROMPT_FIELDS}
    sources: dict[str, str] = {name: "platform" for name in PROMPT_FIELDS}
    for layer_name, layer_prompts in (
        ("industry", industry.prompts if industry is not None else None),
        ("tenant", tenant.prompts if tenant is not None else None),
    ):
        if layer_prompts is None:
            continue
        for name in PROMPT_FIELDS:
            value = getattr(layer_prompts, name)
            if value:
                prompts[name] = value
                sources[name] = layer_name

    # Guardrails are platform-owned; tenants may only tighten the question cap.
    guardrails = platform.guardrails
    if tenant is not None and tenant.max_qa_questions is not None:
        guardrails = guardrails.model_copy(
            update={"max_qa_questions": min(guardrails.max_qa_questions, tenant.max_qa_questions)}
        )

    industry_prompts = industry.prompts if industry is not None else None
    rendering_policy = tenant.rendering_policy if tenant is not None else None
    rendering = EffectiveRendering(
        enabled=rendering_policy.enabled if rendering_policy is not None else None,
        style=rendering_policy.style if rendering_policy is not None else None,
        platform_preamble=platform.prompts.render_prompt_preamble or "",
        platform_template=platform.prompts.render_prompt_template or "",
        industry_addendum=(industry_prompts.render_addendum() if industry_prompts is not None else None) or "",
        industry_negative_guidance=(
            industry_prompts.render_negative_guidance() if industry_prompts is not None else None
        )
        or "",
        tenant_addendum=(rendering_policy.prompt_addendum if rendering_policy is not None else None) or "",
        tenant_negative_guidance=(rendering_policy.negative_guidance if rendering_policy is not None else None) or "",
    )

    return EffectiveConfig(
        tenant_id=tenant_id,
        industry_key=normalize_industry_key(industry_key) or None,
        models=models,
        prompts=EffectivePrompts(
            render_prompt_preamble=platform.prompts.render_prompt_preamble or "",
            render_prompt_template=platform.prompts.render_prompt_template or "",
            render_style_presets=dict(platform.prompts.render_style_presets),
            **prompts,
        ),
        prompt_sources=sources,
        guardrails=guardrails.model_copy(deep=True),
        model_source=model_source,
        rendering=rendering,
        platform_version=platform.version,
        industry_version=industry_version if industry is not None else None,
        tenant_overrides_updated_at=tenant.updated_at if tenant is not None else None,
    )


class LayeredConfigResolver:
    """Combine platform, industry and tenant layers into one EffectiveConfig.

    Every store read degrades on its own, so resolution always produces a
    usable config even when the database is unavailable.
    """

    def __init__(
        self,
        platform_store: PlatformConfigStore,
        industry_store: IndustryPackStore,
        tenant_store: TenantOverridesStore,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._platform_store = platform_store
        self._industry_store = industry_store
        self._tenant_store = tenant_store
        self._settings = settings or get_settings()

    async def resolve(self, tenant_id: str, industry_key: str | None = None) -> EffectiveConfig:
        layers = await self.resolve_layers(tenant_id, industry_key)
        return layers.effective

    async def resolve_layers(self, tenant_id: str, industry_key: str | None = None) -> ResolvedLayers:
        key = normalize_industry_key(industry_key)
        platform = await self._platform_store.load()
        industry, industry_meta = await self._industry_store.get_with_meta(key)
        tenant = await self._tenant_store.load(tenant_id)
        effective = merge_layers(
            tenant_id,
            platform,
            industry,
            tenant,
            industry_key=key,
            industry_version=industry_meta.version if industry_meta is not None else None,
            allowlist=self._settings.model_allowlist(),
        )
        logger.debug(
            "effective_config_resolved tenant_id=%s industry_key=%s model_source=%s",
            tenant_id,
            key or "-",
            effective.model_source,
        )
        return ResolvedLayers(
            platform=platform,
            industry=industry,
            industry_meta=industry_meta,
            tenant=tenant,
            effective=effective,
        )
