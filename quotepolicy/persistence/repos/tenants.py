from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotepolicy.domain.models import Tenant, TenantSecret, TenantSettings
from quotepolicy.domain.policy import clean_text


@dataclass(frozen=True)
class TenantProfile:
    # Tenant facts the policy engine reads but never writes.
    tenant_id: str
    plan_tier: str
    industry_key: str | None
    rendering_style: str | None
    rendering_notes: str | None
    activation_grace_credits: int
    activation_grace_used: int
    has_tenant_key: bool


async def get_tenant_profile(session: AsyncSession, tenant_id: str) -> TenantProfile | None:
    tenant = (await session.execute(select(Tenant).where(Tenant.id == tenant_id))).scalar_one_or_none()
    settings = (
        await session.execute(select(TenantSettings).where(TenantSettings.tenant_id == tenant_id))
    ).scalar_one_or_none()
    if tenant is None and settings is None:
        return None
    secret = (
        await session.execute(select(TenantSecret.openai_key_enc).where(TenantSecret.tenant_id == tenant_id))
    ).scalar_one_or_none()
    return TenantProfile(
        tenant_id=tenant_id,
        plan_tier=(clean_text(tenant.plan_tier) if tenant is not None else None) or "tier0",
        industry_key=clean_text(settings.industry_key) if settings is not None else None,
        rendering_style=clean_text(settings.rendering_style) if settings is not None else None,
        rendering_notes=clean_text(settings.rendering_notes) if settings is not None else None,
        # Counters may drift below zero through manual edits; clamp wherever read.
        activation_grace_credits=max(0, int(settings.activation_grace_credits or 0)) if settings is not None else 0,
        activation_grace_used=max(0, int(settings.activation_grace_used or 0)) if settings is not None else 0,
        has_tenant_key=bool(clean_text(secret)),
    )
