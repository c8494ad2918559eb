from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotepolicy.core.config import Settings, get_settings
from quotepolicy.domain.policy import (
    KEY_SOURCE_NONE,
    KEY_SOURCE_PLATFORM_GRACE,
    KEY_SOURCE_TENANT,
    KeyPolicyStatus,
    KeySource,
    clean_text,
)
from quotepolicy.persistence.guards import with_store_timeout
from quotepolicy.persistence.repos.tenants import TenantProfile, get_tenant_profile


logger = logging.getLogger(__name__)

DEFAULT_PLAN_TIER = "tier0"
GRACE_GATED_TIERS = ("tier1", "tier2")
UNKNOWN_PLAN_TIER = "unknown"

REASON_TENANT_KEY = "Tenant key is set."
REASON_NO_PLATFORM_KEY = "Platform OpenAI key is not configured in this deployment environment."
REASON_PLATFORM_NOT_ALLOWED = "Platform key is configured but not allowed for this plan tier."
REASON_PLATFORM_CONSUMES_GRACE = (
    "Currently using platform key under grace. New quotes will consume a grace credit until grace runs out."
)
REASON_PLATFORM_NO_GRACE = "Currently using platform key. This request type will not consume grace."
REASON_TENANT_ID_REQUIRED = "Tenant id is required."
REASON_TENANT_NOT_FOUND = "Tenant not found."
REASON_UNAVAILABLE = "Key policy data is unavailable; no credential can be selected."


def has_grace_remaining(credits: int, used: int) -> bool:
    return credits > 0 and used < credits


def platform_allowed(plan_tier: str | None, grace_remaining: bool) -> bool:
    # tier0 may always use the pooled key; tier1/tier2 only while grace lasts.
    tier = (clean_text(plan_tier) or DEFAULT_PLAN_TIER).lower()
    if tier == DEFAULT_PLAN_TIER:
        return True
    if tier in GRACE_GATED_TIERS:
        return grace_remaining
    return False


def decide_key_source(
    *,
    has_tenant_key: bool,
    has_platform_key: bool,
    platform_allowed: bool,
    grace_remaining: bool,
) -> tuple[KeySource, bool]:
    # Returns the key source plus whether a new quote would consume a grace credit.
    if has_tenant_key:
        return KEY_SOURCE_TENANT, False
    if platform_allowed and has_platform_key:
        return KEY_SOURCE_PLATFORM_GRACE, grace_remaining
    return KEY_SOURCE_NONE, False


def describe_key_source(
    source: KeySource,
    *,
    has_platform_key: bool,
    platform_allowed: bool,
    would_consume_grace: bool,
) -> str:
    if source == KEY_SOURCE_TENANT:
        return REASON_TENANT_KEY
    if not has_platform_key:
        return REASON_NO_PLATFORM_KEY
    if not platform_allowed:
        return REASON_PLATFORM_NOT_ALLOWED
    if would_consume_grace:
        return REASON_PLATFORM_CONSUMES_GRACE
    return REASON_PLATFORM_NO_GRACE


def detect_platform_key(settings: Settings) -> str | None:
    # First configured variable wins; the name is reported, never the value.
    candidates = (
        ("OPENAI_API_KEY", settings.openai_api_key),
        ("OPENAI_PLATFORM_API_KEY", settings.openai_platform_api_key),
        ("OPENAI_KEY", settings.openai_key),
    )
    for env_name, value in candidates:
        if clean_text(value):
            return env_name
    return None


def unavailable_status(tenant_id: str, reason: str) -> KeyPolicyStatus:
    return KeyPolicyStatus(
        tenant_id=tenant_id,
        plan_tier=UNKNOWN_PLAN_TIER,
        activation_grace_credits=0,
        activation_grace_used=0,
        grace_remaining=False,
        has_tenant_key=False,
        has_platform_key=False,
        platform_allowed=False,
        effective_key_source_now=KEY_SOURCE_NONE,
        would_consume_grace_on_new_quote=False,
        platform_key_env_name=None,
        reason=reason,
    )


def evaluate_key_policy(profile: TenantProfile, platform_key_env_name: str | None) -> KeyPolicyStatus:
    plan_tier = (clean_text(profile.plan_tier) or DEFAULT_PLAN_TIER).lower()
    credits = max(0, profile.activation_grace_credits)
    used = max(0, profile.activation_grace_used)
    grace_remaining = has_grace_remaining(credits, used)
    allowed = platform_allowed(plan_tier, grace_remaining)
    has_platform_key = platform_key_env_name is not None
    source, would_consume = decide_key_source(
        has_tenant_key=profile.has_tenant_key,
        has_platform_key=has_platform_key,
        platform_allowed=allowed,
        grace_remaining=grace_remaining,
    )
    return KeyPolicyStatus(
        tenant_id=profile.tenant_id,
        plan_tier=plan_tier,
        activation_grace_credits=credits,
        activation_grace_used=used,
        grace_remaining=grace_remaining,
        has_tenant_key=profile.has_tenant_key,
        has_platform_key=has_platform_key,
        platform_allowed=allowed,
        effective_key_source_now=source,
        would_consume_grace_on_new_quote=would_consume,
        platform_key_env_name=platform_key_env_name,
        reason=describe_key_source(
            source,
            has_platform_key=has_platform_key,
            platform_allowed=allowed,
            would_consume_grace=would_consume,
        ),
    )


class KeyPolicyResolver:
    """Report which credential pays for the tenant's next model call.

    Read-only: grace credits are decremented by the quote write path, not here.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        if session_factory is None:
            from quotepolicy.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def get_status(self, tenant_id: str | None) -> KeyPolicyStatus:
        cleaned = str(tenant_id or "").strip()
        if not cleaned:
            return unavailable_status("", REASON_TENANT_ID_REQUIRED)
        try:
            profile = await with_store_timeout(self._load_profile(cleaned), self._settings.config_store_timeout_ms)
        except Exception as exc:  # noqa: BLE001 - status reads never raise
            logger.warning("key_policy_read_failed tenant_id=%s", cleaned, exc_info=exc)
            return unavailable_status(cleaned, REASON_UNAVAILABLE)
        if profile is None:
            return unavailable_status(cleaned, REASON_TENANT_NOT_FOUND)
        return evaluate_key_policy(profile, detect_platform_key(self._settings))

    async def _load_profile(self, tenant_id: str) -> TenantProfile | None:
        async with self._session_factory() as session:
            return await get_tenant_profile(session, tenant_id)
