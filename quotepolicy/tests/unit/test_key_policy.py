from __future__ import annotations

import pytest

from quotepolicy.domain.models import Tenant, TenantSecret, TenantSettings
from quotepolicy.persistence.repos.tenants import TenantProfile
from quotepolicy.services.key_policy import (
    REASON_NO_PLATFORM_KEY,
    REASON_PLATFORM_CONSUMES_GRACE,
    REASON_PLATFORM_NO_GRACE,
    REASON_PLATFORM_NOT_ALLOWED,
    REASON_TENANT_ID_REQUIRED,
    REASON_TENANT_KEY,
    REASON_TENANT_NOT_FOUND,
    REASON_UNAVAILABLE,
    KeyPolicyResolver,
    decide_key_source,
    detect_platform_key,
    evaluate_key_policy,
    has_grace_remaining,
    platform_allowed,
)


def _profile(**overrides) -> TenantProfile:
    values = {
        "tenant_id": "t1",
        "plan_tier": "tier1",
        "industry_key": None,
        "rendering_style": None,
        "rendering_notes": None,
        "activation_grace_credits": 0,
        "activation_grace_used": 0,
        "has_tenant_key": False,
    }
    values.update(overrides)
    return TenantProfile(**values)


async def _seed_tenant(session_factory, tenant_id: str, *, plan_tier: str, credits: int, used: int, key: str | None):
    async with session_factory() as session:
        session.add(Tenant(id=tenant_id, plan_tier=plan_tier))
        session.add(
            TenantSettings(tenant_id=tenant_id, activation_grace_credits=credits, activation_grace_used=used)
        )
        if key is not None:
            session.add(TenantSecret(tenant_id=tenant_id, openai_key_enc=key))
        await session.commit()


def test_grace_remaining() -> None:
    assert has_grace_remaining(5, 3)
    assert not has_grace_remaining(5, 5)
    assert not has_grace_remaining(0, 0)


def test_platform_allowed_by_tier() -> None:
    assert platform_allowed("tier0", False)
    assert platform_allowed(None, False)
    assert platform_allowed("TIER1", True)
    assert not platform_allowed("tier2", False)
    assert not platform_allowed("enterprise", True)


def test_tenant_key_always_wins() -> None:
    source, consume = decide_key_source(
        has_tenant_key=True, has_platform_key=True, platform_allowed=True, grace_remaining=True
    )
    assert (source, consume) == ("tenant", False)


@pytest.mark.parametrize(
    ("credits", "used", "allowed", "expected"),
    [
        (5, 5, True, ("platform_grace", False)),
        (5, 2, True, ("platform_grace", True)),
        (5, 2, False, ("none", False)),
    ],
)
def test_decide_key_source_without_tenant_key(credits: int, used: int, allowed: bool, expected) -> None:
    decided = decide_key_source(
        has_tenant_key=False,
        has_platform_key=True,
        platform_allowed=allowed,
        grace_remaining=has_grace_remaining(credits, used),
    )
    assert decided == expected


def test_tier1_with_grace_uses_platform_and_consumes() -> None:
    status = evaluate_key_policy(
        _profile(activation_grace_credits=5, activation_grace_used=3), "OPENAI_API_KEY"
    )
    assert status.effective_key_source_now == "platform_grace"
    assert status.would_consume_grace_on_new_quote is True
    assert status.platform_allowed is True
    assert status.reason == REASON_PLATFORM_CONSUMES_GRACE


def test_tier1_exhausted_grace_has_no_key() -> None:
    status = evaluate_key_policy(
        _profile(activation_grace_credits=5, activation_grace_used=5), "OPENAI_API_KEY"
    )
    assert status.effective_key_source_now == "none"
    assert status.platform_allowed is False
    assert status.would_consume_grace_on_new_quote is False
    assert status.reason == REASON_PLATFORM_NOT_ALLOWED


def test_tier0_uses_platform_without_consuming_grace() -> None:
    status = evaluate_key_policy(_profile(plan_tier="tier0"), "OPENAI_KEY")
    assert status.effective_key_source_now == "platform_grace"
    assert status.would_consume_grace_on_new_quote is False
    assert status.reason == REASON_PLATFORM_NO_GRACE
    assert status.platform_key_env_name == "OPENAI_KEY"


def test_missing_platform_key_is_reported() -> None:
    status = evaluate_key_policy(_profile(plan_tier="tier0"), None)
    assert status.effective_key_source_now == "none"
    assert status.has_platform_key is False
    assert status.reason == REASON_NO_PLATFORM_KEY


def test_counters_are_clamped() -> None:
    status = evaluate_key_policy(
        _profile(activation_grace_credits=-4, activation_grace_used=-1, has_tenant_key=True), None
    )
    assert (status.activation_grace_credits, status.activation_grace_used) == (0, 0)
    assert status.reason == REASON_TENANT_KEY


def test_detect_platform_key_order(make_settings) -> None:
    assert detect_platform_key(make_settings()) is None
    assert detect_platform_key(make_settings(openai_key="sk-c", openai_platform_api_key="sk-b")) == (
        "OPENAI_PLATFORM_API_KEY"
    )
    assert detect_platform_key(make_settings(openai_api_key="sk-a", openai_key="sk-c")) == "OPENAI_API_KEY"
    assert detect_platform_key(make_settings(openai_api_key="  ")) is None


@pytest.mark.asyncio
async def test_status_reads_tenant_records(session_factory, make_settings) -> None:
    await _seed_tenant(session_factory, "t-grace", plan_tier="tier1", credits=5, used=3, key=None)
    await _seed_tenant(session_factory, "t-own", plan_tier="tier2", credits=0, used=0, key="enc:abc")
    resolver = KeyPolicyResolver(session_factory, settings=make_settings(openai_api_key="sk-platform"))

    grace = await resolver.get_status("t-grace")
    assert grace.effective_key_source_now == "platform_grace"
    assert grace.would_consume_grace_on_new_quote is True
    assert grace.platform_key_env_name == "OPENAI_API_KEY"

    own = await resolver.get_status("t-own")
    assert own.effective_key_source_now == "tenant"
    assert own.has_tenant_key is True


@pytest.mark.asyncio
async def test_status_for_unknown_or_blank_tenant(session_factory, settings) -> None:
    resolver = KeyPolicyResolver(session_factory, settings=settings)

    missing = await resolver.get_status("t-missing")
    assert missing.reason == REASON_TENANT_NOT_FOUND
    assert missing.plan_tier == "unknown"
    assert missing.effective_key_source_now == "none"

    blank = await resolver.get_status("  ")
    assert blank.reason == REASON_TENANT_ID_REQUIRED


@pytest.mark.asyncio
async def test_status_never_raises_on_store_failure(broken_session_factory, make_settings) -> None:
    resolver = KeyPolicyResolver(broken_session_factory, settings=make_settings(openai_api_key="sk-platform"))
    status = await resolver.get_status("t1")
    assert status.reason == REASON_UNAVAILABLE
    assert status.has_platform_key is False
    assert status.platform_allowed is False
