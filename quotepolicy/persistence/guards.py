from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from quotepolicy.core.config import get_settings
from quotepolicy.core.errors import IndustryKeyRequiredError, TenantIdRequiredError


T = TypeVar("T")


def require_tenant_id(tenant_id: str | None) -> str:
    # Tenant-scoped writes must name a tenant; reads treat a blank id as "no row".
    cleaned = str(tenant_id or "").strip()
    if not cleaned:
        raise TenantIdRequiredError("tenant_id is required")
    return cleaned


def normalize_industry_key(industry_key: str | None) -> str:
    # Industry keys are lowercase slugs; an empty result means "no industry layer".
    return str(industry_key or "").strip().lower()


def require_industry_key(industry_key: str | None) -> str:
    key = normalize_industry_key(industry_key)
    if not key:
        raise IndustryKeyRequiredError("industry_key is required")
    return key


async def with_store_timeout(awaitable: Awaitable[T], timeout_ms: int | None = None) -> T:
    # Bound every store round trip; callers decide whether a timeout degrades or fails.
    limit_ms = get_settings().config_store_timeout_ms if timeout_ms is None else timeout_ms
    if limit_ms <= 0:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=limit_ms / 1000.0)
