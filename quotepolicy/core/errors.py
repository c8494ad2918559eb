from __future__ import annotations


class PolicyError(Exception):
    """Base error for the AI policy engine."""

    code = "POLICY_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class IndustryKeyRequiredError(PolicyError):
    """Industry pack write without a usable industry key."""

    code = "INDUSTRY_KEY_REQUIRED"


class IndustryPackEmptyError(PolicyError):
    """Industry pack carries no model or prompt overrides after stripping."""

    code = "INDUSTRY_PACK_EMPTY"


class TenantIdRequiredError(PolicyError):
    """Tenant override write without a tenant id."""

    code = "MISSING_TENANT_ID"


class ConfigValidationError(PolicyError):
    """Config document failed schema validation on write."""

    code = "CONFIG_INVALID"


class StoreWriteError(PolicyError):
    """Persisting a config document failed; the write did not happen."""

    code = "STORE_WRITE_FAILED"
