from __future__ import annotations

import re

from quotepolicy.domain.policy import GuardrailPolicy, PiiHandling


# Coarse patterns for text echoed into UIs or logs; not a full PII detector.
_EMAIL = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_PHONE = re.compile(r"(\+?1[\s-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}")

REDACTED_EMAIL = "[redacted-email]"
REDACTED_PHONE = "[redacted-phone]"


def redact_pii(text: str) -> str:
    return _PHONE.sub(REDACTED_PHONE, _EMAIL.sub(REDACTED_EMAIL, text))


def apply_basic_text_guardrails(text: str | None, pii_handling: PiiHandling | GuardrailPolicy) -> str:
    if isinstance(pii_handling, GuardrailPolicy):
        pii_handling = pii_handling.pii_handling
    value = text or ""
    if pii_handling == "allow":
        return value
    redacted = redact_pii(value)
    # deny drops the whole text as soon as anything looked like PII
    if pii_handling == "deny" and redacted != value:
        return ""
    return redacted
