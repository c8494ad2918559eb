from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable

from quotepolicy.domain.defaults import DEFAULT_RENDER_STYLE_KEY, DEFAULT_RENDER_STYLE_PRESETS
from quotepolicy.domain.policy import (
    EffectiveConfig,
    PricingPolicySnapshot,
    RenderRequest,
    TenantPromptContext,
    clean_text,
)


PRICING_MODEL_HINTS = {
    "flat_per_job": "think a single job total.",
    "hourly_plus_materials": "think hours and material costs/markup.",
    "per_unit": "estimate per-unit and multiply.",
    "packages": "think Basic/Standard/Premium tiers.",
    "line_items": "think add-ons; base service + optional items.",
    "inspection_only": "prefer inspection_required=true.",
    "assessment_fee": "assessment/diagnostic fee model.",
}

RENDER_PREAMBLE_PLACEHOLDER = "{renderPromptPreamble}"
_PLACEHOLDER = re.compile(r"\{[A-Za-z_][A-Za-z0-9_]*\}")


def _text(value: object) -> str:
    return clean_text(value) or ""


def join_blocks(blocks: Iterable[str | None]) -> str:
    # Trim each block and drop empties so absent layers leave no stray headers.
    return "\n\n".join(block.strip() for block in blocks if block and block.strip())


def _policy(pricing_policy: PricingPolicySnapshot | None) -> PricingPolicySnapshot:
    return (pricing_policy or PricingPolicySnapshot()).normalized()


def guardrail_block(blocked_topics: list[str]) -> str:
    lines = [
        "### PLATFORM GUARDRAILS (NON-NEGOTIABLE)",
        "- Output MUST be valid JSON and MUST match the server-provided JSON schema exactly.",
        "- Do not fabricate unseen details from photos; if unsure, say so via assumptions/questions.",
        "- If photos/notes are ambiguous, set confidence lower and set inspection_required=true.",
    ]
    if blocked_topics:
        lines.append(f"- Never discuss or process these topics: {', '.join(blocked_topics)}.")
    return "\n".join(lines)


def estimator_style_block(pricing_policy: PricingPolicySnapshot | None) -> str:
    policy = _policy(pricing_policy)
    if policy.ai_mode == "assessment_only":
        mode_line = (
            "- Pricing is disabled/assessment-only: summary should explain why a site visit is needed; "
            "do not include any pricing language."
        )
    elif policy.ai_mode == "fixed":
        mode_line = (
            "- Pricing mode is FIXED: summary should explain the single-number estimate and the main cost drivers."
        )
    else:
        mode_line = (
            "- Pricing mode is RANGE: summary should explain why the estimate is a range "
            "and the key drivers between low/high."
        )
    return "\n".join(
        [
            "### ESTIMATOR COMMUNICATION STYLE (IMPORTANT)",
            "- Write like a seasoned estimator writing notes for a customer + internal lead.",
            "- Avoid generic filler. Be concrete about what you see and what drives cost.",
            "- summary must be 2–4 sentences, plain English, no bullet points in summary.",
            mode_line,
            "- visible_scope: 3–6 short scope bullets max. Make them specific to THIS job; avoid repeating the prompt.",
            "- assumptions: 3–5 items max. Phrase as true estimator assumptions "
            "(e.g., access, disposal, material grade, dimensions not shown).",
            "- questions: 3–5 items max. Ask only what changes price or feasibility.",
            "- If inspection_required=true, summary should clearly state what needs to be verified onsite and why.",
        ]
    )


def pricing_policy_block(pricing_policy: PricingPolicySnapshot | None) -> str:
    policy = _policy(pricing_policy)
    lines = ["### PRICING POLICY (HARD RULES)"]
    if policy.ai_mode == "assessment_only":
        lines.extend(
            [
                "- Pricing is disabled or assessment-only.",
                "- Set estimate_low = 0 and estimate_high = 0.",
                "- Do NOT output monetary values.",
            ]
        )
    elif policy.ai_mode == "fixed":
        lines.extend(["- Pricing mode is FIXED.", "- Set estimate_low == estimate_high."])
    else:
        lines.append("- Pricing mode is RANGE.")
    if policy.pricing_enabled and policy.pricing_model:
        lines.append(f"- Pricing model hint: {policy.pricing_model}.")
        hint = PRICING_MODEL_HINTS.get(policy.pricing_model)
        if hint:
            lines.append(f"- Pricing methodology hint: {hint}")
    return "\n".join(lines)


def qa_style_block(max_questions: int) -> str:
    return "\n".join(
        [
            "### Q&A QUESTION STYLE",
            "- Ask short, practical clarification questions only.",
            f"- Ask at most {max_questions} questions.",
            "- Avoid generic questions; ask only what affects scope, materials, dimensions, access, or pricing certainty.",
            "- Return ONLY valid JSON: { questions: string[] }",
        ]
    )


def tenant_context_block(tenant_context: TenantPromptContext | None) -> str:
    if tenant_context is None:
        return ""
    fragments = []
    style_key = _text(tenant_context.style_key)
    notes = _text(tenant_context.render_notes)
    if style_key:
        fragments.append(f"Tenant style preference: {style_key}.")
    if notes:
        fragments.append(f"Tenant-specific notes: {notes}.")
    if not fragments:
        return ""
    return "\n\n".join(["### TENANT CONTEXT", *fragments])


def _layer_text(effective: EffectiveConfig, field: str, *, industry: bool) -> str:
    # Industry-sourced text moves to its own labeled block instead of the platform slot.
    from_industry = effective.prompt_sources.get(field) == "industry"
    if from_industry != industry:
        return ""
    return _text(getattr(effective.prompts, field))


def industry_block(effective: EffectiveConfig, industry_key: str | None, system_field: str) -> str:
    if not _text(industry_key or effective.industry_key):
        return ""
    fragments = [
        _layer_text(effective, "extra_system_preamble", industry=True),
        _layer_text(effective, system_field, industry=True),
    ]
    fragments = [fragment for fragment in fragments if fragment]
    if not fragments:
        return ""
    return "\n\n".join(["### INDUSTRY SPECIALIZATION", *fragments])


def compose_estimator_prompt(
    effective: EffectiveConfig,
    tenant_context: TenantPromptContext | None = None,
    industry_key: str | None = None,
    pricing_policy: PricingPolicySnapshot | None = None,
) -> str:
    return join_blocks(
        [
            guardrail_block(effective.guardrails.blocked_topics),
            _layer_text(effective, "extra_system_preamble", industry=False),
            _layer_text(effective, "quote_estimator_system", industry=False),
            industry_block(effective, industry_key, "quote_estimator_system"),
            tenant_context_block(tenant_context),
            estimator_style_block(pricing_policy),
            pricing_policy_block(pricing_policy),
        ]
    )


def compose_qa_prompt(
    effective: EffectiveConfig,
    tenant_context: TenantPromptContext | None = None,
    industry_key: str | None = None,
    pricing_policy: PricingPolicySnapshot | None = None,
) -> str:
    # Pricing rules stay visible to Q&A; some modes should steer which questions matter.
    return join_blocks(
        [
            guardrail_block(effective.guardrails.blocked_topics),
            _layer_text(effective, "extra_system_preamble", industry=False),
            _layer_text(effective, "qa_question_generator_system", industry=False),
            industry_block(effective, industry_key, "qa_question_generator_system"),
            tenant_context_block(tenant_context),
            qa_style_block(effective.guardrails.max_qa_questions),
            pricing_policy_block(pricing_policy),
        ]
    )


@dataclass(frozen=True)
class RenderPromptLayers:
    # Every render layer as raw text plus the compiled prompt, for the audit view.
    style_key: str
    style_text: str
    platform_preamble: str
    platform_template: str
    industry_addendum: str
    industry_negative_guidance: str
    tenant_addendum: str
    tenant_negative_guidance: str
    compiled: str


def resolve_style_text(effective: EffectiveConfig, style_key: str) -> str:
    presets = effective.prompts.render_style_presets
    return _text(presets.get(style_key)) or DEFAULT_RENDER_STYLE_PRESETS.get(style_key) or style_key


def fill_render_template(template: str, values: dict[str, str]) -> str:
    # One pass over the template only; substituted text is never scanned for placeholders.
    lines = []
    for line in template.splitlines():
        if _PLACEHOLDER.search(line) is None:
            lines.append(line.rstrip())
            continue
        filled = _PLACEHOLDER.sub(lambda match: values.get(match.group(0), ""), line)
        # Unknown placeholders become empty; a placeholder line left blank is dropped.
        if not filled.strip():
            continue
        lines.append(filled.rstrip())
    return "\n".join(lines).strip()


def _labeled(label: str, text: str) -> str:
    return f"# {label}\n{text}" if text else ""


def build_render_layers(effective: EffectiveConfig, request: RenderRequest | None = None) -> RenderPromptLayers:
    request = request or RenderRequest()
    rendering = effective.rendering
    style_key = _text(request.style_key) or _text(rendering.style) or DEFAULT_RENDER_STYLE_KEY
    style_text = resolve_style_text(effective, style_key)

    preamble = _text(effective.prompts.render_prompt_preamble)
    template = _text(effective.prompts.render_prompt_template)
    service_type = _text(request.service_type)
    summary = _text(request.summary)
    customer_notes = _text(request.customer_notes)
    tenant_notes = _text(request.tenant_render_notes)
    filled = fill_render_template(
        template,
        {
            RENDER_PREAMBLE_PLACEHOLDER: preamble,
            "{style}": style_text,
            "{serviceTypeLine}": f"Service type: {service_type}" if service_type else "",
            "{summaryLine}": f"Job summary: {summary}" if summary else "",
            "{customerNotesLine}": f"Customer notes: {customer_notes}" if customer_notes else "",
            "{tenantRenderNotesLine}": f"Tenant render notes: {tenant_notes}" if tenant_notes else "",
        },
    )
    # A template that embeds the preamble already carries it; do not repeat it.
    preamble_section = "" if RENDER_PREAMBLE_PLACEHOLDER in template else preamble

    compiled = join_blocks(
        [
            _labeled("Platform render preamble", preamble_section),
            _labeled("Platform render template", filled),
            _labeled("Industry render addendum", _text(rendering.industry_addendum)),
            _labeled("Industry render negative guidance", _text(rendering.industry_negative_guidance)),
            _labeled("Tenant add-on", _text(rendering.tenant_addendum)),
            _labeled("Avoid / negative guidance", _text(rendering.tenant_negative_guidance)),
        ]
    )
    return RenderPromptLayers(
        style_key=style_key,
        style_text=style_text,
        platform_preamble=preamble,
        platform_template=template,
        industry_addendum=_text(rendering.industry_addendum),
        industry_negative_guidance=_text(rendering.industry_negative_guidance),
        tenant_addendum=_text(rendering.tenant_addendum),
        tenant_negative_guidance=_text(rendering.tenant_negative_guidance),
        compiled=compiled,
    )


def compose_render_prompt(effective: EffectiveConfig, request: RenderRequest | None = None) -> str:
    return build_render_layers(effective, request).compiled
