from __future__ import annotations

import pytest

from quotepolicy.domain.defaults import DEFAULT_BLOCKED_TOPICS, DEFAULT_ESTIMATOR_MODEL, DEFAULT_RENDER_MODEL
from quotepolicy.domain.policy import (
    GuardrailPolicy,
    IndustryPack,
    ModelSet,
    PlatformConfig,
    PricingPolicySnapshot,
    TenantOverrides,
    alias_document,
    coerce_document,
    merge_documents,
    parse_model_choice,
)


def test_model_set_falls_back_to_builtin_literals() -> None:
    models = ModelSet.model_validate({"estimatorModel": "  ", "qaModel": 42, "renderModel": None})
    assert models.estimator_model == DEFAULT_ESTIMATOR_MODEL
    assert models.qa_model == "gpt-4o-mini"
    assert models.render_model == DEFAULT_RENDER_MODEL


def test_guardrails_clamp_and_dedupe_topics() -> None:
    guardrails = GuardrailPolicy.model_validate(
        {
            "blockedTopics": ["weapon", " weapon ", "", "ssn", "weapon"],
            "maxQaQuestions": 42,
            "maxOutputTokens": 5,
        }
    )
    assert guardrails.blocked_topics == ["weapon", "ssn"]
    assert guardrails.max_qa_questions == 10
    assert guardrails.max_output_tokens == 100


def test_platform_defaults_carry_blocked_topics() -> None:
    config = PlatformConfig()
    assert config.guardrails.blocked_topics == DEFAULT_BLOCKED_TOPICS
    assert config.prompts.render_style_presets["photoreal"]


def test_tenant_overrides_blank_values_mean_inherit() -> None:
    overrides = TenantOverrides.model_validate(
        {
            "models": {"estimatorModel": "   "},
            "prompts": {"quoteEstimatorSystem": ""},
            "renderingPolicy": {"promptAddendum": " "},
            "modelPreset": "",
        }
    )
    assert overrides.models is None
    assert overrides.prompts is None
    assert overrides.rendering_policy is None
    assert overrides.model_preset is None
    assert overrides.is_empty()


def test_tenant_overrides_clamp_question_cap() -> None:
    assert TenantOverrides(max_qa_questions=0).max_qa_questions == 1
    assert TenantOverrides(max_qa_questions=99).max_qa_questions == 10


def test_free_text_model_choice_is_split_at_parse_time() -> None:
    assert parse_model_choice("Fast").kind == "preset"
    assert parse_model_choice("model:gpt-4o").value == "gpt-4o"
    assert parse_model_choice("gpt-4.1-mini").kind == "explicit"
    assert parse_model_choice("model:").kind == "none"
    assert parse_model_choice("whatever").kind == "none"

    preset = TenantOverrides.model_validate({"aiMode": "quality"})
    assert preset.model_preset == "quality"
    assert preset.models is None

    explicit = TenantOverrides.model_validate({"aiMode": "model:gpt-4o"})
    assert explicit.model_preset is None
    assert explicit.models is not None
    assert explicit.models.estimator_model == "gpt-4o"
    assert explicit.models.qa_model == "gpt-4o"


def test_industry_pack_keeps_legacy_render_keys() -> None:
    pack = IndustryPack.model_validate(
        {
            "prompts": {
                "render_addendum": "Show clean tile grout lines.",
                "renderNegatives": "No people in frame.",
            }
        }
    )
    assert pack.prompts is not None
    assert pack.prompts.render_addendum() == "Show clean tile grout lines."
    assert pack.prompts.render_negative_guidance() == "No people in frame."
    assert not pack.is_empty()


def test_industry_pack_with_blank_sections_is_empty() -> None:
    pack = IndustryPack.model_validate({"models": {"qaModel": ""}, "prompts": {"extraSystemPreamble": "  "}})
    assert pack.is_empty()


def test_merge_documents_override_wins_per_leaf() -> None:
    base = {"models": {"estimatorModel": "a", "qaModel": "b"}, "guardrails": {"blockedTopics": ["x", "y"]}}
    override = {"models": {"qaModel": "c"}, "guardrails": {"blockedTopics": ["z"]}}
    merged = merge_documents(base, override)
    assert merged == {"models": {"estimatorModel": "a", "qaModel": "c"}, "guardrails": {"blockedTopics": ["z"]}}
    assert base["models"]["qaModel"] == "b"


def test_coerce_document_drops_invalid_leaves() -> None:
    config = coerce_document(
        PlatformConfig,
        {"guardrails": {"mode": "chaotic", "piiHandling": "deny", "maxQaQuestions": "many"}},
    )
    assert config is not None
    assert config.guardrails.mode == "balanced"
    assert config.guardrails.pii_handling == "deny"
    assert config.guardrails.max_qa_questions == 3
    assert coerce_document(PlatformConfig, "not a document") is None


def test_pricing_snapshot_normalization() -> None:
    disabled = PricingPolicySnapshot(ai_mode="fixed", pricing_enabled=False, pricing_model="per_unit").normalized()
    assert disabled == PricingPolicySnapshot(ai_mode="assessment_only", pricing_enabled=False, pricing_model=None)

    unknown = PricingPolicySnapshot(ai_mode="auction", pricing_enabled=True, pricing_model="barter").normalized()
    assert unknown.ai_mode == "range"
    assert unknown.pricing_model is None


def test_alias_document_rewrites_field_names() -> None:
    document = alias_document(
        PlatformConfig,
        {"models": {"estimator_model": "gpt-x"}, "prompts": {"renderStylePresets": {"my_style": "ink"}}},
    )
    assert document == {"models": {"estimatorModel": "gpt-x"}, "prompts": {"renderStylePresets": {"my_style": "ink"}}}


def test_alias_document_strict_and_lenient_unknown_keys() -> None:
    with pytest.raises(ValueError, match="guardrails.maxQaQuestion"):
        alias_document(PlatformConfig, {"guardrails": {"maxQaQuestion": 2}})
    assert alias_document(PlatformConfig, {"guardrails": {"maxQaQuestion": 2}}, strict=False) == {"guardrails": {}}

    # Industry prompts keep extra keys.
    pack = alias_document(IndustryPack, {"prompts": {"roofPitchHint": "steep"}})
    assert pack == {"prompts": {"roofPitchHint": "steep"}}
