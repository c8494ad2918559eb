from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, TypeVar, get_args

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from quotepolicy.domain.defaults import (
    DEFAULT_BLOCKED_TOPICS,
    DEFAULT_ESTIMATOR_MODEL,
    DEFAULT_EXTRA_SYSTEM_PREAMBLE,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_MAX_QA_QUESTIONS,
    DEFAULT_QA_MODEL,
    DEFAULT_QA_QUESTION_GENERATOR_SYSTEM,
    DEFAULT_QUOTE_ESTIMATOR_SYSTEM,
    DEFAULT_RENDER_MODEL,
    DEFAULT_RENDER_PROMPT_PREAMBLE,
    DEFAULT_RENDER_PROMPT_TEMPLATE,
    DEFAULT_RENDER_STYLE_PRESETS,
)


GuardrailMode = Literal["strict", "balanced", "permissive"]
PiiHandling = Literal["redact", "allow", "deny"]
ModelPreset = Literal["fast", "balanced", "quality"]
PromptLayer = Literal["platform", "industry", "tenant"]
ModelSource = Literal[
    "platform_default",
    "tenant_preset",
    "tenant_explicit",
    "tenant_rejected_not_allowed",
]
KeySource = Literal["tenant", "platform_grace", "none"]
SchemaGeneration = Literal["canonical", "legacy"]

MODEL_SOURCE_PLATFORM_DEFAULT = "platform_default"
MODEL_SOURCE_TENANT_PRESET = "tenant_preset"
MODEL_SOURCE_TENANT_EXPLICIT = "tenant_explicit"
MODEL_SOURCE_TENANT_REJECTED = "tenant_rejected_not_allowed"

KEY_SOURCE_TENANT = "tenant"
KEY_SOURCE_PLATFORM_GRACE = "platform_grace"
KEY_SOURCE_NONE = "none"

AI_MODES = ("assessment_only", "range", "fixed")
PRICING_MODELS = (
    "flat_per_job",
    "hourly_plus_materials",
    "per_unit",
    "packages",
    "line_items",
    "inspection_only",
    "assessment_fee",
)

MIN_QA_QUESTIONS = 1
MAX_QA_QUESTIONS = 10
MIN_OUTPUT_TOKENS = 100
MAX_OUTPUT_TOKENS = 4000

PROMPT_FIELDS = ("extra_system_preamble", "quote_estimator_system", "qa_question_generator_system")
MODEL_FIELDS = ("estimator_model", "qa_model", "render_model")
MODEL_PRESETS = ("fast", "balanced", "quality")

# Industry packs have stored render guidance under many spellings over time; first match wins.
INDUSTRY_RENDER_ADDENDUM_KEYS = (
    "renderSystemAddendum",
    "renderSystemAddon",
    "renderSystemAddOn",
    "renderAddendum",
    "renderAddon",
    "renderAddOn",
    "renderPromptAddendum",
    "renderPromptAddon",
    "render_system_addendum",
    "render_system_addon",
    "render_addendum",
    "render_addon",
    "render_prompt_addendum",
    "renderPromptTemplate",
)
INDUSTRY_RENDER_NEGATIVE_KEYS = (
    "renderNegativeGuidance",
    "renderNegative",
    "renderNegatives",
    "render_negative_guidance",
    "render_negative",
    "render_negatives",
    "rendering_negative_guidance",
    "renderingNegativeGuidance",
)

M = TypeVar("M", bound=BaseModel)


def clean_text(value: Any) -> str | None:
    # Blank means "inherit": collapse whitespace-only values to None at the parse boundary.
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def clamp_int(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class CamelModel(BaseModel):
    # Persisted documents keep camelCase keys; Python code uses snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ModelSet(CamelModel):
    estimator_model: str = DEFAULT_ESTIMATOR_MODEL
    qa_model: str = DEFAULT_QA_MODEL
    render_model: str = DEFAULT_RENDER_MODEL

    @field_validator("estimator_model", "qa_model", "render_model", mode="before")
    @classmethod
    def _fallback_to_builtin(cls, value: Any, info: ValidationInfo) -> str:
        # Model ids are never empty; unknown or blank values fall back to built-in literals.
        builtin = {
            "estimator_model": DEFAULT_ESTIMATOR_MODEL,
            "qa_model": DEFAULT_QA_MODEL,
            "render_model": DEFAULT_RENDER_MODEL,
        }[info.field_name]
        if not isinstance(value, str):
            return builtin
        return clean_text(value) or builtin


class PlatformPrompts(CamelModel):
    quote_estimator_system: str = DEFAULT_QUOTE_ESTIMATOR_SYSTEM
    qa_question_generator_system: str = DEFAULT_QA_QUESTION_GENERATOR_SYSTEM
    extra_system_preamble: str | None = DEFAULT_EXTRA_SYSTEM_PREAMBLE
    render_prompt_preamble: str | None = DEFAULT_RENDER_PROMPT_PREAMBLE
    render_prompt_template: str | None = DEFAULT_RENDER_PROMPT_TEMPLATE
    render_style_presets: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_RENDER_STYLE_PRESETS))

    @field_validator("quote_estimator_system", "qa_question_generator_system", mode="before")
    @classmethod
    def _required_prompt(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            if info.field_name == "quote_estimator_system":
                return DEFAULT_QUOTE_ESTIMATOR_SYSTEM
            return DEFAULT_QA_QUESTION_GENERATOR_SYSTEM
        return value.strip() if isinstance(value, str) else value

    @field_validator("extra_system_preamble", "render_prompt_preamble", "render_prompt_template", mode="before")
    @classmethod
    def _optional_prompt(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("render_style_presets", mode="after")
    @classmethod
    def _drop_blank_presets(cls, value: dict[str, str]) -> dict[str, str]:
        return {key.strip(): text.strip() for key, text in value.items() if key.strip() and text.strip()}


class GuardrailPolicy(CamelModel):
    mode: GuardrailMode = "balanced"
    pii_handling: PiiHandling = "redact"
    blocked_topics: list[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_TOPICS))
    max_qa_questions: int = DEFAULT_MAX_QA_QUESTIONS
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS

    @field_validator("blocked_topics", mode="after")
    @classmethod
    def _ordered_unique_topics(cls, value: list[str]) -> list[str]:
        # Ordered set semantics: first occurrence wins, blanks dropped.
        cleaned = [topic.strip() for topic in value if topic and topic.strip()]
        return list(dict.fromkeys(cleaned))

    @field_validator("max_qa_questions", mode="after")
    @classmethod
    def _clamp_questions(cls, value: int) -> int:
        return clamp_int(value, MIN_QA_QUESTIONS, MAX_QA_QUESTIONS)

    @field_validator("max_output_tokens", mode="after")
    @classmethod
    def _clamp_tokens(cls, value: int) -> int:
        return clamp_int(value, MIN_OUTPUT_TOKENS, MAX_OUTPUT_TOKENS)


class PlatformConfig(CamelModel):
    version: int = 1
    models: ModelSet = Field(default_factory=ModelSet)
    prompts: PlatformPrompts = Field(default_factory=PlatformPrompts)
    guardrails: GuardrailPolicy = Field(default_factory=GuardrailPolicy)
    updated_at: datetime | None = None

    @field_validator("version", mode="after")
    @classmethod
    def _positive_version(cls, value: int) -> int:
        return max(1, value)


class ModelOverrides(CamelModel):
    estimator_model: str | None = None
    qa_model: str | None = None
    render_model: str | None = None

    @field_validator("estimator_model", "qa_model", "render_model", mode="before")
    @classmethod
    def _blank_inherits(cls, value: Any) -> Any:
        return clean_text(value) if isinstance(value, str) else value

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in MODEL_FIELDS)


class IndustryPrompts(CamelModel):
    # Unknown keys are kept: older packs store render addenda under assorted names.
    model_config = ConfigDict(extra="allow")

    extra_system_preamble: str | None = None
    quote_estimator_system: str | None = None
    qa_question_generator_system: str | None = None

    @field_validator(*PROMPT_FIELDS, mode="before")
    @classmethod
    def _blank_inherits(cls, value: Any) -> Any:
        return clean_text(value) if isinstance(value, str) else value

    def first_extra_text(self, keys: tuple[str, ...]) -> str | None:
        extras = self.model_extra or {}
        for key in keys:
            value = extras.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def render_addendum(self) -> str | None:
        return self.first_extra_text(INDUSTRY_RENDER_ADDENDUM_KEYS)

    def render_negative_guidance(self) -> str | None:
        return self.first_extra_text(INDUSTRY_RENDER_NEGATIVE_KEYS)

    def is_empty(self) -> bool:
        if any(getattr(self, name) for name in PROMPT_FIELDS):
            return False
        return not any(clean_text(value) for value in (self.model_extra or {}).values() if isinstance(value, str))


class IndustryPack(CamelModel):
    models: ModelOverrides | None = None
    prompts: IndustryPrompts | None = None

    @field_validator("models", "prompts", mode="after")
    @classmethod
    def _empty_section_is_absent(cls, value: Any) -> Any:
        if value is not None and value.is_empty():
            return None
        return value

    def is_empty(self) -> bool:
        return self.models is None and self.prompts is None


class TenantPrompts(CamelModel):
    extra_system_preamble: str | None = None
    quote_estimator_system: str | None = None
    qa_question_generator_system: str | None = None

    @field_validator(*PROMPT_FIELDS, mode="before")
    @classmethod
    def _blank_inherits(cls, value: Any) -> Any:
        return clean_text(value) if isinstance(value, str) else value

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in PROMPT_FIELDS)


class RenderingPolicy(CamelModel):
    prompt_addendum: str | None = None
    negative_guidance: str | None = None
    style: str | None = None
    enabled: bool | None = None

    @field_validator("prompt_addendum", "negative_guidance", "style", mode="before")
    @classmethod
    def _blank_inherits(cls, value: Any) -> Any:
        return clean_text(value) if isinstance(value, str) else value

    def is_empty(self) -> bool:
        return not (self.prompt_addendum or self.negative_guidance or self.style) and self.enabled is None


@dataclass(frozen=True)
class ModelChoice:
    kind: Literal["preset", "explicit", "none"]
    value: str | None = None


def parse_model_choice(raw: Any) -> ModelChoice:
    # Accepts "fast" | "balanced" | "quality", "model:<id>", or a bare "gpt-*" id.
    text = clean_text(raw)
    if text is None:
        return ModelChoice("none")
    lowered = text.lower()
    if lowered in MODEL_PRESETS:
        return ModelChoice("preset", lowered)
    if lowered.startswith("model:"):
        model = clean_text(text[len("model:"):])
        return ModelChoice("explicit", model) if model else ModelChoice("none")
    if lowered.startswith("gpt-"):
        return ModelChoice("explicit", text)
    return ModelChoice("none")


class TenantOverrides(CamelModel):
    models: ModelOverrides | None = None
    model_preset: ModelPreset | None = None
    prompts: TenantPrompts | None = None
    max_qa_questions: int | None = None
    rendering_policy: RenderingPolicy | None = None
    updated_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_free_text_model_choice(cls, data: Any) -> Any:
        # Older settings stored a single free-text choice; split it into preset or explicit models here.
        if not isinstance(data, dict):
            return data
        raw = data.get("aiMode", data.get("ai_mode"))
        if raw is None:
            return data
        data = {key: value for key, value in data.items() if key not in ("aiMode", "ai_mode")}
        choice = parse_model_choice(raw)
        if choice.kind == "preset" and not data.get("modelPreset") and not data.get("model_preset"):
            data["modelPreset"] = choice.value
        elif choice.kind == "explicit" and not data.get("models"):
            data["models"] = {"estimatorModel": choice.value, "qaModel": choice.value}
        return data

    @field_validator("model_preset", mode="before")
    @classmethod
    def _normalize_preset(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = value.strip().lower()
            return cleaned or None
        return value

    @field_validator("max_qa_questions", mode="after")
    @classmethod
    def _clamp_questions(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return clamp_int(value, MIN_QA_QUESTIONS, MAX_QA_QUESTIONS)

    @field_validator("models", "prompts", "rendering_policy", mode="after")
    @classmethod
    def _empty_section_is_absent(cls, value: Any) -> Any:
        if value is not None and value.is_empty():
            return None
        return value

    def is_empty(self) -> bool:
        return (
            self.models is None
            and self.model_preset is None
            and self.prompts is None
            and self.max_qa_questions is None
            and self.rendering_policy is None
        )


class EffectivePrompts(CamelModel):
    extra_system_preamble: str = ""
    quote_estimator_system: str
    qa_question_generator_system: str
    render_prompt_preamble: str = ""
    render_prompt_template: str = ""
    render_style_presets: dict[str, str] = Field(default_factory=dict)


class EffectiveRendering(CamelModel):
    enabled: bool | None = None
    style: str | None = None
    platform_preamble: str = ""
    platform_template: str = ""
    industry_addendum: str = ""
    industry_negative_guidance: str = ""
    tenant_addendum: str = ""
    tenant_negative_guidance: str = ""


class EffectiveConfig(CamelModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    industry_key: str | None = None
    models: ModelSet
    prompts: EffectivePrompts
    prompt_sources: dict[str, PromptLayer]
    guardrails: GuardrailPolicy
    model_source: ModelSource = MODEL_SOURCE_PLATFORM_DEFAULT
    rendering: EffectiveRendering = Field(default_factory=EffectiveRendering)
    platform_version: int = 1
    industry_version: int | None = None
    tenant_overrides_updated_at: datetime | None = None


@dataclass(frozen=True)
class IndustryPackMeta:
    industry_key: str
    version: int
    updated_at: datetime | None
    schema_generation: SchemaGeneration
    created_at: datetime | None = None
    updated_by: str | None = None
    source: Any = None


@dataclass(frozen=True)
class KeyPolicyStatus:
    tenant_id: str
    plan_tier: str
    activation_grace_credits: int
    activation_grace_used: int
    grace_remaining: bool
    has_tenant_key: bool
    has_platform_key: bool
    platform_allowed: bool
    effective_key_source_now: KeySource
    would_consume_grace_on_new_quote: bool
    platform_key_env_name: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class PricingPolicySnapshot:
    ai_mode: str = "assessment_only"
    pricing_enabled: bool = False
    pricing_model: str | None = None

    def normalized(self) -> PricingPolicySnapshot:
        # Disabled pricing always means assessment-only; unknown modes read as a range.
        if not self.pricing_enabled:
            return PricingPolicySnapshot(ai_mode="assessment_only", pricing_enabled=False, pricing_model=None)
        ai_mode = self.ai_mode if self.ai_mode in AI_MODES else "range"
        pricing_model = self.pricing_model if self.pricing_model in PRICING_MODELS else None
        return PricingPolicySnapshot(ai_mode=ai_mode, pricing_enabled=True, pricing_model=pricing_model)


@dataclass(frozen=True)
class TenantPromptContext:
    style_key: str | None = None
    render_notes: str | None = None


@dataclass(frozen=True)
class RenderRequest:
    style_key: str | None = None
    service_type: str | None = None
    summary: str | None = None
    customer_notes: str | None = None
    tenant_render_notes: str | None = None


def merge_documents(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    # Recursive merge where the override wins on every leaf; lists are leaves.
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_documents(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _drop_path(data: Any, loc: tuple[Any, ...]) -> bool:
    if not loc:
        return False
    target = data
    for part in loc[:-1]:
        if isinstance(target, dict) and part in target:
            target = target[part]
        elif isinstance(target, list) and isinstance(part, int) and 0 <= part < len(target):
            target = target[part]
        else:
            return False
    last = loc[-1]
    if isinstance(target, dict) and last in target:
        del target[last]
        return True
    if isinstance(target, list) and isinstance(last, int) and 0 <= last < len(target):
        del target[last]
        return True
    return False


def coerce_document(model_cls: type[M], raw: Any, *, max_passes: int = 16) -> M | None:
    # Stored documents are read leniently: invalid leaves are dropped so defaults apply.
    if not isinstance(raw, dict):
        return None
    data = copy.deepcopy(raw)
    for _ in range(max_passes):
        try:
            return model_cls.model_validate(data)
        except ValidationError as exc:
            # One leaf per pass; list indices shift after a removal.
            removed = any(_drop_path(data, tuple(error["loc"])) for error in exc.errors())
            if not removed:
                return None
    return None


def first_validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg") or "invalid value")
    return f"{loc}: {message}" if loc else message


def _nested_model(annotation: Any) -> type[BaseModel] | None:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    for arg in get_args(annotation):
        if isinstance(arg, type) and issubclass(arg, BaseModel):
            return arg
    return None


def alias_document(
    model_cls: type[BaseModel],
    raw: dict[str, Any],
    *,
    strict: bool = True,
    passthrough: tuple[str, ...] = (),
    _loc: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Rewrite a document to the persisted camelCase keys before it is merged.

    Field names and aliases are both accepted. Unknown keys raise ``ValueError``
    in strict mode and are dropped otherwise; models that keep extras and keys
    listed in ``passthrough`` are copied as-is.
    """
    lookup: dict[str, tuple[str, Any]] = {}
    for name, field in model_cls.model_fields.items():
        alias = field.alias or name
        lookup[name] = (alias, field)
        lookup[alias] = (alias, field)
    keeps_extra = model_cls.model_config.get("extra") == "allow"

    aliased: dict[str, Any] = {}
    for key, value in raw.items():
        entry = lookup.get(key)
        if entry is None:
            if keeps_extra or key in passthrough:
                aliased[key] = value
            elif strict:
                raise ValueError(f"{'.'.join((*_loc, str(key)))}: unknown field")
            continue
        alias, field = entry
        nested = _nested_model(field.annotation)
        if nested is not None and isinstance(value, dict):
            value = alias_document(nested, value, strict=strict, _loc=(*_loc, alias))
        aliased[alias] = value
    return aliased
