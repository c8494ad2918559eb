from __future__ import annotations

from typing import Any


DEFAULT_ESTIMATOR_MODEL = "gpt-4o-mini"
DEFAULT_QA_MODEL = "gpt-4o-mini"
DEFAULT_RENDER_MODEL = "gpt-image-1"

DEFAULT_EXTRA_SYSTEM_PREAMBLE = "\n".join(
    [
        "You are producing an estimate for legitimate service work.",
        "Do not provide instructions for wrongdoing or unsafe activity.",
        "Do not request or expose sensitive personal data beyond what is needed for the quote.",
        "If the submission is ambiguous, ask clarifying questions instead of guessing.",
    ]
)

DEFAULT_QUOTE_ESTIMATOR_SYSTEM = "\n".join(
    [
        "You are an expert estimator for service work based on photos and customer notes.",
        "Be conservative: return a realistic RANGE, not a single number.",
        "If photos are insufficient or ambiguous, set confidence low and inspection_required true.",
        "Do not invent brand/model/year. Ask questions instead.",
        "Return ONLY valid JSON matching the provided schema.",
    ]
)

DEFAULT_QA_QUESTION_GENERATOR_SYSTEM = "\n".join(
    [
        "You generate short, practical clarification questions for a service quote based on photos and notes.",
        "Ask only what is necessary to estimate accurately.",
        "Keep each question to one sentence.",
        "Prefer measurable details (dimensions, quantity, material, access, location).",
        "Avoid questions the photo obviously answers.",
        "Return ONLY valid JSON: { questions: string[] }",
    ]
)

DEFAULT_RENDER_PROMPT_PREAMBLE = "\n".join(
    [
        "You are generating a safe, non-violent, non-sexual concept render for legitimate service work.",
        "Do NOT add text, watermarks, logos, brand marks, or UI overlays.",
        "No nudity, no explicit content, no weapons, no illegal activity.",
    ]
)

DEFAULT_RENDER_PROMPT_TEMPLATE = "\n".join(
    [
        "{renderPromptPreamble}",
        "Generate a realistic 'after' concept rendering based on the customer's photos.",
        "Do NOT add text or watermarks.",
        "Style: {style}",
        "{serviceTypeLine}",
        "{summaryLine}",
        "{customerNotesLine}",
        "{tenantRenderNotesLine}",
    ]
)

DEFAULT_RENDER_STYLE_KEY = "photoreal"

DEFAULT_RENDER_STYLE_PRESETS = {
    "photoreal": "photorealistic, clean lighting, product photography feel",
    "clean_oem": "clean OEM refresh, factory-correct look, neutral lighting, product photo feel",
    "custom": "custom show-style upgrade, premium materials, dramatic but tasteful lighting",
}

DEFAULT_BLOCKED_TOPICS = [
    "credit card",
    "social security",
    "ssn",
    "password",
    "explosive",
    "bomb",
    "weapon",
]

DEFAULT_MAX_QA_QUESTIONS = 3
DEFAULT_MAX_OUTPUT_TOKENS = 1200


def default_platform_document() -> dict[str, Any]:
    # Fresh copy each call; callers merge into it.
    return {
        "version": 1,
        "models": {
            "estimatorModel": DEFAULT_ESTIMATOR_MODEL,
            "qaModel": DEFAULT_QA_MODEL,
            "renderModel": DEFAULT_RENDER_MODEL,
        },
        "prompts": {
            "extraSystemPreamble": DEFAULT_EXTRA_SYSTEM_PREAMBLE,
            "quoteEstimatorSystem": DEFAULT_QUOTE_ESTIMATOR_SYSTEM,
            "qaQuestionGeneratorSystem": DEFAULT_QA_QUESTION_GENERATOR_SYSTEM,
            "renderPromptPreamble": DEFAULT_RENDER_PROMPT_PREAMBLE,
            "renderPromptTemplate": DEFAULT_RENDER_PROMPT_TEMPLATE,
            "renderStylePresets": dict(DEFAULT_RENDER_STYLE_PRESETS),
        },
        "guardrails": {
            "mode": "balanced",
            "piiHandling": "redact",
            "blockedTopics": list(DEFAULT_BLOCKED_TOPICS),
            "maxQaQuestions": DEFAULT_MAX_QA_QUESTIONS,
            "maxOutputTokens": DEFAULT_MAX_OUTPUT_TOKENS,
        },
    }
