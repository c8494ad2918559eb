from __future__ import annotations

import argparse
import asyncio
import json
import logging

from quotepolicy.core.config import get_settings
from quotepolicy.domain.policy import PricingPolicySnapshot, RenderRequest
from quotepolicy.services.engine import PolicyEngine
from quotepolicy.services.prompt_composer import build_render_layers, compose_estimator_prompt, compose_qa_prompt


async def _show(args: argparse.Namespace) -> int:
    # Operator view of what a tenant's next quote would run with.
    engine = PolicyEngine()
    tenant_id = args.tenant_id
    if args.industry_key:
        effective = await engine.resolve_effective_config(tenant_id, args.industry_key)
    else:
        effective = await engine.resolve_for_tenant(tenant_id)
    status = await engine.get_key_policy_status(tenant_id)

    print(f"tenant_id={effective.tenant_id}")
    print(f"industry_key={effective.industry_key or '-'}")
    print(f"platform_version={effective.platform_version}")
    print(f"industry_version={effective.industry_version if effective.industry_version is not None else '-'}")
    print(f"model_source={effective.model_source}")
    print(f"estimator_model={effective.models.estimator_model}")
    print(f"qa_model={effective.models.qa_model}")
    print(f"render_model={effective.models.render_model}")
    for field, layer in sorted(effective.prompt_sources.items()):
        print(f"prompt_source.{field}={layer}")
    print(f"max_qa_questions={effective.guardrails.max_qa_questions}")
    print(f"key_source={status.effective_key_source_now}")
    print(f"would_consume_grace={str(status.would_consume_grace_on_new_quote).lower()}")
    print(f"key_reason={status.reason}")
    if not args.prompts:
        return 0

    context = await engine.load_tenant_prompt_context(tenant_id)
    pricing = PricingPolicySnapshot(
        ai_mode=args.ai_mode,
        pricing_enabled=args.ai_mode != "assessment_only",
        pricing_model=args.pricing_model,
    )
    output = {
        "estimator": compose_estimator_prompt(effective, context, effective.industry_key, pricing),
        "qa": compose_qa_prompt(effective, context, effective.industry_key, pricing),
        "render": build_render_layers(
            effective,
            RenderRequest(style_key=context.style_key, tenant_render_notes=context.render_notes),
        ).compiled,
    }
    print(json.dumps(output, indent=2))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Show the resolved AI policy for a tenant")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--industry-key", default=None)
    parser.add_argument("--ai-mode", default="range", choices=["assessment_only", "range", "fixed"])
    parser.add_argument("--pricing-model", default=None)
    parser.add_argument("--prompts", action="store_true", help="Also print the compiled prompts")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(level=get_settings().log_level)
    return asyncio.run(_show(args))


if __name__ == "__main__":
    raise SystemExit(main())
