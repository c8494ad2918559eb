from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from quotepolicy.core.config import get_settings
from quotepolicy.core.errors import PolicyError
from quotepolicy.services.engine import PolicyEngine


def starter_pack(industry_key: str) -> dict[str, Any]:
    # Minimal specialization so every known industry has a pack row to edit later.
    label = industry_key.replace("_", " ").replace("-", " ")
    return {
        "prompts": {
            "extraSystemPreamble": (
                f"This business works in {label}. Use the terminology, materials and cost drivers "
                "typical for that trade when describing scope and assumptions."
            ),
        },
    }


def _load_template(path: str | None) -> dict[str, Any] | None:
    if not path:
        return None
    document = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        raise SystemExit("pack file must contain a JSON object")
    return document


async def _backfill(args: argparse.Namespace) -> int:
    # Create packs for industries that tenants or the catalog reference but nobody configured.
    engine = PolicyEngine()
    template = _load_template(args.pack_file)
    missing = await engine.list_industries_missing_pack(args.limit)
    print(f"missing_packs={len(missing)}")
    created = 0
    failed = 0
    for industry_key in missing:
        if args.dry_run:
            print(f"would_create={industry_key}")
            continue
        try:
            meta = await engine.upsert_industry_pack(
                industry_key,
                template or starter_pack(industry_key),
                updated_by=args.updated_by,
                source={"kind": "backfill", "template": args.pack_file or "starter"},
            )
        except PolicyError as exc:
            failed += 1
            print(f"failed={industry_key} code={exc.code} message={exc.message}")
            continue
        created += 1
        print(f"created={meta.industry_key} version={meta.version} generation={meta.schema_generation}")
    print(f"created_packs={created}")
    print(f"failed_packs={failed}")
    return 1 if failed else 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill industry LLM packs for industries without one")
    parser.add_argument("--limit", type=int, default=500)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--pack-file", default=None, help="JSON pack applied to every missing industry")
    parser.add_argument("--updated-by", default="backfill_industry_packs")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(level=get_settings().log_level)
    return asyncio.run(_backfill(args))


if __name__ == "__main__":
    raise SystemExit(main())
