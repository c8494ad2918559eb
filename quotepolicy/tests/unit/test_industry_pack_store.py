from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError

from quotepolicy.core.errors import IndustryKeyRequiredError, IndustryPackEmptyError
from quotepolicy.domain.models import Industry, IndustryLlmPack, TenantSettings, legacy_industry_llm_packs
from quotepolicy.persistence.repos.industry_packs import IndustryPackStore, is_undefined_column_error


FIXED_NOW = datetime(2026, 4, 2, 8, 0, tzinfo=timezone.utc)

SAMPLE_PACK = {
    "models": {"estimatorModel": "gpt-4o"},
    "prompts": {
        "extraSystemPreamble": "You specialize in residential roofing.",
        "quoteEstimatorSystem": "Estimate shingle and flashing work conservatively.",
        "renderAddendum": "Show clean ridge lines.",
    },
}


def _store(session_factory, settings, **kwargs) -> IndustryPackStore:
    return IndustryPackStore(session_factory, settings=settings, time_provider=lambda: FIXED_NOW, **kwargs)


class _SqlStateError(Exception):
    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def test_undefined_column_detection_prefers_sqlstate() -> None:
    undefined = ProgrammingError("SELECT", {}, _SqlStateError("boom", "42703"))
    other_code = ProgrammingError("SELECT", {}, _SqlStateError('column "x" does not exist', "42P01"))
    sqlite_style = OperationalError("SELECT", {}, Exception("no such column: industry_llm_packs.updated_by"))
    unrelated = OperationalError("SELECT", {}, Exception("database is locked"))

    assert is_undefined_column_error(undefined)
    assert not is_undefined_column_error(other_code)
    assert is_undefined_column_error(sqlite_style)
    assert not is_undefined_column_error(unrelated)


@pytest.mark.asyncio
async def test_canonical_round_trip(session_factory, settings) -> None:
    store = _store(session_factory, settings)
    meta = await store.upsert(" Roofing ", SAMPLE_PACK, updated_by="ops@example.com", source={"kind": "manual"})

    assert meta.industry_key == "roofing"
    assert meta.version == 1
    assert meta.schema_generation == "canonical"

    pack, read_meta = await store.get_with_meta("ROOFING")
    assert pack is not None
    assert pack.models is not None and pack.models.estimator_model == "gpt-4o"
    assert pack.prompts is not None
    assert pack.prompts.quote_estimator_system == "Estimate shingle and flashing work conservatively."
    assert pack.prompts.render_addendum() == "Show clean ridge lines."
    assert read_meta is not None
    assert read_meta.updated_by == "ops@example.com"
    assert read_meta.source == {"kind": "manual"}


@pytest.mark.asyncio
async def test_upsert_strips_guardrails(session_factory, settings) -> None:
    store = _store(session_factory, settings)
    await store.upsert(
        "roofing",
        {**SAMPLE_PACK, "guardrails": {"blockedTopics": []}, "notes": "internal"},
    )

    async with session_factory() as session:
        stored = (
            await session.execute(select(IndustryLlmPack.pack).where(IndustryLlmPack.industry_key == "roofing"))
        ).scalar_one()
    assert "guardrails" not in stored
    assert "notes" not in stored

    pack = await store.get("roofing")
    assert pack is not None
    assert "guardrails" not in pack.to_document()


@pytest.mark.asyncio
async def test_upsert_rejects_empty_pack(session_factory, settings) -> None:
    store = _store(session_factory, settings)
    with pytest.raises(IndustryPackEmptyError) as exc_info:
        await store.upsert("roofing", {"guardrails": {"mode": "permissive"}, "models": {"qaModel": " "}})
    assert exc_info.value.code == "INDUSTRY_PACK_EMPTY"
    assert await store.get("roofing") is None


@pytest.mark.asyncio
async def test_upsert_requires_industry_key(session_factory, settings) -> None:
    with pytest.raises(IndustryKeyRequiredError) as exc_info:
        await _store(session_factory, settings).upsert("   ", SAMPLE_PACK)
    assert exc_info.value.code == "INDUSTRY_KEY_REQUIRED"


@pytest.mark.asyncio
async def test_empty_key_reads_without_query(broken_session_factory, settings) -> None:
    store = _store(broken_session_factory, settings)
    assert await store.get("") is None
    assert await store.get_with_meta(None) == (None, None)


@pytest.mark.asyncio
async def test_read_failure_degrades_to_absent(broken_session_factory, settings) -> None:
    assert await _store(broken_session_factory, settings).get("roofing") is None


@pytest.mark.asyncio
async def test_version_bumps_on_change_and_holds_on_retry(session_factory, settings) -> None:
    store = _store(session_factory, settings)
    first = await store.upsert("roofing", SAMPLE_PACK)
    retry = await store.upsert("roofing", SAMPLE_PACK)
    changed = await store.upsert("roofing", {"prompts": {"quoteEstimatorSystem": "New wording."}})
    explicit = await store.upsert("roofing", {"prompts": {"quoteEstimatorSystem": "New wording."}}, version=10)

    assert (first.version, retry.version, changed.version, explicit.version) == (1, 1, 2, 10)


@pytest.mark.asyncio
async def test_legacy_schema_round_trip_matches_canonical(
    session_factory, legacy_session_factory, settings
) -> None:
    canonical = _store(session_factory, settings)
    legacy = _store(legacy_session_factory, settings)

    await canonical.upsert("roofing", {**SAMPLE_PACK, "guardrails": {"mode": "permissive"}})
    legacy_meta = await legacy.upsert("roofing", {**SAMPLE_PACK, "guardrails": {"mode": "permissive"}})

    assert legacy_meta.schema_generation == "legacy"
    assert await legacy.schema_generation() == "legacy"
    canonical_pack = await canonical.get("roofing")
    legacy_pack = await legacy.get("roofing")
    assert canonical_pack is not None
    assert legacy_pack == canonical_pack

    async with legacy_session_factory() as session:
        row = (
            await session.execute(
                select(legacy_industry_llm_packs).where(legacy_industry_llm_packs.c.industry_key == "roofing")
            )
        ).mappings().one()
    assert row["enabled"] is True
    assert row["models"] == {"estimatorModel": "gpt-4o"}
    assert "guardrails" not in row["pack"]


@pytest.mark.asyncio
async def test_canonical_failure_flips_to_legacy_and_retries(legacy_session_factory, settings) -> None:
    # Pretend the schema check saw the canonical shape; the first write must still land in the legacy table.
    store = _store(legacy_session_factory, settings, schema_generation="canonical")
    meta = await store.upsert("roofing", SAMPLE_PACK)
    assert meta.schema_generation == "legacy"
    assert await store.schema_generation() == "legacy"
    assert await store.get("roofing") is not None


@pytest.mark.asyncio
async def test_legacy_reads_skip_disabled_rows(legacy_session_factory, settings) -> None:
    async with legacy_session_factory() as session:
        await session.execute(
            legacy_industry_llm_packs.insert().values(
                industry_key="painting",
                enabled=False,
                version=3,
                pack={},
                models={"qaModel": "gpt-4o"},
                prompts={},
            )
        )
        await session.commit()
    assert await _store(legacy_session_factory, settings).get("painting") is None


@pytest.mark.asyncio
async def test_legacy_split_columns_fill_missing_pack_sections(legacy_session_factory, settings) -> None:
    async with legacy_session_factory() as session:
        await session.execute(
            legacy_industry_llm_packs.insert().values(
                industry_key="painting",
                enabled=True,
                version=2,
                pack={"prompts": {"extraSystemPreamble": "Interior and exterior painting."}},
                models={"qaModel": "gpt-4o"},
                prompts={},
            )
        )
        await session.commit()

    pack, meta = await _store(legacy_session_factory, settings).get_with_meta("painting")
    assert pack is not None
    assert pack.models is not None and pack.models.qa_model == "gpt-4o"
    assert pack.prompts is not None and pack.prompts.extra_system_preamble == "Interior and exterior painting."
    assert meta is not None and meta.version == 2


@pytest.mark.asyncio
async def test_list_keys_missing_pack(session_factory, settings) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                Industry(key="roofing"),
                Industry(key="auto_detailing"),
                TenantSettings(tenant_id="t1", industry_key="Landscaping"),
                TenantSettings(tenant_id="t2", industry_key="roofing"),
                TenantSettings(tenant_id="t3", industry_key=None),
            ]
        )
        await session.commit()

    store = _store(session_factory, settings)
    await store.upsert("roofing", SAMPLE_PACK)

    assert await store.list_keys_missing_pack() == ["auto_detailing", "landscaping"]
    assert await store.list_keys_missing_pack(limit=1) == ["auto_detailing"]
    assert await store.list_keys_missing_pack(limit=0) == ["auto_detailing", "landscaping"]
