from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so tests can run against sqlite.
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class PlatformConfigBlob(Base):
    __tablename__ = "platform_config_blobs"

    # One row per well-known key; writes overwrite in place.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Industry(Base):
    __tablename__ = "industries"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class IndustryLlmPack(Base):
    __tablename__ = "industry_llm_packs"

    # Canonical shape: a single pack document plus provenance metadata.
    industry_key: Mapped[str] = mapped_column(String, primary_key=True)
    pack: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[Any | None] = mapped_column(JSONDocument, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# Older deployments store models/prompts in separate columns behind an enabled flag.
legacy_metadata = MetaData()

legacy_industry_llm_packs = Table(
    "industry_llm_packs",
    legacy_metadata,
    Column("industry_key", String, primary_key=True),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("version", Integer, nullable=False, default=1),
    Column("pack", JSONDocument, nullable=False, default=dict),
    Column("models", JSONDocument, nullable=False, default=dict),
    Column("prompts", JSONDocument, nullable=False, default=dict),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Plan tier gates platform key usage (tier0 always, tier1/tier2 during grace).
    plan_tier: Mapped[str] = mapped_column(String, nullable=False, default="tier0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantSettings(Base):
    __tablename__ = "tenant_settings"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    industry_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    rendering_style: Mapped[str | None] = mapped_column(String, nullable=True)
    rendering_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Grace counters; the quote write path increments activation_grace_used.
    activation_grace_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    activation_grace_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantSecret(Base):
    __tablename__ = "tenant_secrets"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Encrypted tenant-owned provider key; only its presence matters here.
    openai_key_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantLlmOverride(Base):
    __tablename__ = "tenant_llm_overrides"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    overrides: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
