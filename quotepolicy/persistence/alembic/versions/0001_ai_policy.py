"""add ai policy tables

Revision ID: 0001_ai_policy
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_ai_policy"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Platform-wide AI policy lives in one JSON document per well-known key.
    op.create_table(
        "platform_config_blobs",
        sa.Column("key", sa.String(), primary_key=True, nullable=False),
        sa.Column("document", postgresql.JSONB(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "industries",
        sa.Column("key", sa.String(), primary_key=True, nullable=False),
        sa.Column("label", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Canonical pack shape; legacy deployments keep models/prompts/enabled columns instead.
    op.create_table(
        "industry_llm_packs",
        sa.Column("industry_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("pack", postgresql.JSONB(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("source", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("plan_tier", sa.String(), nullable=False, server_default="tier0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "tenant_settings",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("industry_key", sa.String(), nullable=True),
        sa.Column("rendering_style", sa.String(), nullable=True),
        sa.Column("rendering_notes", sa.Text(), nullable=True),
        sa.Column("activation_grace_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("activation_grace_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_tenant_settings_industry_key", "tenant_settings", ["industry_key"], unique=False)
    op.create_table(
        "tenant_secrets",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("openai_key_enc", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "tenant_llm_overrides",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("overrides", postgresql.JSONB(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("tenant_llm_overrides")
    op.drop_table("tenant_secrets")
    op.drop_index("ix_tenant_settings_industry_key", table_name="tenant_settings")
    op.drop_table("tenant_settings")
    op.drop_table("tenants")
    op.drop_table("industry_llm_packs")
    op.drop_table("industries")
    op.drop_table("platform_config_blobs")
