# ruff: noqa: I001
"""Categorization engine core tables.

Revision ID: 0001_categorizer_core
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_categorizer_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.String(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("merchant_name", sa.Text(), nullable=True),
        sa.Column("mcc", sa.String(4), nullable=True),
        sa.Column("category_id", sa.String(36), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        _created_at("updated_at"),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_transactions_confidence",
        ),
    )
    op.create_index("ix_transactions_org_id", "transactions", ["org_id"])
    op.create_index("ix_transactions_org_created", "transactions", ["org_id", "created_at"])

    op.create_table(
        "decisions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tx_id",
            sa.String(36),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("category_id", sa.String(36), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("rationale", sa.JSON(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("decided_by", sa.String(), nullable=True),
        _created_at(),
        sa.CheckConstraint("source in ('pass1','llm','manual')", name="ck_decisions_source"),
        sa.CheckConstraint(
            "reason IS NULL OR reason in ('low_confidence','no_confidence')",
            name="ck_decisions_reason",
        ),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_decisions_confidence"),
    )
    op.create_index("ix_decisions_tx_id", "decisions", ["tx_id"])

    op.create_table(
        "corrections",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column(
            "tx_id",
            sa.String(36),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("old_category_id", sa.String(36), nullable=True),
        sa.Column("new_category_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_corrections_tx_id", "corrections", ["tx_id"])

    op.create_table(
        "rule_versions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("rule_identifier", sa.Text(), nullable=False),
        sa.Column("category_id", sa.String(36), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column(
            "parent_version_id",
            sa.String(36),
            sa.ForeignKey("rule_versions.id"),
            nullable=True,
        ),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_by", sa.String(), nullable=True),
        sa.Column("deactivation_reason", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "rule_type in ('mcc','vendor','keyword','embedding')", name="ck_rule_versions_type"
        ),
        sa.CheckConstraint(
            "source in ('system','learned','manual')", name="ck_rule_versions_source"
        ),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_rule_versions_confidence"
        ),
        sa.CheckConstraint("version >= 1", name="ck_rule_versions_version"),
        sa.UniqueConstraint(
            "org_id", "rule_type", "rule_identifier", "version", name="uq_rule_versions_key_version"
        ),
    )
    # Single active version per (org_id, rule_type, rule_identifier).
    op.create_index(
        "uq_rule_versions_active_key",
        "rule_versions",
        ["org_id", "rule_type", "rule_identifier"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    op.create_table(
        "canary_test_results",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column(
            "rule_version_id",
            sa.String(36),
            sa.ForeignKey("rule_versions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("test_date", sa.Date(), nullable=False),
        sa.Column("test_set_size", sa.Integer(), nullable=False),
        sa.Column("correct_count", sa.Integer(), nullable=False),
        sa.Column("incorrect_count", sa.Integer(), nullable=False),
        sa.Column("accuracy", sa.Float(), nullable=False),
        sa.Column("precision", sa.Float(), nullable=True),
        sa.Column("recall", sa.Float(), nullable=True),
        sa.Column("f1_score", sa.Float(), nullable=True),
        sa.Column("passed_threshold", sa.Boolean(), nullable=False),
        sa.Column("promoted_to_production", sa.Boolean(), nullable=False),
        sa.Column("test_metadata", sa.JSON(), nullable=False),
        _created_at(),
        sa.CheckConstraint("accuracy >= 0 AND accuracy <= 1", name="ck_canary_accuracy"),
        sa.CheckConstraint("test_set_size >= 0", name="ck_canary_test_set_size"),
    )
    op.create_index(
        "ix_canary_test_results_rule_version_id", "canary_test_results", ["rule_version_id"]
    )

    op.create_table(
        "rule_effectiveness",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column(
            "rule_version_id",
            sa.String(36),
            sa.ForeignKey("rule_versions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("measurement_date", sa.Date(), nullable=False),
        sa.Column("applications_count", sa.Integer(), nullable=False),
        sa.Column("correct_count", sa.Integer(), nullable=False),
        sa.Column("incorrect_count", sa.Integer(), nullable=False),
        sa.Column("avg_confidence", sa.Float(), nullable=True),
        sa.Column("precision", sa.Float(), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "org_id", "rule_version_id", "measurement_date", name="uq_rule_effectiveness_day"
        ),
        sa.CheckConstraint(
            "precision IS NULL OR (precision >= 0 AND precision <= 1)",
            name="ck_rule_effectiveness_precision",
        ),
    )

    op.create_table(
        "category_oscillations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column(
            "tx_id",
            sa.String(36),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("oscillation_sequence", sa.JSON(), nullable=False),
        sa.Column("oscillation_count", sa.Integer(), nullable=False),
        _created_at("first_detected_at"),
        _created_at("last_detected_at"),
        sa.Column("is_resolved", sa.Boolean(), nullable=False),
        sa.Column("resolution_category_id", sa.String(36), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.CheckConstraint("oscillation_count >= 0", name="ck_oscillations_count"),
    )
    op.create_index("ix_category_oscillations_tx_id", "category_oscillations", ["tx_id"])
    op.create_index(
        "ix_oscillations_org_resolved", "category_oscillations", ["org_id", "is_resolved"]
    )


def downgrade() -> None:
    op.drop_table("category_oscillations")
    op.drop_table("rule_effectiveness")
    op.drop_table("canary_test_results")
    op.drop_index("uq_rule_versions_active_key", table_name="rule_versions")
    op.drop_table("rule_versions")
    op.drop_table("corrections")
    op.drop_table("decisions")
    op.drop_index("ix_transactions_org_created", table_name="transactions")
    op.drop_index("ix_transactions_org_id", table_name="transactions")
    op.drop_table("transactions")
