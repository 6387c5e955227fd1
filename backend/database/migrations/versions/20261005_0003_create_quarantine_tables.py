"""create quarantine policies, ledger and impact tables

Revision ID: 20261005_0003
Revises: 20261005_0002
Create Date: 2026-10-05 00:20:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261005_0003"
down_revision = "20261005_0002"
branch_labels = None
depends_on = None


def _project_fk():
    return sa.Column(
        "project_id",
        sa.Integer(),
        sa.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )


def _pattern_fk():
    return sa.Column(
        "pattern_id",
        sa.Integer(),
        sa.ForeignKey("flaky_test_patterns.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = set(inspector.get_table_names())

    if "quarantine_policies" not in tables:
        op.create_table(
            "quarantine_policies",
            sa.Column("id", sa.Integer(), nullable=False),
            _project_fk(),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), server_default=sa.false(), nullable=False),
            sa.Column("config", sa.JSON(), nullable=False),
            sa.Column(
                "created_by",
                sa.Integer(),
                sa.ForeignKey("users.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_quarantine_policies_id", "quarantine_policies", ["id"], unique=False)
        op.create_index(
            "ix_quarantine_policies_project_active",
            "quarantine_policies",
            ["project_id", "is_active"],
            unique=False,
        )

    if "quarantine_history" not in tables:
        op.create_table(
            "quarantine_history",
            sa.Column("id", sa.Integer(), nullable=False),
            _project_fk(),
            _pattern_fk(),
            sa.Column(
                "policy_id",
                sa.Integer(),
                sa.ForeignKey("quarantine_policies.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("triggered_by", sa.String(length=64), server_default="auto", nullable=False),
            sa.Column("failure_rate", sa.Float(), nullable=True),
            sa.Column("confidence", sa.Float(), nullable=True),
            sa.Column("consecutive_failures", sa.Integer(), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_quarantine_history_id", "quarantine_history", ["id"], unique=False)
        op.create_index(
            "ix_quarantine_history_pattern_id", "quarantine_history", ["pattern_id", "id"], unique=False
        )
        op.create_index("ix_quarantine_history_project_id", "quarantine_history", ["project_id"], unique=False)

    if "quarantine_impacts" not in tables:
        op.create_table(
            "quarantine_impacts",
            sa.Column("id", sa.Integer(), nullable=False),
            _project_fk(),
            _pattern_fk(),
            sa.Column("builds_blocked", sa.Integer(), server_default="0", nullable=False),
            sa.Column("ci_time_wasted", sa.Float(), server_default="0", nullable=False),
            sa.Column("developer_hours", sa.Float(), server_default="0", nullable=False),
            sa.Column("false_positives", sa.Integer(), server_default="0", nullable=False),
            sa.Column("quarantine_period", sa.Float(), server_default="0", nullable=False),
            sa.Column("auto_unquarantined", sa.Boolean(), server_default=sa.false(), nullable=False),
            sa.Column("manual_intervention", sa.Boolean(), server_default=sa.false(), nullable=False),
            sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
            sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_quarantine_impacts_id", "quarantine_impacts", ["id"], unique=False)
        op.create_index("ix_quarantine_impacts_pattern_id", "quarantine_impacts", ["pattern_id"], unique=False)
        op.create_index("ix_quarantine_impacts_project_id", "quarantine_impacts", ["project_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_quarantine_impacts_project_id", table_name="quarantine_impacts")
    op.drop_index("ix_quarantine_impacts_pattern_id", table_name="quarantine_impacts")
    op.drop_index("ix_quarantine_impacts_id", table_name="quarantine_impacts")
    op.drop_table("quarantine_impacts")
    op.drop_index("ix_quarantine_history_project_id", table_name="quarantine_history")
    op.drop_index("ix_quarantine_history_pattern_id", table_name="quarantine_history")
    op.drop_index("ix_quarantine_history_id", table_name="quarantine_history")
    op.drop_table("quarantine_history")
    op.drop_index("ix_quarantine_policies_project_active", table_name="quarantine_policies")
    op.drop_index("ix_quarantine_policies_id", table_name="quarantine_policies")
    op.drop_table("quarantine_policies")
