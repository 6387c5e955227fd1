"""create flaky test patterns and test results

Revision ID: 20261005_0002
Revises: 20261005_0001
Create Date: 2026-10-05 00:10:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261005_0002"
down_revision = "20261005_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = set(inspector.get_table_names())

    if "flaky_test_patterns" not in tables:
        op.create_table(
            "flaky_test_patterns",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "project_id",
                sa.Integer(),
                sa.ForeignKey("projects.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("test_name", sa.String(length=1024), nullable=False),
            sa.Column("test_suite", sa.String(length=1024), server_default="", nullable=False),
            sa.Column("total_runs", sa.Integer(), server_default="0", nullable=False),
            sa.Column("failed_runs", sa.Integer(), server_default="0", nullable=False),
            sa.Column("consecutive_failures", sa.Integer(), server_default="0", nullable=False),
            sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_quarantined", sa.Boolean(), server_default=sa.false(), nullable=False),
            sa.Column("quarantined_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("quarantined_by", sa.String(length=64), nullable=True),
            sa.Column("quarantine_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "project_id", "test_name", "test_suite", name="uq_flaky_test_patterns_identity"
            ),
        )
        op.create_index("ix_flaky_test_patterns_id", "flaky_test_patterns", ["id"], unique=False)
        op.create_index("ix_flaky_test_patterns_project_id", "flaky_test_patterns", ["project_id"], unique=False)
        op.create_index(
            "ix_flaky_test_patterns_quarantined",
            "flaky_test_patterns",
            ["project_id", "is_quarantined"],
            unique=False,
        )

    if "test_results" not in tables:
        op.create_table(
            "test_results",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "project_id",
                sa.Integer(),
                sa.ForeignKey("projects.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column(
                "pattern_id",
                sa.Integer(),
                sa.ForeignKey("flaky_test_patterns.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("build_id", sa.String(length=255), nullable=False),
            sa.Column("commit_hash", sa.String(length=64), nullable=False),
            sa.Column("branch", sa.String(length=255), nullable=False),
            sa.Column("ci_provider", sa.String(length=50), server_default="other", nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("duration_ms", sa.Float(), server_default="0", nullable=False),
            sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_results_id", "test_results", ["id"], unique=False)
        op.create_index("ix_test_results_project_id", "test_results", ["project_id"], unique=False)
        op.create_index(
            "ix_test_results_pattern_created", "test_results", ["pattern_id", "created_at"], unique=False
        )


def downgrade() -> None:
    op.drop_index("ix_test_results_pattern_created", table_name="test_results")
    op.drop_index("ix_test_results_project_id", table_name="test_results")
    op.drop_index("ix_test_results_id", table_name="test_results")
    op.drop_table("test_results")
    op.drop_index("ix_flaky_test_patterns_quarantined", table_name="flaky_test_patterns")
    op.drop_index("ix_flaky_test_patterns_project_id", table_name="flaky_test_patterns")
    op.drop_index("ix_flaky_test_patterns_id", table_name="flaky_test_patterns")
    op.drop_table("flaky_test_patterns")
