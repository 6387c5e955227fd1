"""create team configurations and quarantine jobs

Revision ID: 20261012_0004
Revises: 20261005_0003
Create Date: 2026-10-12 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261012_0004"
down_revision = "20261005_0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = set(inspector.get_table_names())

    if "team_configurations" not in tables:
        op.create_table(
            "team_configurations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "project_id",
                sa.Integer(),
                sa.ForeignKey("projects.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("settings", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", name="uq_team_configurations_project"),
        )
        op.create_index("ix_team_configurations_id", "team_configurations", ["id"], unique=False)

    if "quarantine_jobs" not in tables:
        op.create_table(
            "quarantine_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "project_id",
                sa.Integer(),
                sa.ForeignKey("projects.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("kind", sa.String(length=50), nullable=False),
            sa.Column("status", sa.String(length=20), server_default="pending", nullable=False),
            sa.Column(
                "requested_by",
                sa.Integer(),
                sa.ForeignKey("users.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("report", sa.JSON(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_quarantine_jobs_id", "quarantine_jobs", ["id"], unique=False)
        op.create_index("ix_quarantine_jobs_project_id", "quarantine_jobs", ["project_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_quarantine_jobs_project_id", table_name="quarantine_jobs")
    op.drop_index("ix_quarantine_jobs_id", table_name="quarantine_jobs")
    op.drop_table("quarantine_jobs")
    op.drop_index("ix_team_configurations_id", table_name="team_configurations")
    op.drop_table("team_configurations")
