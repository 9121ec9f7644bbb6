"""initial schema for live sessions and durable leaderboards."""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("pin", sa.String(length=4), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="lobby"),
        sa.Column("host_id", sa.String(length=64), nullable=True),
        sa.Column("document", sa.Text(), nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('lobby', 'countdown', 'question', 'results', 'final')",
            name="ck_sessions_status",
        ),
        sa.PrimaryKeyConstraint("pin"),
    )
    op.create_index("ix_sessions_status", "sessions", ["status"], unique=False)

    op.create_table(
        "leaderboards",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("course", sa.String(length=100), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "leaderboard_entries",
        sa.Column("leaderboard_id", sa.String(length=36), nullable=False),
        sa.Column("name_key", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=64), nullable=False),
        sa.Column("total_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quizzes_taken", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_played", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["leaderboard_id"], ["leaderboards.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("leaderboard_id", "name_key"),
    )
    op.create_index(
        "ix_leaderboard_entries_total_score",
        "leaderboard_entries",
        ["leaderboard_id", "total_score"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_leaderboard_entries_total_score", table_name="leaderboard_entries")
    op.drop_table("leaderboard_entries")
    op.drop_table("leaderboards")
    op.drop_index("ix_sessions_status", table_name="sessions")
    op.drop_table("sessions")
