"""Create session, profile, person and reply example tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "line_message_sessions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("line_user_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("reply_token", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=64), nullable=False),
        sa.Column("message_text", sa.Text(), nullable=True),
        sa.Column("selected_person_id", sa.String(length=64), nullable=True),
        sa.Column("input_text", sa.Text(), nullable=True),
        sa.Column("generated_reply", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_line_message_sessions_line_user_id", "line_message_sessions", ["line_user_id"], unique=False)
    op.create_index("ix_line_message_sessions_user_id", "line_message_sessions", ["user_id"], unique=False)
    op.create_index("ix_line_message_sessions_status", "line_message_sessions", ["status"], unique=False)
    op.create_index("ix_line_message_sessions_created_at", "line_message_sessions", ["created_at"], unique=False)

    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("line_user_id", sa.String(length=128), nullable=True),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
        sa.UniqueConstraint("line_user_id"),
    )

    op.create_table(
        "people",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_people_user_id", "people", ["user_id"], unique=False)

    op.create_table(
        "reply_profiles",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("person_id", sa.String(length=64), nullable=False),
        sa.Column("input_text", sa.Text(), nullable=False),
        sa.Column("reply_text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["person_id"], ["people.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reply_profiles_user_id", "reply_profiles", ["user_id"], unique=False)
    op.create_index("ix_reply_profiles_person_id", "reply_profiles", ["person_id"], unique=False)
    op.create_index("ix_reply_profiles_created_at", "reply_profiles", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_reply_profiles_created_at", table_name="reply_profiles")
    op.drop_index("ix_reply_profiles_person_id", table_name="reply_profiles")
    op.drop_index("ix_reply_profiles_user_id", table_name="reply_profiles")
    op.drop_table("reply_profiles")

    op.drop_index("ix_people_user_id", table_name="people")
    op.drop_table("people")

    op.drop_table("user_profiles")

    op.drop_index("ix_line_message_sessions_created_at", table_name="line_message_sessions")
    op.drop_index("ix_line_message_sessions_status", table_name="line_message_sessions")
    op.drop_index("ix_line_message_sessions_user_id", table_name="line_message_sessions")
    op.drop_index("ix_line_message_sessions_line_user_id", table_name="line_message_sessions")
    op.drop_table("line_message_sessions")
