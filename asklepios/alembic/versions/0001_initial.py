"""Users, blood analyses, biomarker definitions and results."""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _json_type():
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        from sqlalchemy.dialects import postgresql
        return postgresql.JSONB()
    return sa.JSON()


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, index=True),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=120)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "blood_analyses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="text"),
        sa.Column("image_url", sa.String(length=512)),
        # Fernet tokens, see asklepios.utils.encryption
        sa.Column("raw_text", sa.Text),
        sa.Column("results", sa.Text),
        sa.Column("analysis_date", sa.DateTime(timezone=True)),
        sa.Column("analyzed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )

    op.create_table(
        "biomarkers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("name_key", sa.String(length=255), nullable=False, index=True),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column("importance", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("normal_range", _json_type()),
        sa.Column("recommendations", _json_type()),
    )

    op.create_table(
        "biomarker_results",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("analysis_id", sa.String(length=36), sa.ForeignKey("blood_analyses.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("biomarker_id", sa.String(length=36), sa.ForeignKey("biomarkers.id"), nullable=False, index=True),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("unit", sa.Text, nullable=False, server_default=""),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="unknown"),
        sa.Column("recommendation", sa.Text),
        sa.Column("education", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )


def downgrade():
    op.drop_table("biomarker_results")
    op.drop_table("biomarkers")
    op.drop_table("blood_analyses")
    op.drop_table("users")
