"""file_references_and_notes

Adds:
  - file_reference_templates
  - workflow_step_file_references
  - ticket_user_notes

Revision ID: 0002_file_references_and_notes
Revises: 0001_initial_schema
Create Date: 2026-10-18 15:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '0002_file_references_and_notes'
down_revision = '0001_initial_schema'
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    if "file_reference_templates" not in existing:
        op.create_table(
            "file_reference_templates",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("template_name", sa.String(length=200), nullable=False, unique=True),
            sa.Column("description", sa.Text()),
            sa.Column("file_references", sa.JSON(), nullable=False),
            sa.Column("mandatory_flags", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("uploaded_by", sa.Integer(),
                      sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.Column("updated_at", sa.DateTime(timezone=True)),
        )

    if "workflow_step_file_references" not in existing:
        op.create_table(
            "workflow_step_file_references",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("template_id", sa.Integer(),
                      sa.ForeignKey("file_reference_templates.id", ondelete="RESTRICT"),
                      nullable=True, index=True),
            sa.Column("reference_name", sa.String(length=255), nullable=False),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False),
            sa.Column("document_id", sa.Integer(),
                      sa.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True, index=True),
            sa.Column("uploaded_by", sa.Integer(),
                      sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.Column("updated_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint("step_id", "reference_name", name="uq_step_reference_name"),
        )

    if "ticket_user_notes" not in existing:
        op.create_table(
            "ticket_user_notes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("user_id", sa.Integer(),
                      sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("note_content", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.Column("updated_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint("ticket_id", "user_id", name="uq_ticket_user_note"),
        )


def downgrade():
    for table in (
        "ticket_user_notes",
        "workflow_step_file_references",
        "file_reference_templates",
    ):
        op.drop_table(table)
