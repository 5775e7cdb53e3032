"""initial_schema

Creates the WorkTrack schema:
  - users
  - tickets, workflow_steps, workflow_step_dependencies, workflow_comments
  - audit_logs
  - work_order_{items,specs}_master, *_details, *_allocations
  - documents, progress_documents
  - finance_approvals
  - progress_entries

Tables are created conditionally (IF NOT EXISTS semantics) so the revision
can be stamped onto databases that already received them via
db.create_all() in development.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _user_fk(name):
    return sa.Column(name, sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


def _catalog_table(name, extra_column):
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=50), nullable=False, unique=True),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column(extra_column, sa.String(length=100), nullable=True),
        sa.Column("default_quantity", sa.Numeric(14, 4), nullable=False),
        sa.Column("unit", sa.String(length=30), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _user_fk("created_by"),
        _ts("created_at"),
        _ts("updated_at"),
    )


def _detail_table(name, master_table, prefix):
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ticket_id", sa.Integer(),
                  sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("catalog_entry_id", sa.Integer(),
                  sa.ForeignKey(f"{master_table}.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("quantity", sa.Numeric(14, 4), nullable=False),
        sa.Column("unit", sa.String(length=30), nullable=False),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("allocated_quantity", sa.Numeric(14, 4), nullable=False, server_default="0"),
        _user_fk("added_by"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("quantity > 0", name=f"ck_{prefix}_detail_quantity"),
        sa.CheckConstraint(
            "allocated_quantity >= 0 AND allocated_quantity <= quantity",
            name=f"ck_{prefix}_detail_allocated",
        ),
    )


def _allocation_table(name, detail_table, prefix):
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("detail_id", sa.Integer(),
                  sa.ForeignKey(f"{detail_table}.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("workflow_step_id", sa.Integer(),
                  sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("allocated_quantity", sa.Numeric(14, 4), nullable=False),
        _user_fk("allocated_by"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("allocated_quantity > 0", name=f"ck_{prefix}_allocation_positive"),
    )


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Users ─────────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("username", sa.String(length=100), nullable=False, unique=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=200)),
            sa.Column("role", sa.String(length=20), nullable=False),
            sa.Column("department", sa.String(length=100)),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            _ts("created_at"),
            sa.CheckConstraint(
                "role IN ('employee','do','eo','dept_officer','vendor','finance')",
                name="ck_user_role",
            ),
        )

    # ── Tickets ───────────────────────────────────────────────────────────
    if "tickets" not in existing:
        op.create_table(
            "tickets",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ticket_number", sa.String(length=30), nullable=False, unique=True),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text()),
            sa.Column("status", sa.String(length=30), nullable=False),
            sa.Column("priority", sa.String(length=10), nullable=False),
            sa.Column("category", sa.String(length=100)),
            sa.Column("department", sa.String(length=100)),
            sa.Column("property_id", sa.String(length=50)),
            sa.Column("property_location", sa.String(length=255)),
            _user_fk("created_by"),
            _user_fk("assigned_to"),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("copied_from_ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True),
            sa.Column("requires_finance_approval", sa.Boolean(), nullable=False),
            sa.Column("completion_documents_required", sa.Boolean(), nullable=False),
            _user_fk("finance_officer_id"),
            sa.Column("finance_submission_count", sa.Integer(), nullable=False),
            sa.Column("latest_finance_status", sa.String(length=20), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint(
                "status IN ('draft','created','approved','active','sent_to_finance',"
                "'approved_by_finance','rejected_by_finance','completed','closed','cancelled')",
                name="ck_ticket_status",
            ),
            sa.CheckConstraint("priority IN ('LOW','MEDIUM','HIGH','CRITICAL')", name="ck_ticket_priority"),
        )
        op.create_index("idx_ticket_status", "tickets", ["status"])
        op.create_index("idx_ticket_assigned", "tickets", ["assigned_to"])

    # ── Workflow ──────────────────────────────────────────────────────────
    if "workflow_steps" not in existing:
        op.create_table(
            "workflow_steps",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("step_number", sa.String(length=20), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text()),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("level_1", sa.Integer(), nullable=False),
            sa.Column("level_2", sa.Integer(), nullable=False),
            sa.Column("level_3", sa.Integer(), nullable=False),
            sa.Column("parent_step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True),
            sa.Column("is_parallel", sa.Boolean(), nullable=False),
            sa.Column("dependency_mode", sa.String(length=10), nullable=False),
            sa.Column("is_dependency_locked", sa.Boolean(), nullable=False),
            sa.Column("progress", sa.Integer(), nullable=False),
            sa.Column("mandatory_documents", sa.JSON()),
            sa.Column("optional_documents", sa.JSON()),
            _user_fk("assigned_to"),
            _user_fk("created_by"),
            _ts("start_date"),
            sa.Column("due_date", sa.Date(), nullable=True),
            _ts("completed_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint("status IN ('not_started','wip','completed','closed')",
                               name="ck_workflow_step_status"),
            sa.CheckConstraint("dependency_mode IN ('all','any_one')", name="ck_workflow_step_dep_mode"),
            sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_workflow_step_progress"),
            sa.UniqueConstraint("ticket_id", "level_1", "level_2", "level_3",
                                name="uq_workflow_step_position"),
        )

    if "workflow_step_dependencies" not in existing:
        op.create_table(
            "workflow_step_dependencies",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("depends_on_step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            _user_fk("created_by"),
            _ts("created_at"),
            sa.UniqueConstraint("step_id", "depends_on_step_id", name="uq_step_dependency"),
            sa.CheckConstraint("step_id != depends_on_step_id", name="ck_step_dependency_not_self"),
        )

    if "workflow_comments" not in existing:
        op.create_table(
            "workflow_comments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("content", sa.Text(), nullable=False),
            _user_fk("created_by"),
            _ts("created_at"),
        )

    # ── Audit ─────────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=True),
            sa.Column("step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("action_category", sa.String(length=30), nullable=False),
            sa.Column("description", sa.Text()),
            _user_fk("performed_by"),
            sa.Column("old_data", sa.JSON(), nullable=True),
            sa.Column("new_data", sa.JSON(), nullable=True),
            sa.Column("metadata", sa.JSON()),
            _ts("performed_at", nullable=False),
        )
        op.create_index("idx_audit_ticket", "audit_logs", ["ticket_id"])
        op.create_index("idx_audit_step", "audit_logs", ["step_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["performed_at"])

    # ── Work order catalog, details, allocations ──────────────────────────
    if "work_order_items_master" not in existing:
        _catalog_table("work_order_items_master", "subcategory")
    if "work_order_specs_master" not in existing:
        _catalog_table("work_order_specs_master", "work_chunk")
    if "work_order_item_details" not in existing:
        _detail_table("work_order_item_details", "work_order_items_master", "item")
    if "work_order_spec_details" not in existing:
        _detail_table("work_order_spec_details", "work_order_specs_master", "spec")
    if "work_order_item_allocations" not in existing:
        _allocation_table("work_order_item_allocations", "work_order_item_details", "item")
    if "work_order_spec_allocations" not in existing:
        _allocation_table("work_order_spec_allocations", "work_order_spec_details", "spec")

    # ── Documents ─────────────────────────────────────────────────────────
    if "documents" not in existing:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=True, index=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("content_type", sa.String(length=120), nullable=False),
            sa.Column("size", sa.Integer(), nullable=False),
            sa.Column("storage_path", sa.String(length=500), nullable=False),
            sa.Column("bucket", sa.String(length=60), nullable=False),
            _user_fk("uploaded_by"),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False),
            sa.Column("is_completion_certificate", sa.Boolean(), nullable=False),
            _ts("uploaded_at"),
        )

    if "progress_documents" not in existing:
        op.create_table(
            "progress_documents",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("audit_log_id", sa.Integer(),
                      sa.ForeignKey("audit_logs.id", ondelete="SET NULL"), nullable=True),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("file_path", sa.String(length=500), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=False),
            sa.Column("file_type", sa.String(length=120), nullable=False),
            _user_fk("uploaded_by"),
            _ts("uploaded_at"),
            _ts("deleted_at"),
            sa.Column("deleted_by", sa.Integer(), nullable=True),
            sa.Column("delete_reason", sa.Text(), nullable=True),
        )
        op.create_index("ix_progress_documents_deleted_at", "progress_documents", ["deleted_at"])

    # ── Finance ───────────────────────────────────────────────────────────
    if "finance_approvals" not in existing:
        op.create_table(
            "finance_approvals",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("tentative_cost", sa.Numeric(14, 2), nullable=False),
            sa.Column("cost_deducted_from", sa.String(length=200), nullable=False),
            sa.Column("remarks", sa.Text(), nullable=False),
            sa.Column("finance_officer_id", sa.Integer(),
                      sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("approval_remarks", sa.Text(), nullable=True),
            sa.Column("approval_document_path", sa.String(length=500), nullable=True),
            sa.Column("approval_document_name", sa.String(length=255), nullable=True),
            sa.Column("approval_document_size", sa.Integer(), nullable=True),
            sa.Column("approval_document_type", sa.String(length=120), nullable=True),
            _user_fk("submitted_by"),
            _ts("submitted_at", nullable=False),
            _ts("decided_at"),
            sa.CheckConstraint("status IN ('pending','approved','rejected')", name="ck_finance_status"),
            sa.CheckConstraint("tentative_cost > 0", name="ck_finance_cost_positive"),
        )

    # ── Progress entries ──────────────────────────────────────────────────
    if "progress_entries" not in existing:
        op.create_table(
            "progress_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("step_id", sa.Integer(),
                      sa.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("ticket_id", sa.Integer(),
                      sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("entry_number", sa.Integer(), nullable=False),
            sa.Column("progress_percentage", sa.Integer(), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("is_latest", sa.Boolean(), nullable=False),
            _user_fk("created_by"),
            _user_fk("updated_by"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint("progress_percentage >= 0 AND progress_percentage <= 100",
                               name="ck_progress_percentage"),
            sa.UniqueConstraint("step_id", "entry_number", name="uq_progress_entry_number"),
        )


def downgrade():
    for table in (
        "progress_entries",
        "finance_approvals",
        "progress_documents",
        "documents",
        "work_order_spec_allocations",
        "work_order_item_allocations",
        "work_order_spec_details",
        "work_order_item_details",
        "work_order_specs_master",
        "work_order_items_master",
        "audit_logs",
        "workflow_comments",
        "workflow_step_dependencies",
        "workflow_steps",
        "tickets",
        "users",
    ):
        op.drop_table(table)
