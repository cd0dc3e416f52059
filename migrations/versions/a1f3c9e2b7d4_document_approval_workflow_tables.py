"""document_approval_workflow_tables

Creates the document approval workflow tables:
  - contractor_documents            — read projection of uploaded documents
  - workflow_stage_configurations   — ordered stage definitions per document type
  - document_approval_workflows     — one approval instance per submission
  - approval_workflow_stages        — per-stage results of a workflow
  - approval_queue_items            — actionable items per approver
  - approval_history                — append-only audit trail

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1f3c9e2b7d4
Revises:
Create Date: 2026-10-17 09:12:44.501233
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1f3c9e2b7d4'
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_SQL = "status IN ('pending', 'in_review', 'escalated')"
_PENDING_SQL = "status = 'pending'"


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── ContractorDocument ────────────────────────────────────────────────
    if "contractor_documents" not in existing:
        op.create_table(
            "contractor_documents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("contractor_id", sa.String(length=36), nullable=True),
            sa.Column("document_name", sa.String(length=255), nullable=True),
            sa.Column("document_type", sa.String(length=50), nullable=False),
            sa.Column(
                "metadata", sa.JSON(), nullable=True,
                comment="Free-form attributes used by auto-approval rules.",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_contractor_documents_contractor_id", "contractor_documents", ["contractor_id"])
        op.create_index("ix_contractor_documents_document_type", "contractor_documents", ["document_type"])

    # ── StageConfiguration ────────────────────────────────────────────────
    if "workflow_stage_configurations" not in existing:
        op.create_table(
            "workflow_stage_configurations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("document_type", sa.String(length=50), nullable=False),
            sa.Column("stage_number", sa.Integer(), nullable=False),
            sa.Column("stage_name", sa.String(length=100), nullable=False),
            sa.Column("required_approver_role", sa.String(length=50), nullable=True),
            sa.Column("allowed_approver_roles", sa.JSON(), nullable=True, comment="List of role names"),
            sa.Column("standard_sla_hours", sa.Integer(), nullable=False, server_default="24"),
            sa.Column("escalation_threshold_hours", sa.Integer(), nullable=False, server_default="48"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("can_skip", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_comment", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("parallel_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("auto_approval_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column(
                "auto_approval_rules", sa.JSON(), nullable=True,
                comment='[{"condition": "<metadata key>", "operator": "equals|...", "value": ...}]',
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("document_type", "stage_number", name="uq_stage_config_type_stage"),
        )
        op.create_index(
            "ix_stage_config_active_type", "workflow_stage_configurations",
            ["is_active", "document_type"],
        )

    # ── ApprovalWorkflow ──────────────────────────────────────────────────
    if "document_approval_workflows" not in existing:
        op.create_table(
            "document_approval_workflows",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("document_type", sa.String(length=50), nullable=False),
            sa.Column("current_stage", sa.Integer(), nullable=False, server_default="1"),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="pending",
                comment="pending | in_review | approved | rejected | cancelled | escalated",
            ),
            sa.Column("current_approver_id", sa.String(length=255), nullable=True),
            sa.Column("priority_level", sa.String(length=20), nullable=False, server_default="normal"),
            sa.Column("custom_sla_hours", sa.Float(), nullable=True),
            sa.Column(
                "assigned_approvers", sa.JSON(), nullable=True,
                comment='Explicit assignments captured at initiation: {"<stage>": "<approver id>"}',
            ),
            sa.Column("sla_due_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("is_overdue", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
            sa.Column(
                "breach_level", sa.Integer(), nullable=False, server_default="0",
                comment="Escalations already applied against the current sla_due_date",
            ),
            sa.Column("escalation_reason", sa.Text(), nullable=True),
            sa.Column("last_escalated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("resubmission_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["document_id"], ["contractor_documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_approval_workflows_status_due", "document_approval_workflows",
            ["status", "sla_due_date"],
        )
        op.create_index("ix_approval_workflows_document", "document_approval_workflows", ["document_id"])
        op.create_index(
            "ix_approval_workflows_approver", "document_approval_workflows", ["current_approver_id"],
        )
        op.create_index(
            "uq_approval_workflows_active_document", "document_approval_workflows",
            ["document_id"], unique=True,
            sqlite_where=sa.text(_ACTIVE_SQL),
            postgresql_where=sa.text(_ACTIVE_SQL),
        )

    # ── WorkflowStage ─────────────────────────────────────────────────────
    if "approval_workflow_stages" not in existing:
        op.create_table(
            "approval_workflow_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=False),
            sa.Column("stage_number", sa.Integer(), nullable=False),
            sa.Column("stage_name", sa.String(length=100), nullable=False),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="pending",
                comment="pending | in_progress | approved | rejected | skipped | auto_approved",
            ),
            sa.Column("approver_id", sa.String(length=255), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(
                ["workflow_id"], ["document_approval_workflows.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "stage_number", name="uq_workflow_stage_number"),
        )

    # ── ApprovalQueueItem ─────────────────────────────────────────────────
    if "approval_queue_items" not in existing:
        op.create_table(
            "approval_queue_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=False),
            sa.Column("stage_number", sa.Integer(), nullable=False),
            sa.Column("approver_id", sa.String(length=255), nullable=False),
            sa.Column("priority_level", sa.String(length=20), nullable=False, server_default="normal"),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="pending",
                comment="pending | in_progress | completed | skipped | cancelled",
            ),
            sa.Column("estimated_review_time", sa.Integer(), nullable=True, comment="Minutes"),
            sa.Column("approver_notes", sa.Text(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(
                ["workflow_id"], ["document_approval_workflows.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_approval_queue_approver_priority", "approval_queue_items",
            ["approver_id", "priority_level"],
        )
        op.create_index("ix_approval_queue_workflow", "approval_queue_items", ["workflow_id"])
        op.create_index(
            "ix_approval_queue_status_assigned", "approval_queue_items", ["status", "assigned_at"],
        )
        op.create_index(
            "uq_approval_queue_one_pending", "approval_queue_items",
            ["workflow_id"], unique=True,
            sqlite_where=sa.text(_PENDING_SQL),
            postgresql_where=sa.text(_PENDING_SQL),
        )

    # ── ApprovalHistory ───────────────────────────────────────────────────
    if "approval_history" not in existing:
        op.create_table(
            "approval_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=False),
            sa.Column(
                "action", sa.String(length=50), nullable=False,
                comment="initiate | approve | reject | escalate | reassign | cancel | comment",
            ),
            sa.Column("stage_number", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.String(length=255), nullable=False),
            sa.Column("actor_role", sa.String(length=50), nullable=True),
            sa.Column("decision", sa.String(length=20), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("previous_status", sa.String(length=20), nullable=True),
            sa.Column("new_status", sa.String(length=20), nullable=True),
            sa.Column("time_spent_minutes", sa.Integer(), nullable=True),
            sa.Column("is_within_sla", sa.Boolean(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("ip_address", sa.String(length=45), nullable=True),
            sa.Column("user_agent", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(
                ["workflow_id"], ["document_approval_workflows.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_history_workflow", "approval_history", ["workflow_id", "created_at"])
        op.create_index("ix_approval_history_actor", "approval_history", ["actor_id", "created_at"])
        op.create_index("ix_approval_history_action", "approval_history", ["action", "stage_number"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    if "approval_history" in existing:
        op.drop_index("ix_approval_history_action", table_name="approval_history")
        op.drop_index("ix_approval_history_actor", table_name="approval_history")
        op.drop_index("ix_approval_history_workflow", table_name="approval_history")
        op.drop_table("approval_history")

    if "approval_queue_items" in existing:
        op.drop_index("uq_approval_queue_one_pending", table_name="approval_queue_items")
        op.drop_index("ix_approval_queue_status_assigned", table_name="approval_queue_items")
        op.drop_index("ix_approval_queue_workflow", table_name="approval_queue_items")
        op.drop_index("ix_approval_queue_approver_priority", table_name="approval_queue_items")
        op.drop_table("approval_queue_items")

    if "approval_workflow_stages" in existing:
        op.drop_table("approval_workflow_stages")

    if "document_approval_workflows" in existing:
        op.drop_index("uq_approval_workflows_active_document", table_name="document_approval_workflows")
        op.drop_index("ix_approval_workflows_approver", table_name="document_approval_workflows")
        op.drop_index("ix_approval_workflows_document", table_name="document_approval_workflows")
        op.drop_index("ix_approval_workflows_status_due", table_name="document_approval_workflows")
        op.drop_table("document_approval_workflows")

    if "workflow_stage_configurations" in existing:
        op.drop_index("ix_stage_config_active_type", table_name="workflow_stage_configurations")
        op.drop_table("workflow_stage_configurations")

    # contractor_documents is owned by the document service once populated;
    # only drop it when this migration created an empty one.
    if "contractor_documents" in existing:
        count = bind.execute(sa.text("SELECT COUNT(*) FROM contractor_documents")).scalar()
        if not count:
            op.drop_index("ix_contractor_documents_document_type", table_name="contractor_documents")
            op.drop_index("ix_contractor_documents_contractor_id", table_name="contractor_documents")
            op.drop_table("contractor_documents")
