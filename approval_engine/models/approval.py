"""
Contractor Document Approval Platform
Approval workflow domain models.

Models:
    - StageConfiguration: per document type, ordered stage definitions
    - ApprovalWorkflow:   one approval instance per document submission
    - WorkflowStage:      ordered per-stage sub-record of a workflow
    - ApprovalQueueItem:  actionable unit of work for one approver
    - ApprovalHistory:    append-only audit trail of every action

Stage results are stored as rows keyed by (workflow_id, stage_number) rather
than as stage1/stage2/... columns, so the number of stages is whatever the
stage configuration for the document type says it is.
"""

import uuid
from datetime import datetime, timezone

from approval_engine.models import db

# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_STATUSES = frozenset({
    "pending", "in_review", "approved", "rejected", "cancelled", "escalated",
})
TERMINAL_WORKFLOW_STATUSES = frozenset({"approved", "rejected", "cancelled"})
ACTIVE_WORKFLOW_STATUSES = WORKFLOW_STATUSES - TERMINAL_WORKFLOW_STATUSES

QUEUE_STATUSES = frozenset({"pending", "in_progress", "completed", "skipped", "cancelled"})

# Highest first: the queue's priority sort ranks on this order.
PRIORITY_LEVELS = ("critical", "urgent", "high", "normal", "low")
PRIORITY_RANK = {level: rank for rank, level in enumerate(PRIORITY_LEVELS, 1)}

HISTORY_ACTIONS = frozenset({
    "initiate", "approve", "reject", "escalate", "reassign", "cancel", "comment",
})

_ACTIVE_SQL = "status IN ('pending', 'in_review', 'escalated')"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    """Serialise a timestamp as UTC ISO-8601 (SQLite hands back naive values)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


# ═════════════════════════════════════════════════════════════════════════════
# Stage configuration
# ═════════════════════════════════════════════════════════════════════════════


class StageConfiguration(db.Model):
    """One stage of a document type's approval sequence.

    Read-only while workflows run.  Active stage numbers for a document type
    must be contiguous from 1; stage_config_service verifies this on load.
    """

    __tablename__ = "workflow_stage_configurations"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    document_type = db.Column(db.String(50), nullable=False)
    stage_number = db.Column(db.Integer, nullable=False)
    stage_name = db.Column(db.String(100), nullable=False)

    required_approver_role = db.Column(db.String(50), nullable=True)
    allowed_approver_roles = db.Column(db.JSON, nullable=True, comment="List of role names")

    standard_sla_hours = db.Column(db.Integer, nullable=False, default=24)
    escalation_threshold_hours = db.Column(db.Integer, nullable=False, default=48)

    is_required = db.Column(db.Boolean, nullable=False, default=True)
    can_skip = db.Column(db.Boolean, nullable=False, default=False)
    requires_comment = db.Column(db.Boolean, nullable=False, default=False)
    parallel_approval = db.Column(db.Boolean, nullable=False, default=False)

    auto_approval_enabled = db.Column(db.Boolean, nullable=False, default=False)
    auto_approval_rules = db.Column(
        db.JSON,
        nullable=True,
        comment='[{"condition": "<metadata key>", "operator": "equals|...", "value": ...}]',
    )

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("document_type", "stage_number", name="uq_stage_config_type_stage"),
        db.Index("ix_stage_config_active_type", "is_active", "document_type"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "documentType": self.document_type,
            "stageNumber": self.stage_number,
            "stageName": self.stage_name,
            "requiredApproverRole": self.required_approver_role,
            "allowedApproverRoles": list(self.allowed_approver_roles or []),
            "standardSlaHours": self.standard_sla_hours,
            "escalationThresholdHours": self.escalation_threshold_hours,
            "isRequired": self.is_required,
            "canSkip": self.can_skip,
            "requiresComment": self.requires_comment,
            "parallelApproval": self.parallel_approval,
            "autoApprovalEnabled": self.auto_approval_enabled,
            "autoApprovalRules": list(self.auto_approval_rules or []),
        }

    def __repr__(self) -> str:
        return f"<StageConfiguration {self.document_type}#{self.stage_number} {self.stage_name}>"


# ═════════════════════════════════════════════════════════════════════════════
# Workflow + per-stage records
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalWorkflow(db.Model):
    """Approval instance for one document submission.

    Business rules:
    - At most one non-terminal workflow per document (partial unique index).
    - current_stage never decreases and never exceeds the stage count.
    - Terminal statuses (approved / rejected / cancelled) are final.
    - Rows are never deleted; they are the audit anchor for history.
    """

    __tablename__ = "document_approval_workflows"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    document_id = db.Column(
        db.String(36),
        db.ForeignKey("contractor_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_type = db.Column(db.String(50), nullable=False)

    current_stage = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default="pending")
    current_approver_id = db.Column(db.String(255), nullable=True)

    priority_level = db.Column(db.String(20), nullable=False, default="normal")
    custom_sla_hours = db.Column(db.Float, nullable=True)
    assigned_approvers = db.Column(
        db.JSON,
        nullable=True,
        comment='Explicit assignments captured at initiation: {"<stage>": "<approver id>"}',
    )

    # SLA tracking
    sla_due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    is_overdue = db.Column(db.Boolean, nullable=False, default=False)
    escalation_level = db.Column(db.Integer, nullable=False, default=0)
    breach_level = db.Column(
        db.Integer,
        nullable=False,
        default=0,
        comment="Escalations already applied against the current sla_due_date",
    )
    escalation_reason = db.Column(db.Text, nullable=True)
    last_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    rejection_reason = db.Column(db.Text, nullable=True)
    resubmission_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    stages = db.relationship(
        "WorkflowStage",
        back_populates="workflow",
        order_by="WorkflowStage.stage_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    document = db.relationship("ContractorDocument", lazy="joined")

    __table_args__ = (
        db.Index("ix_approval_workflows_status_due", "status", "sla_due_date"),
        db.Index("ix_approval_workflows_document", "document_id"),
        db.Index("ix_approval_workflows_approver", "current_approver_id"),
        db.Index(
            "uq_approval_workflows_active_document",
            "document_id",
            unique=True,
            sqlite_where=db.text(_ACTIVE_SQL),
            postgresql_where=db.text(_ACTIVE_SQL),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    def stage(self, number: int) -> "WorkflowStage | None":
        for record in self.stages:
            if record.stage_number == number:
                return record
        return None

    def to_dict(self) -> dict:
        return {
            "workflowId": self.id,
            "documentId": self.document_id,
            "documentType": self.document_type,
            "status": self.status,
            "currentStage": self.current_stage,
            "stageCount": self.stage_count,
            "currentApproverId": self.current_approver_id,
            "priorityLevel": self.priority_level,
            "slaDueDate": _iso(self.sla_due_date),
            "isOverdue": self.is_overdue,
            "escalationLevel": self.escalation_level,
            "escalationReason": self.escalation_reason,
            "rejectionReason": self.rejection_reason,
            "resubmissionCount": self.resubmission_count,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalWorkflow {self.id} stage={self.current_stage} {self.status}>"


class WorkflowStage(db.Model):
    """Result of one stage within a workflow."""

    __tablename__ = "approval_workflow_stages"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("document_approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_number = db.Column(db.Integer, nullable=False)
    stage_name = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    approver_id = db.Column(db.String(255), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    workflow = db.relationship("ApprovalWorkflow", back_populates="stages")

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "stage_number", name="uq_workflow_stage_number"),
    )

    def to_dict(self, is_current: bool = False) -> dict:
        return {
            "stageNumber": self.stage_number,
            "stageName": self.stage_name,
            "status": self.status,
            "completedAt": _iso(self.completed_at),
            "approverId": self.approver_id,
            "isCurrent": is_current,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Queue
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalQueueItem(db.Model):
    """Actionable work item: one approver, one workflow stage.

    The pending → completed/cancelled transition is always a conditional
    UPDATE on status; it is the serialisation point for concurrent decisions.
    """

    __tablename__ = "approval_queue_items"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("document_approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_number = db.Column(db.Integer, nullable=False)
    approver_id = db.Column(db.String(255), nullable=False)
    priority_level = db.Column(db.String(20), nullable=False, default="normal")
    status = db.Column(db.String(20), nullable=False, default="pending")
    estimated_review_time = db.Column(db.Integer, nullable=True, comment="Minutes")
    approver_notes = db.Column(db.Text, nullable=True)

    assigned_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    workflow = db.relationship("ApprovalWorkflow")

    __table_args__ = (
        db.Index("ix_approval_queue_approver_priority", "approver_id", "priority_level"),
        db.Index("ix_approval_queue_workflow", "workflow_id"),
        db.Index("ix_approval_queue_status_assigned", "status", "assigned_at"),
        db.Index(
            "uq_approval_queue_one_pending",
            "workflow_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "stageNumber": self.stage_number,
            "approverId": self.approver_id,
            "priorityLevel": self.priority_level,
            "status": self.status,
            "estimatedReviewTime": self.estimated_review_time,
            "assignedAt": _iso(self.assigned_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalQueueItem {self.id} {self.approver_id} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# History (append-only)
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalHistory(db.Model):
    """Immutable audit entry for a workflow action.

    Records are never updated or deleted.  Ordering by (created_at, id) is the
    canonical timeline of a workflow.
    """

    __tablename__ = "approval_history"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("document_approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )

    action = db.Column(db.String(50), nullable=False, comment="initiate | approve | reject | escalate | ...")
    stage_number = db.Column(db.Integer, nullable=False)

    actor_id = db.Column(db.String(255), nullable=False)
    actor_role = db.Column(db.String(50), nullable=True)

    decision = db.Column(db.String(20), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    previous_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=True)

    time_spent_minutes = db.Column(db.Integer, nullable=True)
    is_within_sla = db.Column(db.Boolean, nullable=True)

    entry_metadata = db.Column("metadata", db.JSON, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.Index("ix_approval_history_workflow", "workflow_id", "created_at"),
        db.Index("ix_approval_history_actor", "actor_id", "created_at"),
        db.Index("ix_approval_history_action", "action", "stage_number"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "stageNumber": self.stage_number,
            "actorId": self.actor_id,
            "actorRole": self.actor_role,
            "decision": self.decision,
            "comments": self.comments,
            "rejectionReason": self.rejection_reason,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "timeSpentMinutes": self.time_spent_minutes,
            "isWithinSla": self.is_within_sla,
            "metadata": self.entry_metadata or {},
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalHistory #{self.id} {self.workflow_id} {self.action}>"
