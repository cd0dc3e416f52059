"""
Contractor Document Approval Platform
Approval Workflow Engine.

Drives a document through its configured approval stages:

    initiate → stage 1 … stage N → approved
                     ↘ reject → rejected
    (any non-terminal) → cancel → cancelled

Every public operation is one transaction (``unit_of_work``).  Decisions are
serialised by a compare-and-set on the approver's pending queue item: of two
concurrent decisions on the same stage exactly one sees rowcount == 1, the
other gets UnauthorizedError.

Notifications are dispatched only after the transaction has committed.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, select, update

from approval_engine.core.exceptions import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from approval_engine.models import db
from approval_engine.models.approval import (
    ACTIVE_WORKFLOW_STATUSES,
    HISTORY_ACTIONS,
    PRIORITY_LEVELS,
    QUEUE_STATUSES,
    ApprovalHistory,
    ApprovalQueueItem,
    ApprovalWorkflow,
    WorkflowStage,
)
from approval_engine.services.directories import NOTIFICATION_EVENTS
from approval_engine.services.sla import compute_due_date, is_within_sla, utc_now
from approval_engine.services.stage_config_service import (
    load_stage_configuration,
    stage_config_for,
)
from approval_engine.utils.helpers import unit_of_work

logger = logging.getLogger(__name__)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

DECISIONS = ("approve", "reject")
RULE_OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "regex")

SYSTEM_ACTOR = "system"


# ═════════════════════════════════════════════════════════════════════════════
# Shared building blocks (also used by the escalation sweeper)
# ═════════════════════════════════════════════════════════════════════════════


def append_history(workflow, action, stage_number, actor_id, *, now, actor_role=None,
                   decision=None, comments=None, rejection_reason=None,
                   previous_status=None, new_status=None, time_spent_minutes=None,
                   is_within_sla=None, metadata=None, ip_address=None, user_agent=None):
    """Add an audit entry to the session.  Entries are never updated once flushed."""
    if action not in HISTORY_ACTIONS:
        raise ValueError(f"Unknown history action: {action}")
    entry = ApprovalHistory(
        workflow_id=workflow.id,
        action=action,
        stage_number=stage_number,
        actor_id=actor_id,
        actor_role=actor_role,
        decision=decision,
        comments=comments,
        rejection_reason=rejection_reason,
        previous_status=previous_status,
        new_status=new_status,
        time_spent_minutes=time_spent_minutes,
        is_within_sla=is_within_sla,
        entry_metadata=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=now,
    )
    db.session.add(entry)
    return entry


def create_queue_item(workflow, stage_number, approver_id, *, now, sla_hours=None):
    item = ApprovalQueueItem(
        workflow_id=workflow.id,
        stage_number=stage_number,
        approver_id=approver_id,
        priority_level=workflow.priority_level,
        status="pending",
        estimated_review_time=int(round(float(sla_hours) * 60)) if sla_hours else None,
        assigned_at=now,
    )
    db.session.add(item)
    return item


def supersede_pending_items(workflow_id, *, now, new_status="cancelled") -> list[str]:
    """Conditionally move every pending item of a workflow to ``new_status``.

    Returns the approver ids whose claims were withdrawn.
    """
    if new_status not in QUEUE_STATUSES or new_status == "pending":
        raise ValueError(f"Invalid queue status: {new_status}")
    approvers = db.session.execute(
        select(ApprovalQueueItem.approver_id).where(
            ApprovalQueueItem.workflow_id == workflow_id,
            ApprovalQueueItem.status == "pending",
        )
    ).scalars().all()
    if approvers:
        db.session.execute(
            update(ApprovalQueueItem)
            .where(
                ApprovalQueueItem.workflow_id == workflow_id,
                ApprovalQueueItem.status == "pending",
            )
            .values(status=new_status, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    return list(approvers)


def dispatch_notifications(dispatcher, notifications):
    """Deliver post-commit notifications; a failing dispatcher never fails the caller."""
    for notification in notifications:
        try:
            dispatcher.dispatch(notification)
        except Exception:
            logger.exception(
                "Notification dispatch failed: %s → %s",
                notification.get("event"), notification.get("approverId"),
                extra={"workflow_id": notification.get("workflowId")},
            )


def rule_matches(rule, metadata) -> bool:
    """Evaluate one auto-approval rule against document metadata."""
    if not isinstance(rule, dict):
        return False
    condition = rule.get("condition")
    operator = rule.get("operator")
    expected = rule.get("value")
    if operator not in RULE_OPERATORS:
        logger.warning("Unknown auto-approval operator: %r", operator)
        return False
    if condition not in metadata:
        return False
    actual = metadata[condition]

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator in ("greater_than", "less_than"):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "contains":
        if isinstance(actual, (str, list, tuple, dict)):
            try:
                return expected in actual
            except TypeError:
                return False
        return False
    if operator == "regex":
        try:
            return re.search(str(expected), str(actual)) is not None
        except re.error:
            logger.warning("Invalid auto-approval regex: %r", expected)
            return False
    return False


def rules_match(rules, metadata) -> bool:
    """All rules must match; an empty rule set never auto-approves."""
    if not rules:
        return False
    return all(rule_matches(rule, metadata or {}) for rule in rules)


@dataclass
class StageEntry:
    """Where the engine landed after advancing a workflow."""

    stage_number: int | None
    approver_id: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.stage_number is None

    @property
    def is_assigned(self) -> bool:
        return self.approver_id is not None


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalWorkflowEngine:
    """Approval state machine over the workflow, stage, queue and history tables.

    Collaborators are injected; see ``approval_engine.services.directories``.
    """

    def __init__(self, approver_directory, document_directory, dispatcher, *,
                 default_sla_hours=24, max_sla_hours=720):
        self.approvers = approver_directory
        self.documents = document_directory
        self.dispatcher = dispatcher
        self.default_sla_hours = default_sla_hours
        self.max_sla_hours = max_sla_hours

    # ── Initiate ─────────────────────────────────────────────────────────

    def initiate_workflow(self, document_id, *, document_type, priority_level="normal",
                          custom_sla_hours=None, skip_stages=None,
                          assign_specific_approvers=None, actor_id=SYSTEM_ACTOR,
                          ip_address=None, user_agent=None) -> dict:
        """Start the approval workflow for a document.

        Raises:
            ValidationError: malformed input (checked before any DB access).
            NotFoundError: the document does not exist.
            ConflictError: the document already has a non-terminal workflow.
            ConfigurationMissingError: no stage configuration for the type.
        """
        priority_level = priority_level or "normal"
        skip, assignments = self._validate_initiation(
            document_id, document_type, priority_level, custom_sla_hours,
            skip_stages, assign_specific_approvers,
        )

        if not self.documents.exists(document_id):
            raise NotFoundError("Document", document_id)

        existing = self._active_workflow_for(document_id)
        if existing is not None:
            raise self._duplicate_conflict(existing)

        configs = load_stage_configuration(document_type)
        by_number = {c.stage_number: c for c in configs}
        for number in sorted(skip):
            cfg = by_number.get(number)
            if cfg is None:
                raise ValidationError(
                    f"Cannot skip stage {number}: no such stage",
                    details={"field": "skipStages", "stageCount": len(configs)},
                )
            if not cfg.can_skip:
                raise ValidationError(
                    f"Cannot skip stage {number}: stage is required",
                    details={
                        "field": "skipStages",
                        "skippable": [c.stage_number for c in configs if c.can_skip],
                    },
                )
        for number in assignments:
            if number not in by_number:
                raise ValidationError(
                    f"Cannot assign approver to stage {number}: no such stage",
                    details={"field": "assignSpecificApprovers", "stageCount": len(configs)},
                )

        metadata = self.documents.get_metadata(document_id)
        now = utc_now()
        notifications = []

        def _on_duplicate(exc):
            existing = self._active_workflow_for(document_id)
            if existing is not None:
                return self._duplicate_conflict(existing)
            return ConflictError("An active approval workflow already exists for this document")

        with unit_of_work(on_integrity_error=_on_duplicate):
            resubmissions = db.session.execute(
                select(func.count(ApprovalWorkflow.id)).where(
                    ApprovalWorkflow.document_id == document_id,
                    ApprovalWorkflow.status == "rejected",
                )
            ).scalar_one()

            first_sla = custom_sla_hours or configs[0].standard_sla_hours or self.default_sla_hours
            workflow = ApprovalWorkflow(
                document_id=document_id,
                document_type=document_type,
                current_stage=1,
                status="in_review",
                priority_level=priority_level,
                custom_sla_hours=custom_sla_hours,
                assigned_approvers={str(k): v for k, v in assignments.items()} or None,
                sla_due_date=compute_due_date(now, first_sla),
                resubmission_count=resubmissions,
                created_at=now,
                updated_at=now,
            )
            workflow.stages = [
                WorkflowStage(
                    stage_number=cfg.stage_number,
                    stage_name=cfg.stage_name,
                    status="skipped" if cfg.stage_number in skip else "pending",
                )
                for cfg in configs
            ]
            db.session.add(workflow)
            db.session.flush()

            initiator = actor_id or SYSTEM_ACTOR
            append_history(
                workflow, "initiate", 1, initiator,
                now=now,
                actor_role="system" if initiator == SYSTEM_ACTOR else "submitter",
                previous_status=None,
                new_status="in_review",
                is_within_sla=True,
                metadata={
                    "documentType": document_type,
                    "priorityLevel": priority_level,
                    "customSlaHours": custom_sla_hours,
                    "skippedStages": sorted(skip),
                },
                ip_address=ip_address,
                user_agent=user_agent,
            )

            entry = self._advance(workflow, configs, 0, now=now, metadata=metadata)
            if entry.is_assigned:
                notifications.append(self._notification(workflow, entry.approver_id, "assigned"))

        logger.info(
            "Approval workflow initiated for document %s", document_id,
            extra={
                "workflow_id": workflow.id,
                "document_id": document_id,
                "document_type": document_type,
                "approver_id": workflow.current_approver_id,
                "event_type": "approval.initiate",
            },
        )
        dispatch_notifications(self.dispatcher, notifications)

        if entry.is_complete:
            message = "Document auto-approved: every stage satisfied its approval rules"
        elif entry.is_assigned:
            message = "Approval workflow initiated successfully"
        else:
            message = (
                f"Approval workflow initiated; no approver could be resolved for stage "
                f"{entry.stage_number}, assignment is pending"
            )
        return {
            "workflowId": workflow.id,
            "currentStage": workflow.current_stage,
            "status": workflow.status,
            "nextApproverId": workflow.current_approver_id,
            "slaDueDate": workflow.to_dict()["slaDueDate"],
            "isAssigned": entry.is_assigned,
            "message": message,
        }

    # ── Decide ───────────────────────────────────────────────────────────

    def process_approval(self, workflow_id, approver_user_id, *, decision, comments=None,
                         rejection_reason=None, reassign_to=None, time_spent_minutes=None,
                         actor_role="approver", ip_address=None, user_agent=None) -> dict:
        """Record an approve / reject decision for the workflow's current stage.

        Raises:
            ValidationError, NotFoundError, ConflictError (terminal workflow),
            UnauthorizedError (no pending claim for this approver).
        """
        self._validate_decision(
            workflow_id, approver_user_id, decision, rejection_reason,
            reassign_to, time_spent_minutes,
        )

        workflow = db.session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        if workflow.is_terminal:
            raise ConflictError(
                f"Workflow is already {workflow.status}",
                details=self._state_details(workflow),
            )

        stage_number = workflow.current_stage
        cfg = stage_config_for(workflow.document_type, stage_number)
        if cfg is not None and cfg.requires_comment and not (comments or "").strip():
            raise ValidationError(
                f"Stage {stage_number} requires a comment",
                details={"field": "comments"},
            )

        now = utc_now()
        within_sla = is_within_sla(workflow.sla_due_date, now)
        previous_status = workflow.status
        notifications = []

        def _lost_claim(exc):
            return UnauthorizedError(
                "Not authorised to approve this workflow or it was already processed",
                details={"workflowId": workflow_id, "approverId": approver_user_id},
            )

        with unit_of_work(on_integrity_error=_lost_claim):
            started_at = None
            if time_spent_minutes is not None:
                started_at = now - timedelta(minutes=time_spent_minutes)
            claimed = db.session.execute(
                update(ApprovalQueueItem)
                .where(
                    ApprovalQueueItem.workflow_id == workflow_id,
                    ApprovalQueueItem.approver_id == approver_user_id,
                    ApprovalQueueItem.stage_number == stage_number,
                    ApprovalQueueItem.status == "pending",
                )
                .values(
                    status="completed",
                    completed_at=now,
                    started_at=started_at,
                    approver_notes=comments,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise _lost_claim(None)

            record = workflow.stage(stage_number)
            record.approver_id = approver_user_id
            record.completed_at = now

            if decision == "reject":
                record.status = "rejected"
                workflow.status = "rejected"
                workflow.rejection_reason = str(rejection_reason).strip()
                workflow.current_approver_id = None
                workflow.updated_at = now
                append_history(
                    workflow, "reject", stage_number, approver_user_id,
                    now=now, actor_role=actor_role, decision="reject",
                    comments=comments, rejection_reason=workflow.rejection_reason,
                    previous_status=previous_status, new_status="rejected",
                    time_spent_minutes=time_spent_minutes, is_within_sla=within_sla,
                    ip_address=ip_address, user_agent=user_agent,
                )
                notifications.append(self._notification(workflow, approver_user_id, "rejected"))
                entry = StageEntry(stage_number=None)
            else:
                record.status = "approved"
                history = append_history(
                    workflow, "approve", stage_number, approver_user_id,
                    now=now, actor_role=actor_role, decision="approve",
                    comments=comments, previous_status=previous_status,
                    time_spent_minutes=time_spent_minutes, is_within_sla=within_sla,
                    metadata={"reassignTo": reassign_to} if reassign_to else None,
                    ip_address=ip_address, user_agent=user_agent,
                )
                entry = self._advance(
                    workflow, self._configs_for(workflow), stage_number,
                    now=now, reassign_to=reassign_to,
                    metadata=self.documents.get_metadata(workflow.document_id),
                )
                workflow.updated_at = now
                history.new_status = workflow.status
                if entry.is_complete:
                    notifications.append(self._notification(workflow, approver_user_id, "approved"))
                elif entry.is_assigned:
                    notifications.append(self._notification(workflow, entry.approver_id, "assigned"))

        logger.info(
            "Workflow %s stage %d %sd by %s", workflow_id, stage_number, decision, approver_user_id,
            extra={
                "workflow_id": workflow_id,
                "approver_id": approver_user_id,
                "stage_number": stage_number,
                "event_type": f"approval.{decision}",
            },
        )
        dispatch_notifications(self.dispatcher, notifications)

        if decision == "reject":
            return {
                "workflowId": workflow_id,
                "status": "rejected",
                "currentStage": workflow.current_stage,
                "isComplete": True,
                "isWithinSla": within_sla,
                "message": "Document rejected",
            }
        return {
            "workflowId": workflow_id,
            "status": workflow.status,
            "currentStage": workflow.current_stage,
            "isComplete": entry.is_complete,
            "nextApproverId": None if entry.is_complete else entry.approver_id,
            "isAssigned": entry.is_assigned,
            "isWithinSla": within_sla,
            "message": (
                "Document fully approved" if entry.is_complete
                else f"Stage {stage_number} approved; moved to stage {entry.stage_number}"
            ),
        }

    # ── Read ─────────────────────────────────────────────────────────────

    def get_workflow_status(self, workflow_id, include_history=False) -> dict:
        if not workflow_id:
            raise ValidationError("workflowId is required", details={"field": "workflowId"})
        workflow = db.session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)

        active = not workflow.is_terminal
        result = workflow.to_dict()
        result.update({
            "document": self.documents.get_summary(workflow.document_id),
            "stages": [
                s.to_dict(is_current=active and s.stage_number == workflow.current_stage)
                for s in workflow.stages
            ],
        })
        if include_history:
            entries = db.session.execute(
                select(ApprovalHistory)
                .where(ApprovalHistory.workflow_id == workflow_id)
                .order_by(ApprovalHistory.created_at, ApprovalHistory.id)
            ).scalars().all()
            result["history"] = [e.to_dict() for e in entries]
        return result

    # ── Cancel ───────────────────────────────────────────────────────────

    def cancel_workflow(self, workflow_id, admin_user_id, reason, *,
                        ip_address=None, user_agent=None) -> dict:
        errors = {}
        if not workflow_id:
            errors["workflowId"] = "required"
        if not admin_user_id:
            errors["adminUserId"] = "required"
        if not reason or not str(reason).strip():
            errors["reason"] = "required"
        if errors:
            raise ValidationError("Missing required fields", details=errors)
        reason = str(reason).strip()

        workflow = db.session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        if workflow.is_terminal:
            raise ConflictError(
                f"Cannot cancel workflow with status: {workflow.status}",
                details=self._state_details(workflow),
            )

        now = utc_now()
        previous_status = workflow.status
        with unit_of_work():
            changed = db.session.execute(
                update(ApprovalWorkflow)
                .where(
                    ApprovalWorkflow.id == workflow_id,
                    ApprovalWorkflow.status.in_(ACTIVE_WORKFLOW_STATUSES),
                )
                .values(
                    status="cancelled",
                    rejection_reason=reason,
                    current_approver_id=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if changed.rowcount != 1:
                db.session.refresh(workflow)
                raise ConflictError(
                    f"Cannot cancel workflow with status: {workflow.status}",
                    details=self._state_details(workflow),
                )
            withdrawn = supersede_pending_items(workflow_id, now=now)
            db.session.refresh(workflow)
            append_history(
                workflow, "cancel", workflow.current_stage, admin_user_id,
                now=now, actor_role="admin", comments=reason,
                previous_status=previous_status, new_status="cancelled",
                metadata={"cancelledBy": admin_user_id, "reason": reason},
                ip_address=ip_address, user_agent=user_agent,
            )

        logger.info(
            "Workflow %s cancelled by %s", workflow_id, admin_user_id,
            extra={"workflow_id": workflow_id, "approver_id": admin_user_id,
                   "event_type": "approval.cancel"},
        )
        dispatch_notifications(
            self.dispatcher,
            [self._notification(workflow, a, "cancelled") for a in withdrawn],
        )
        return {
            "workflowId": workflow_id,
            "status": "cancelled",
            "cancelledBy": admin_user_id,
            "reason": reason,
            "message": "Workflow cancelled successfully",
        }

    # ── Reassign / comment ───────────────────────────────────────────────

    def reassign_approver(self, workflow_id, actor_id, new_approver_id, reason=None, *,
                          ip_address=None, user_agent=None) -> dict:
        """Move the current stage to another approver (administrative override)."""
        errors = {}
        if not workflow_id:
            errors["workflowId"] = "required"
        if not actor_id:
            errors["actorId"] = "required"
        if not new_approver_id or not str(new_approver_id).strip():
            errors["newApproverId"] = "required"
        if errors:
            raise ValidationError("Missing required fields", details=errors)

        workflow = db.session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        if workflow.is_terminal:
            raise ConflictError(
                f"Cannot reassign workflow with status: {workflow.status}",
                details=self._state_details(workflow),
            )
        if new_approver_id == workflow.current_approver_id:
            raise ValidationError(
                "Workflow is already assigned to this approver",
                details={"field": "newApproverId", "currentApproverId": workflow.current_approver_id},
            )

        now = utc_now()
        previous_approver = workflow.current_approver_id
        stage_number = workflow.current_stage

        def _concurrent(exc):
            return ConflictError(
                "Workflow assignment changed concurrently; retry",
                details={"workflowId": workflow_id},
            )

        same_approver = (
            ApprovalWorkflow.current_approver_id.is_(None) if previous_approver is None
            else ApprovalWorkflow.current_approver_id == previous_approver
        )
        with unit_of_work(on_integrity_error=_concurrent):
            changed = db.session.execute(
                update(ApprovalWorkflow)
                .where(
                    ApprovalWorkflow.id == workflow_id,
                    ApprovalWorkflow.status.in_(ACTIVE_WORKFLOW_STATUSES),
                    ApprovalWorkflow.current_stage == stage_number,
                    same_approver,
                )
                .values(current_approver_id=new_approver_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if changed.rowcount != 1:
                db.session.refresh(workflow)
                if workflow.is_terminal:
                    raise ConflictError(
                        f"Cannot reassign workflow with status: {workflow.status}",
                        details=self._state_details(workflow),
                    )
                raise _concurrent(None)
            db.session.refresh(workflow)
            supersede_pending_items(workflow_id, now=now)
            cfg = stage_config_for(workflow.document_type, stage_number)
            sla_hours = workflow.custom_sla_hours or (cfg.standard_sla_hours if cfg else None)
            create_queue_item(workflow, stage_number, new_approver_id, now=now, sla_hours=sla_hours)
            append_history(
                workflow, "reassign", stage_number, actor_id,
                now=now, actor_role="admin", comments=reason,
                previous_status=workflow.status, new_status=workflow.status,
                metadata={
                    "previousApproverId": previous_approver,
                    "newApproverId": new_approver_id,
                    "reason": reason,
                },
                ip_address=ip_address, user_agent=user_agent,
            )

        logger.info(
            "Workflow %s stage %d reassigned %s → %s",
            workflow_id, stage_number, previous_approver, new_approver_id,
            extra={"workflow_id": workflow_id, "approver_id": new_approver_id,
                   "stage_number": stage_number, "event_type": "approval.reassign"},
        )
        dispatch_notifications(
            self.dispatcher, [self._notification(workflow, new_approver_id, "reassigned")]
        )
        return {
            "workflowId": workflow_id,
            "currentStage": stage_number,
            "previousApproverId": previous_approver,
            "newApproverId": new_approver_id,
            "status": workflow.status,
        }

    def add_comment(self, workflow_id, actor_id, comments, actor_role=None, *,
                    ip_address=None, user_agent=None) -> dict:
        errors = {}
        if not workflow_id:
            errors["workflowId"] = "required"
        if not actor_id:
            errors["actorId"] = "required"
        if not comments or not str(comments).strip():
            errors["comments"] = "required"
        if errors:
            raise ValidationError("Missing required fields", details=errors)

        workflow = db.session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)

        now = utc_now()
        with unit_of_work():
            entry = append_history(
                workflow, "comment", workflow.current_stage, actor_id,
                now=now, actor_role=actor_role, comments=str(comments).strip(),
                previous_status=workflow.status, new_status=workflow.status,
                ip_address=ip_address, user_agent=user_agent,
            )
        return entry.to_dict()

    # ── Internals ────────────────────────────────────────────────────────

    def _configs_for(self, workflow):
        return load_stage_configuration(workflow.document_type)

    def _advance(self, workflow, configs, after_stage, *, now, reassign_to=None, metadata=None):
        """Enter the first actionable stage after ``after_stage``.

        Skipped stages are passed over; stages whose auto-approval rules all
        match are approved by ``system`` on the way.  When nothing is left the
        workflow is approved.
        """
        by_number = {c.stage_number: c for c in configs}
        for record in workflow.stages:
            number = record.stage_number
            if number <= after_stage or record.status == "skipped":
                continue
            cfg = by_number.get(number)

            if cfg is not None and cfg.auto_approval_enabled and rules_match(cfg.auto_approval_rules, metadata):
                record.status = "auto_approved"
                record.approver_id = SYSTEM_ACTOR
                record.completed_at = now
                workflow.current_stage = number
                append_history(
                    workflow, "approve", number, SYSTEM_ACTOR,
                    now=now, actor_role="system", decision="auto_approve",
                    previous_status=workflow.status, new_status=workflow.status,
                    is_within_sla=True,
                    metadata={"rules": list(cfg.auto_approval_rules or [])},
                )
                logger.info(
                    "Stage %d auto-approved", number,
                    extra={"workflow_id": workflow.id, "stage_number": number,
                           "event_type": "approval.auto_approve"},
                )
                continue

            sla_hours = (
                workflow.custom_sla_hours
                or (cfg.standard_sla_hours if cfg else None)
                or self.default_sla_hours
            )
            record.status = "in_progress"
            workflow.current_stage = number
            workflow.status = "in_review"
            workflow.sla_due_date = compute_due_date(now, sla_hours)
            workflow.is_overdue = False
            workflow.breach_level = 0

            approver = (
                reassign_to
                or (workflow.assigned_approvers or {}).get(str(number))
                or self.approvers.resolve_default(workflow.document_type, number)
            )
            workflow.current_approver_id = approver
            if approver:
                create_queue_item(workflow, number, approver, now=now, sla_hours=sla_hours)
            else:
                logger.warning(
                    "No approver resolved for stage %d", number,
                    extra={"workflow_id": workflow.id, "stage_number": number,
                           "document_type": workflow.document_type},
                )
            return StageEntry(stage_number=number, approver_id=approver)

        workflow.status = "approved"
        workflow.current_approver_id = None
        return StageEntry(stage_number=None)

    def _active_workflow_for(self, document_id):
        return db.session.execute(
            select(ApprovalWorkflow).where(
                ApprovalWorkflow.document_id == document_id,
                ApprovalWorkflow.status.in_(ACTIVE_WORKFLOW_STATUSES),
            )
        ).scalars().first()

    @staticmethod
    def _state_details(workflow) -> dict:
        return {
            "workflowId": workflow.id,
            "currentStage": workflow.current_stage,
            "currentStatus": workflow.status,
        }

    def _duplicate_conflict(self, existing) -> ConflictError:
        return ConflictError(
            "An active approval workflow already exists for this document",
            details=self._state_details(existing),
        )

    @staticmethod
    def _notification(workflow, approver_id, event) -> dict:
        if event not in NOTIFICATION_EVENTS:
            raise ValueError(f"Unknown notification event: {event}")
        return {"workflowId": workflow.id, "approverId": approver_id, "event": event}

    def _validate_initiation(self, document_id, document_type, priority_level,
                             custom_sla_hours, skip_stages, assignments):
        """Returns ``(skip_set, {stage: approver_id})``."""
        if not isinstance(document_id, str) or not UUID_RE.match(document_id):
            raise ValidationError("Invalid document ID format", details={"field": "documentId"})
        if not isinstance(document_type, str) or not document_type.strip():
            raise ValidationError("documentType is required", details={"field": "documentType"})
        if priority_level not in PRIORITY_LEVELS:
            raise ValidationError(
                f"Invalid priority level: {priority_level}",
                details={"field": "priorityLevel", "allowed": list(PRIORITY_LEVELS)},
            )
        if custom_sla_hours is not None:
            if isinstance(custom_sla_hours, bool) or not isinstance(custom_sla_hours, (int, float)):
                raise ValidationError("customSlaHours must be a number", details={"field": "customSlaHours"})
            if custom_sla_hours <= 0 or custom_sla_hours > self.max_sla_hours:
                raise ValidationError(
                    f"customSlaHours must be greater than 0 and at most {self.max_sla_hours}",
                    details={"field": "customSlaHours", "max": self.max_sla_hours},
                )

        skip = set()
        if skip_stages is not None:
            if not isinstance(skip_stages, (list, tuple)):
                raise ValidationError("skipStages must be a list of stage numbers", details={"field": "skipStages"})
            for number in skip_stages:
                if isinstance(number, bool) or not isinstance(number, int) or number < 1:
                    raise ValidationError(
                        "skipStages must be a list of stage numbers",
                        details={"field": "skipStages"},
                    )
                skip.add(number)

        by_stage = {}
        if assignments is not None:
            if not isinstance(assignments, (list, tuple)):
                raise ValidationError(
                    "assignSpecificApprovers must be a list",
                    details={"field": "assignSpecificApprovers"},
                )
            for item in assignments:
                stage = item.get("stage") if isinstance(item, dict) else None
                approver = item.get("approverId") if isinstance(item, dict) else None
                if (isinstance(stage, bool) or not isinstance(stage, int) or stage < 1
                        or not isinstance(approver, str) or not approver.strip()):
                    raise ValidationError(
                        "assignSpecificApprovers entries need a stage number and an approverId",
                        details={"field": "assignSpecificApprovers"},
                    )
                by_stage[stage] = approver.strip()

        return skip, by_stage

    @staticmethod
    def _validate_decision(workflow_id, approver_user_id, decision, rejection_reason,
                           reassign_to, time_spent_minutes):
        errors = {}
        if not workflow_id:
            errors["workflowId"] = "required"
        if not approver_user_id:
            errors["approverUserId"] = "required"
        if not decision:
            errors["decision"] = "required"
        if errors:
            raise ValidationError("Missing required fields", details=errors)

        if decision not in DECISIONS:
            raise ValidationError(
                f"Invalid decision: {decision}",
                details={"field": "decision", "allowed": list(DECISIONS)},
            )
        if decision == "reject" and (not rejection_reason or not str(rejection_reason).strip()):
            raise ValidationError(
                "Rejection reason is required when rejecting",
                details={"field": "rejectionReason"},
            )
        if time_spent_minutes is not None and (
            isinstance(time_spent_minutes, bool)
            or not isinstance(time_spent_minutes, int)
            or time_spent_minutes < 0
        ):
            raise ValidationError(
                "timeSpentMinutes must be a non-negative integer",
                details={"field": "timeSpentMinutes"},
            )
        if reassign_to is not None and (not isinstance(reassign_to, str) or not reassign_to.strip()):
            raise ValidationError("reassignTo must be an approver id", details={"field": "reassignTo"})
