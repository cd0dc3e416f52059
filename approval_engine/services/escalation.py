"""
Escalation sweeper — promotes overdue approvals.

Run periodically (``flask escalate-overdue`` or POST
/api/v1/contractors/documents/approval-workflow/escalations).

Each overdue workflow is escalated in its own transaction.  A workflow whose
transaction fails is logged and reported under ``skipped``; the sweep carries
on with the rest.

Idempotence: a workflow is escalated only when the number of thresholds
crossed since its SLA due date exceeds the escalations already applied
against that due date (``breach_level``).  Running the sweep twice inside the
same threshold window escalates nothing the second time.
"""

import logging

from sqlalchemy import select, update

from approval_engine.core.exceptions import ConfigurationMissingError, StorageFailureError
from approval_engine.models import db
from approval_engine.models.approval import ACTIVE_WORKFLOW_STATUSES, ApprovalWorkflow
from approval_engine.services.approval_workflow_service import (
    SYSTEM_ACTOR,
    append_history,
    create_queue_item,
    dispatch_notifications,
    supersede_pending_items,
)
from approval_engine.services.sla import as_utc, thresholds_crossed, utc_now
from approval_engine.services.stage_config_service import stage_config_for
from approval_engine.utils.helpers import unit_of_work

logger = logging.getLogger(__name__)


class EscalationSweeper:
    """Finds overdue non-terminal workflows and escalates them one level."""

    def __init__(self, approver_directory, dispatcher, *, max_escalation_level=3):
        self.approvers = approver_directory
        self.dispatcher = dispatcher
        self.max_escalation_level = max_escalation_level

    def escalate_overdue_approvals(self, now=None) -> dict:
        """
        Returns:
            {
              "escalatedCount": int,
              "notifiedApprovers": [approver ids],
              "newAssignments": [{workflowId, previousApproverId, newApproverId, escalationLevel}],
              "skipped": [{workflowId, reason}],
            }
        """
        now = as_utc(now) or utc_now()
        result = {
            "escalatedCount": 0,
            "notifiedApprovers": [],
            "newAssignments": [],
            "skipped": [],
        }

        workflow_ids = db.session.execute(
            select(ApprovalWorkflow.id)
            .where(
                ApprovalWorkflow.status.in_(ACTIVE_WORKFLOW_STATUSES),
                ApprovalWorkflow.sla_due_date < now,
            )
            .order_by(ApprovalWorkflow.sla_due_date)
        ).scalars().all()

        for workflow_id in workflow_ids:
            try:
                with unit_of_work():
                    outcome = self._escalate_one(workflow_id, now)
            except (StorageFailureError, ConfigurationMissingError) as exc:
                logger.exception(
                    "Escalation failed for workflow %s", workflow_id,
                    extra={"workflow_id": workflow_id, "event_type": "approval.escalate_failed"},
                )
                result["skipped"].append({"workflowId": workflow_id, "reason": str(exc)})
                continue
            except Exception as exc:
                # e.g. the approver directory raising during target lookup
                logger.exception(
                    "Unexpected escalation error for workflow %s", workflow_id,
                    extra={"workflow_id": workflow_id, "event_type": "approval.escalate_failed"},
                )
                result["skipped"].append({
                    "workflowId": workflow_id,
                    "reason": f"{type(exc).__name__}: {exc}",
                })
                continue

            if outcome is None:
                continue

            result["escalatedCount"] += 1
            if outcome["approverId"]:
                result["notifiedApprovers"].append(outcome["approverId"])
            if outcome["reassigned"]:
                result["newAssignments"].append({
                    "workflowId": workflow_id,
                    "previousApproverId": outcome["previousApproverId"],
                    "newApproverId": outcome["approverId"],
                    "escalationLevel": outcome["escalationLevel"],
                })
            logger.warning(
                "Workflow %s escalated to level %d", workflow_id, outcome["escalationLevel"],
                extra={
                    "workflow_id": workflow_id,
                    "approver_id": outcome["approverId"],
                    "escalation_level": outcome["escalationLevel"],
                    "event_type": "approval.escalate",
                },
            )
            if outcome["approverId"]:
                dispatch_notifications(self.dispatcher, [{
                    "workflowId": workflow_id,
                    "approverId": outcome["approverId"],
                    "event": "escalated",
                }])

        if workflow_ids:
            logger.info(
                "Escalation sweep: %d overdue, %d escalated, %d skipped",
                len(workflow_ids), result["escalatedCount"], len(result["skipped"]),
            )
        return result

    def _escalate_one(self, workflow_id, now):
        """Escalate one workflow inside the caller's transaction.

        Returns None when nothing was escalated (terminal meanwhile, already
        escalated for this window, at the level cap, or changed by a
        concurrent decision or cancel since it was read).

        The workflow row is moved to ``escalated`` with a conditional UPDATE
        keyed on the state read here; the queue is only touched when that
        UPDATE wins.
        """
        workflow = db.session.get(ApprovalWorkflow, workflow_id)
        if workflow is None or workflow.is_terminal:
            return None

        stage_number = workflow.current_stage
        cfg = stage_config_for(workflow.document_type, stage_number)
        if cfg is None:
            raise ConfigurationMissingError(
                workflow.document_type, reason=f"stage {stage_number} is not configured",
            )

        crossed = thresholds_crossed(workflow.sla_due_date, cfg.escalation_threshold_hours, now)
        if crossed <= workflow.breach_level:
            self._mark_overdue(workflow_id, now)
            return None
        if workflow.escalation_level >= self.max_escalation_level:
            logger.debug(
                "Workflow %s already at maximum escalation level", workflow_id,
                extra={"workflow_id": workflow_id},
            )
            self._mark_overdue(workflow_id, now)
            return None

        level = workflow.escalation_level + 1
        breach_level = workflow.breach_level
        previous_status = workflow.status
        previous_approver = workflow.current_approver_id
        original_due = as_utc(workflow.sla_due_date).isoformat()

        target = self.approvers.resolve_escalation_target(workflow.document_type, stage_number, level)
        reassigned = bool(target) and target != previous_approver
        new_approver = target if reassigned else previous_approver
        reason = f"Escalated due to SLA breach. Original due: {original_due}"

        claimed = db.session.execute(
            update(ApprovalWorkflow)
            .where(
                ApprovalWorkflow.id == workflow_id,
                ApprovalWorkflow.status.in_(ACTIVE_WORKFLOW_STATUSES),
                ApprovalWorkflow.current_stage == stage_number,
                ApprovalWorkflow.escalation_level == level - 1,
                ApprovalWorkflow.breach_level == breach_level,
            )
            .values(
                status="escalated",
                escalation_level=level,
                breach_level=breach_level + 1,
                escalation_reason=reason,
                current_approver_id=new_approver,
                is_overdue=True,
                last_escalated_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(
                "Workflow %s changed during escalation; left as is", workflow_id,
                extra={"workflow_id": workflow_id, "event_type": "approval.escalate_superseded"},
            )
            return None
        db.session.refresh(workflow)

        if reassigned:
            supersede_pending_items(workflow_id, now=now)
            create_queue_item(
                workflow, stage_number, target, now=now,
                sla_hours=workflow.custom_sla_hours or cfg.standard_sla_hours,
            )

        append_history(
            workflow, "escalate", stage_number, SYSTEM_ACTOR,
            now=now, actor_role="system",
            comments=reason,
            previous_status=previous_status, new_status="escalated",
            is_within_sla=False,
            metadata={
                "originalDueDate": original_due,
                "escalationLevel": level,
                "previousApproverId": previous_approver,
                "newApproverId": new_approver,
                "thresholdHours": cfg.escalation_threshold_hours,
            },
        )
        return {
            "escalationLevel": level,
            "approverId": new_approver,
            "previousApproverId": previous_approver,
            "reassigned": reassigned,
        }

    @staticmethod
    def _mark_overdue(workflow_id, now):
        db.session.execute(
            update(ApprovalWorkflow)
            .where(
                ApprovalWorkflow.id == workflow_id,
                ApprovalWorkflow.status.in_(ACTIVE_WORKFLOW_STATUSES),
                ApprovalWorkflow.is_overdue.is_(False),
            )
            .values(is_overdue=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
