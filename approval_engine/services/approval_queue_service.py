"""
Approval queue — pending work items per approver.

Read-only.  Filtering, sorting and statistics are all pushed into SQL through
the expression language; statistics cover the whole filtered set, not just the
returned page.
"""

import logging
import math
from datetime import datetime, time, timedelta

from flask import current_app
from sqlalchemy import and_, case, func, select

from approval_engine.core.exceptions import ValidationError
from approval_engine.models import db
from approval_engine.models.approval import (
    PRIORITY_LEVELS,
    PRIORITY_RANK,
    ApprovalQueueItem,
    ApprovalWorkflow,
    WorkflowStage,
)
from approval_engine.models.document import ContractorDocument
from approval_engine.services.sla import (
    URGENT_WINDOW_HOURS,
    as_utc,
    hours_remaining,
    urgency_score,
    utc_now,
)

logger = logging.getLogger(__name__)

SORT_FIELDS = ("due_date", "priority", "assigned_date")
SORT_ORDERS = ("asc", "desc")


def _priority_rank():
    return case(PRIORITY_RANK, value=ApprovalQueueItem.priority_level, else_=len(PRIORITY_LEVELS) + 1)


def _order_by(sort_by, sort_order):
    if sort_by == "priority":
        primary = _priority_rank()
    elif sort_by == "assigned_date":
        primary = ApprovalQueueItem.assigned_at
    else:
        primary = ApprovalWorkflow.sla_due_date
    primary = primary.desc() if sort_order == "desc" else primary.asc()
    if sort_by == "due_date":
        return [primary, ApprovalQueueItem.id]
    return [primary, ApprovalWorkflow.sla_due_date.asc(), ApprovalQueueItem.id]


def _validate(approver_id, is_admin, priority_level, sort_by, sort_order, limit, offset):
    if not is_admin and not approver_id:
        raise ValidationError(
            "approverUserId is required unless isAdmin is set",
            details={"field": "approverUserId"},
        )
    if priority_level is not None and priority_level not in PRIORITY_LEVELS:
        raise ValidationError(
            f"Invalid priority level: {priority_level}",
            details={"field": "priorityLevel", "allowed": list(PRIORITY_LEVELS)},
        )
    if sort_by not in SORT_FIELDS:
        raise ValidationError(
            f"Invalid sortBy: {sort_by}",
            details={"field": "sortBy", "allowed": list(SORT_FIELDS)},
        )
    if sort_order not in SORT_ORDERS:
        raise ValidationError(
            f"Invalid sortOrder: {sort_order}",
            details={"field": "sortOrder", "allowed": list(SORT_ORDERS)},
        )
    if limit < 1:
        raise ValidationError("limit must be at least 1", details={"field": "limit"})
    if offset < 0:
        raise ValidationError("offset must not be negative", details={"field": "offset"})


def get_approval_queue(approver_id=None, *, is_admin=False, priority_level=None,
                       document_type=None, overdue=None, sort_by="due_date",
                       sort_order="asc", limit=None, offset=0, now=None) -> dict:
    """
    Pending queue items with workflow context, statistics and pagination.

    Args:
        approver_id: restrict to one approver (required unless ``is_admin``).
        is_admin: admins may list every approver's items.
        priority_level / document_type: exact-match filters.
        overdue: True → only past-due items, False → only not-yet-due items.
        sort_by: due_date | priority | assigned_date.
        sort_order: asc | desc.
        limit / offset: page window; limit is capped at APPROVAL_QUEUE_MAX_LIMIT.

    Returns:
        {"items": [...], "statistics": {...}, "pagination": {...}}
    """
    cfg = current_app.config
    default_limit = cfg.get("APPROVAL_QUEUE_DEFAULT_LIMIT", 50)
    max_limit = cfg.get("APPROVAL_QUEUE_MAX_LIMIT", 200)
    urgent_window = cfg.get("APPROVAL_URGENT_WINDOW_HOURS", URGENT_WINDOW_HOURS)

    if limit is None:
        limit = default_limit
    _validate(approver_id, is_admin, priority_level, sort_by, sort_order, limit, offset or 0)
    limit = min(limit, max_limit)
    offset = offset or 0
    now = as_utc(now) or utc_now()

    conditions = [ApprovalQueueItem.status == "pending"]
    if approver_id:
        conditions.append(ApprovalQueueItem.approver_id == approver_id)
    if priority_level:
        conditions.append(ApprovalQueueItem.priority_level == priority_level)
    if document_type:
        conditions.append(ApprovalWorkflow.document_type == document_type)
    if overdue is True:
        conditions.append(ApprovalWorkflow.sla_due_date < now)
    elif overdue is False:
        conditions.append(ApprovalWorkflow.sla_due_date >= now)

    # ── Page ─────────────────────────────────────────────────────────────
    rows = db.session.execute(
        select(ApprovalQueueItem, ApprovalWorkflow, ContractorDocument, WorkflowStage.stage_name)
        .join(ApprovalWorkflow, ApprovalQueueItem.workflow_id == ApprovalWorkflow.id)
        .outerjoin(ContractorDocument, ApprovalWorkflow.document_id == ContractorDocument.id)
        .outerjoin(
            WorkflowStage,
            and_(
                WorkflowStage.workflow_id == ApprovalQueueItem.workflow_id,
                WorkflowStage.stage_number == ApprovalQueueItem.stage_number,
            ),
        )
        .where(*conditions)
        .order_by(*_order_by(sort_by, sort_order))
        .limit(limit)
        .offset(offset)
    ).all()

    items = [_serialize(item, workflow, document, stage_name, now, urgent_window)
             for item, workflow, document, stage_name in rows]

    # ── Statistics (whole filtered set) ──────────────────────────────────
    due = ApprovalWorkflow.sla_due_date
    day_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    day_end = day_start + timedelta(days=1)
    total, overdue_count, urgent_count, due_today = db.session.execute(
        select(
            func.count(ApprovalQueueItem.id),
            func.sum(case((due < now, 1), else_=0)),
            func.sum(case((and_(due >= now, due < now + timedelta(hours=urgent_window)), 1), else_=0)),
            func.sum(case((and_(due >= day_start, due < day_end), 1), else_=0)),
        )
        .select_from(ApprovalQueueItem)
        .join(ApprovalWorkflow, ApprovalQueueItem.workflow_id == ApprovalWorkflow.id)
        .where(*conditions)
    ).one()

    by_priority = {level: 0 for level in PRIORITY_LEVELS}
    for level, count in db.session.execute(
        select(ApprovalQueueItem.priority_level, func.count(ApprovalQueueItem.id))
        .join(ApprovalWorkflow, ApprovalQueueItem.workflow_id == ApprovalWorkflow.id)
        .where(*conditions)
        .group_by(ApprovalQueueItem.priority_level)
    ):
        by_priority[level] = count

    by_stage = {}
    for stage_number, count in db.session.execute(
        select(ApprovalQueueItem.stage_number, func.count(ApprovalQueueItem.id))
        .join(ApprovalWorkflow, ApprovalQueueItem.workflow_id == ApprovalWorkflow.id)
        .where(*conditions)
        .group_by(ApprovalQueueItem.stage_number)
        .order_by(ApprovalQueueItem.stage_number)
    ):
        by_stage[str(stage_number)] = count

    total = total or 0
    return {
        "items": items,
        "statistics": {
            "total": total,
            "overdue": overdue_count or 0,
            "urgent": urgent_count or 0,
            "dueToday": due_today or 0,
            "byPriority": by_priority,
            "byStage": by_stage,
        },
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(items) < total,
            "page": offset // limit + 1,
            "totalPages": math.ceil(total / limit),
        },
    }


def _serialize(item, workflow, document, stage_name, now, urgent_window) -> dict:
    due = as_utc(workflow.sla_due_date)
    if document is not None:
        summary = document.to_summary()
    else:
        summary = {
            "id": workflow.document_id,
            "name": "Untitled Document",
            "type": workflow.document_type,
            "contractorId": None,
        }
    data = item.to_dict()
    data.update({
        "stageName": stage_name,
        "documentId": workflow.document_id,
        "documentType": workflow.document_type,
        "document": summary,
        "workflowStatus": workflow.status,
        "slaDueDate": due.isoformat(),
        "hoursRemaining": round(hours_remaining(due, now), 2),
        "isOverdue": now > due,
        "escalationLevel": workflow.escalation_level,
        "urgencyScore": urgency_score(due, now, urgent_window),
    })
    return data
