"""
Document Approval Workflow Blueprint.

Routes (prefix /api/v1/contractors/documents):
  POST   /approval-workflow               – initiate a workflow for a document
  PUT    /approval-workflow               – approve / reject the current stage
  GET    /approval-workflow               – workflow status (+ history)
  DELETE /approval-workflow               – cancel a workflow (admin)
  POST   /approval-workflow/reassign      – move the current stage to another approver
  POST   /approval-workflow/comments      – add an audit comment
  POST   /approval-workflow/escalations   – run the escalation sweep
  GET    /approval-workflow/stages        – stage configuration for a document type
  GET    /approval-queue                  – pending items for an approver (or all, admin)

Successful responses are ``{"success": true, "data": ...}``; failures use
``utils.errors.api_error``.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from approval_engine import limiter
from approval_engine.core.exceptions import (
    ConfigurationMissingError,
    ConflictError,
    NotFoundError,
    StorageFailureError,
    UnauthorizedError,
    ValidationError,
)
from approval_engine.services import get_engine, get_sweeper
from approval_engine.services.approval_queue_service import get_approval_queue
from approval_engine.services.stage_config_service import list_stage_configurations
from approval_engine.utils.errors import E, api_error
from approval_engine.utils.helpers import get_client_ip

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1/contractors/documents")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


# ── Error handlers ───────────────────────────────────────────────────────


@approval_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(error.code, str(error), details=error.details)


@approval_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(error.code, str(error), details=error.details)


@approval_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(error.code, str(error), details=error.details)


@approval_bp.errorhandler(UnauthorizedError)
def _handle_unauthorized(error: UnauthorizedError):
    return api_error(error.code, str(error), details=error.details)


@approval_bp.errorhandler(ConfigurationMissingError)
def _handle_configuration_missing(error: ConfigurationMissingError):
    return api_error(error.code, str(error), details=error.details)


@approval_bp.errorhandler(StorageFailureError)
def _handle_storage_failure(error: StorageFailureError):
    details = {"diagnostic": error.diagnostic} if current_app.debug and error.diagnostic else None
    return api_error(error.code, str(error), details=details)


@approval_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return {"success": False, "error": error.description or error.name}, error.code
    logger.exception("Unexpected error in approval_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── helpers ──────────────────────────────────────────────────────────────


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _missing(data, *fields):
    """400 response listing absent fields, or None when all are present."""
    missing = {f: "required" for f in fields if data.get(f) in (None, "")}
    if missing:
        return api_error(E.VALIDATION_REQUIRED, "Missing required fields", details=missing)
    return None


def _request_context() -> dict:
    return {
        "ip_address": get_client_ip(),
        "user_agent": request.headers.get("User-Agent"),
    }


def _parse_bool(name, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValidationError(f"{name} must be true or false", details={"field": name})


def _parse_int(name, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={"field": name}) from None


def _ok(data, status=200):
    return jsonify({"success": True, "data": data}), status


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/approval-workflow", methods=["POST"])
def initiate_workflow():
    """Start the approval workflow for a document.

    Body: { documentId, documentType, priorityLevel?, customSlaHours?,
            skipStages?, assignSpecificApprovers?: [{stage, approverId}],
            initiatedBy? }
    """
    data = _body()
    err = _missing(data, "documentId", "documentType")
    if err:
        return err

    result = get_engine().initiate_workflow(
        data["documentId"],
        document_type=data["documentType"],
        priority_level=data.get("priorityLevel") or "normal",
        custom_sla_hours=data.get("customSlaHours"),
        skip_stages=data.get("skipStages"),
        assign_specific_approvers=data.get("assignSpecificApprovers"),
        actor_id=data.get("initiatedBy") or "system",
        **_request_context(),
    )
    return _ok(result, 201)


@approval_bp.route("/approval-workflow", methods=["PUT"])
def process_approval():
    """Approve or reject the current stage.

    Body: { workflowId, approverUserId, decision: approve|reject, comments?,
            rejectionReason?, reassignTo?, timeSpentMinutes? }
    """
    data = _body()
    err = _missing(data, "workflowId", "approverUserId", "decision")
    if err:
        return err

    result = get_engine().process_approval(
        data["workflowId"],
        data["approverUserId"],
        decision=data["decision"],
        comments=data.get("comments"),
        rejection_reason=data.get("rejectionReason"),
        reassign_to=data.get("reassignTo"),
        time_spent_minutes=data.get("timeSpentMinutes"),
        **_request_context(),
    )
    return _ok(result)


@approval_bp.route("/approval-workflow", methods=["GET"])
def get_workflow_status():
    workflow_id = request.args.get("workflowId", "").strip()
    if not workflow_id:
        return api_error(E.VALIDATION_REQUIRED, "workflowId is required",
                         details={"workflowId": "required"})
    include_history = _parse_bool("includeHistory", default=False)
    return _ok(get_engine().get_workflow_status(workflow_id, include_history=include_history))


@approval_bp.route("/approval-workflow", methods=["DELETE"])
def cancel_workflow():
    """Cancel a non-terminal workflow.

    Body (or query string): { workflowId, adminUserId, cancelReason }
    ``reason`` is accepted as an alias of ``cancelReason``.
    """
    data = _body() or request.args.to_dict()
    if data.get("cancelReason") in (None, "") and data.get("reason"):
        data["cancelReason"] = data["reason"]
    err = _missing(data, "workflowId", "adminUserId", "cancelReason")
    if err:
        return err

    result = get_engine().cancel_workflow(
        data["workflowId"], data["adminUserId"], data["cancelReason"], **_request_context(),
    )
    return _ok(result)


@approval_bp.route("/approval-workflow/reassign", methods=["POST"])
def reassign_approver():
    """Body: { workflowId, adminUserId, newApproverId, reason? }"""
    data = _body()
    err = _missing(data, "workflowId", "adminUserId", "newApproverId")
    if err:
        return err

    result = get_engine().reassign_approver(
        data["workflowId"], data["adminUserId"], data["newApproverId"], data.get("reason"),
        **_request_context(),
    )
    return _ok(result)


@approval_bp.route("/approval-workflow/comments", methods=["POST"])
def add_comment():
    """Body: { workflowId, actorId, comments, actorRole? }"""
    data = _body()
    err = _missing(data, "workflowId", "actorId", "comments")
    if err:
        return err

    entry = get_engine().add_comment(
        data["workflowId"], data["actorId"], data["comments"], data.get("actorRole"),
        **_request_context(),
    )
    return _ok(entry, 201)


@approval_bp.route("/approval-workflow/escalations", methods=["POST"])
@limiter.limit(lambda: current_app.config.get("APPROVAL_SWEEP_RATE_LIMIT", "6/minute"))
def run_escalations():
    """Trigger for an external scheduler; safe to call repeatedly."""
    return _ok(get_sweeper().escalate_overdue_approvals())


@approval_bp.route("/approval-workflow/stages", methods=["GET"])
def list_stages():
    document_type = request.args.get("documentType", "").strip()
    if not document_type:
        return api_error(E.VALIDATION_REQUIRED, "documentType is required",
                         details={"documentType": "required"})
    return _ok(list_stage_configurations(document_type))


# ═════════════════════════════════════════════════════════════════════════════
# QUEUE
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/approval-queue", methods=["GET"])
def approval_queue():
    """Pending approvals.

    Query: approverUserId | isAdmin=true, priorityLevel, documentType,
           overdue=true|false, sortBy=due_date|priority|assigned_date,
           sortOrder=asc|desc, limit, offset
    """
    result = get_approval_queue(
        request.args.get("approverUserId") or None,
        is_admin=_parse_bool("isAdmin", default=False),
        priority_level=request.args.get("priorityLevel") or None,
        document_type=request.args.get("documentType") or None,
        overdue=_parse_bool("overdue"),
        sort_by=request.args.get("sortBy") or "due_date",
        sort_order=(request.args.get("sortOrder") or "asc").lower(),
        limit=_parse_int("limit"),
        offset=_parse_int("offset", default=0),
    )
    return _ok(result)
