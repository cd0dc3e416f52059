"""
Approval engine exception hierarchy.

Every service raises one of these types; the approval blueprint registers one
error handler per type and so maps each failure to a stable error code and
HTTP status.  Callers never see raw storage-layer text unless the app runs in
debug mode.

Usage:
    from approval_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Workflow", resource_id=workflow_id)
    raise ValidationError("priorityLevel is invalid", details={"allowed": [...]})
"""

from approval_engine.utils.errors import E


class ApprovalError(Exception):
    """Base class: carries a machine-readable code and structured details."""

    code = E.INTERNAL

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ValidationError(ApprovalError):
    """Malformed or missing input.  Always a client error; never retried.

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown and, where relevant, the allowed values.
    """

    code = E.VALIDATION_INVALID


class NotFoundError(ApprovalError):
    """Raised when a document or workflow does not exist.

    Args:
        resource: Human-readable entity name ("Document", "Workflow").
        resource_id: The identifier that was looked up.
    """

    code = E.NOT_FOUND

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource} not found"
        details = {}
        if resource_id is not None:
            details[f"{resource[:1].lower()}{resource[1:]}Id"] = resource_id
        super().__init__(msg, details)


class ConflictError(ApprovalError):
    """The requested transition clashes with the workflow's current state.

    Duplicate active workflow for a document, or an action against a terminal
    workflow.  ``details`` carries the existing workflow id, stage and status
    so the caller can redirect instead of retrying blindly.

    Maps to HTTP 409.
    """

    code = E.CONFLICT_STATE


class UnauthorizedError(ApprovalError):
    """The approver holds no pending claim on the workflow.

    Covers both "never assigned" and "already processed by someone else";
    the second decision attempt on a stage always lands here.

    Maps to HTTP 403.
    """

    code = E.FORBIDDEN


class ConfigurationMissingError(ApprovalError):
    """No usable stage configuration exists for a document type.

    Maps to HTTP 422.
    """

    code = E.CONFIGURATION_MISSING

    def __init__(self, document_type: str, reason: str | None = None) -> None:
        self.document_type = document_type
        msg = f"No workflow configuration found for document type: {document_type}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg, {"documentType": document_type})


class StorageFailureError(ApprovalError):
    """A transactional write did not complete and was rolled back.

    Maps to HTTP 500.  ``diagnostic`` holds the underlying driver message for
    logs and debug responses only.
    """

    code = E.DATABASE

    def __init__(self, message: str = "Storage operation failed", diagnostic: str | None = None) -> None:
        self.diagnostic = diagnostic
        super().__init__(message)
