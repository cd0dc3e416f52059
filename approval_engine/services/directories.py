"""
Contractor Document Approval Platform
External collaborators of the approval engine.

The engine never reaches into user, document or messaging systems directly.
It talks to three narrow interfaces that are injected at start-up (see
``init_approval_engine``) and replaced with fakes in tests:

    ApproverDirectory       — who reviews a stage, who takes over on escalation
    DocumentDirectory       — does the document exist, what is it called
    NotificationDispatcher  — fire-and-forget "something happened" events
"""

import logging
from abc import ABC, abstractmethod

from approval_engine.models import db
from approval_engine.models.document import ContractorDocument

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = frozenset({
    "assigned", "approved", "rejected", "cancelled", "escalated", "reassigned",
})


# ── Interfaces ───────────────────────────────────────────────────────────────


class ApproverDirectory(ABC):
    """Resolves approvers for workflow stages."""

    @abstractmethod
    def resolve_default(self, document_type: str, stage: int) -> str | None:
        """Default approver for ``stage`` of ``document_type``; None if unassigned."""

    @abstractmethod
    def resolve_escalation_target(self, document_type: str, stage: int, level: int) -> str | None:
        """Approver who takes over ``stage`` at escalation ``level`` (1-based)."""


class DocumentDirectory(ABC):
    @abstractmethod
    def exists(self, document_id: str) -> bool: ...

    @abstractmethod
    def get_summary(self, document_id: str) -> dict | None:
        """``{id, name, type, contractorId}`` or None when unknown."""

    def get_metadata(self, document_id: str) -> dict:
        """Attributes used by auto-approval rules.  Empty by default."""
        return {}


class NotificationDispatcher(ABC):
    @abstractmethod
    def dispatch(self, notification: dict) -> None:
        """Deliver ``{workflowId, approverId, event}``.  May raise; callers log it."""


# ── Default implementations ──────────────────────────────────────────────────


def _lookup(mapping: dict, document_type: str, stage: int):
    """Per-type table with ``"default"`` fallback; stage keys may be int or str."""
    table = mapping.get(document_type) or mapping.get("default") or {}
    if stage in table:
        return table[stage]
    return table.get(str(stage))


class ConfiguredApproverDirectory(ApproverDirectory):
    """Approver tables taken from ``APPROVAL_DEFAULT_APPROVERS`` /
    ``APPROVAL_ESCALATION_TARGETS``.
    """

    def __init__(self, default_approvers: dict, escalation_targets: dict) -> None:
        self.default_approvers = default_approvers or {}
        self.escalation_targets = escalation_targets or {}

    @classmethod
    def from_config(cls, config) -> "ConfiguredApproverDirectory":
        return cls(
            config.get("APPROVAL_DEFAULT_APPROVERS", {}),
            config.get("APPROVAL_ESCALATION_TARGETS", {}),
        )

    def resolve_default(self, document_type, stage):
        return _lookup(self.default_approvers, document_type, stage)

    def resolve_escalation_target(self, document_type, stage, level):
        chain = _lookup(self.escalation_targets, document_type, stage)
        if not chain:
            return None
        if isinstance(chain, str):
            return chain
        # Exhausted chains keep escalating to the last (most senior) entry.
        index = min(max(level, 1), len(chain)) - 1
        return chain[index]


class SqlDocumentDirectory(DocumentDirectory):
    """Reads the ``contractor_documents`` projection."""

    def exists(self, document_id):
        return db.session.get(ContractorDocument, document_id) is not None

    def get_summary(self, document_id):
        doc = db.session.get(ContractorDocument, document_id)
        return doc.to_summary() if doc else None

    def get_metadata(self, document_id):
        doc = db.session.get(ContractorDocument, document_id)
        if doc is None:
            return {}
        return dict(doc.document_metadata or {})


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log; delivery is another system's job."""

    def dispatch(self, notification):
        logger.info(
            "Approval notification: %s → %s",
            notification.get("event"),
            notification.get("approverId"),
            extra={
                "workflow_id": notification.get("workflowId"),
                "approver_id": notification.get("approverId"),
                "event_type": f"approval.{notification.get('event')}",
            },
        )
