"""
Approval engine service wiring.

``init_approval_engine`` builds the engine and the escalation sweeper with
their collaborators and stores them on ``app.extensions["approval_engine"]``.
Blueprints and CLI commands fetch them through ``get_engine`` / ``get_sweeper``.
"""

from flask import current_app

from approval_engine.services.approval_workflow_service import ApprovalWorkflowEngine
from approval_engine.services.directories import (
    ConfiguredApproverDirectory,
    LoggingNotificationDispatcher,
    SqlDocumentDirectory,
)
from approval_engine.services.escalation import EscalationSweeper

EXTENSION_KEY = "approval_engine"


def init_approval_engine(app, approver_directory=None, document_directory=None, dispatcher=None):
    """Wire collaborators into the app; any of them may be replaced (tests pass fakes)."""
    approver_directory = approver_directory or ConfiguredApproverDirectory.from_config(app.config)
    document_directory = document_directory or SqlDocumentDirectory()
    dispatcher = dispatcher or LoggingNotificationDispatcher()

    engine = ApprovalWorkflowEngine(
        approver_directory,
        document_directory,
        dispatcher,
        default_sla_hours=app.config.get("APPROVAL_DEFAULT_SLA_HOURS", 24),
        max_sla_hours=app.config.get("APPROVAL_MAX_SLA_HOURS", 720),
    )
    sweeper = EscalationSweeper(
        approver_directory,
        dispatcher,
        max_escalation_level=app.config.get("APPROVAL_MAX_ESCALATION_LEVEL", 3),
    )
    app.extensions[EXTENSION_KEY] = {
        "engine": engine,
        "sweeper": sweeper,
        "approver_directory": approver_directory,
        "document_directory": document_directory,
        "dispatcher": dispatcher,
    }
    return engine


def get_engine() -> ApprovalWorkflowEngine:
    return current_app.extensions[EXTENSION_KEY]["engine"]


def get_sweeper() -> EscalationSweeper:
    return current_app.extensions[EXTENSION_KEY]["sweeper"]
