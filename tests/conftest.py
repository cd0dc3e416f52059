"""
Shared pytest fixtures for the document approval test suite.

Provides:
    - app: Flask application with fake collaborators (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - approvers / dispatcher: the fake ApproverDirectory and recording
      NotificationDispatcher wired into the app, reset before every test
    - engine / sweeper: the app's ApprovalWorkflowEngine / EscalationSweeper
    - stage_configs: default four-stage configuration for "insurance"
    - make_document: ContractorDocument factory
    - make_workflow: initiate a workflow through the engine
"""

import pytest

from approval_engine import create_app
from approval_engine.models import db as _db
from approval_engine.models.document import ContractorDocument
from approval_engine.services import get_engine, get_sweeper
from approval_engine.services.directories import ApproverDirectory, NotificationDispatcher
from approval_engine.services.stage_config_service import seed_default_stage_configurations

DOCUMENT_TYPE = "insurance"

DEFAULT_APPROVERS = {
    1: "compliance-officer-1",
    2: "compliance-manager-1",
    3: "legal-reviewer-1",
    4: "operations-manager-1",
}


class FakeApproverDirectory(ApproverDirectory):
    """In-memory approver tables; tests mutate ``defaults`` / ``escalation_targets``."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.defaults = dict(DEFAULT_APPROVERS)
        # (stage, level) -> approver; unlisted pairs fall back to escalation-manager-<level>
        self.escalation_targets = {}
        self.escalation_fallback = True

    def resolve_default(self, document_type, stage):
        return self.defaults.get(stage)

    def resolve_escalation_target(self, document_type, stage, level):
        if (stage, level) in self.escalation_targets:
            return self.escalation_targets[(stage, level)]
        return f"escalation-manager-{level}" if self.escalation_fallback else None


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.reset()

    def reset(self):
        self.sent = []
        self.fail = False

    def dispatch(self, notification):
        if self.fail:
            raise RuntimeError("notification backend unavailable")
        self.sent.append(dict(notification))

    def events(self, event):
        return [n for n in self.sent if n["event"] == event]


_APPROVERS = FakeApproverDirectory()
_DISPATCHER = RecordingDispatcher()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app(
        "testing",
        approver_directory=_APPROVERS,
        dispatcher=_DISPATCHER,
    )
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    _APPROVERS.reset()
    _DISPATCHER.reset()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def approvers():
    return _APPROVERS


@pytest.fixture()
def dispatcher():
    return _DISPATCHER


@pytest.fixture()
def engine():
    return get_engine()


@pytest.fixture()
def sweeper():
    return get_sweeper()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def stage_configs():
    """Seed the default four stages for the "insurance" document type."""
    seed_default_stage_configurations([DOCUMENT_TYPE])
    _db.session.commit()
    return DOCUMENT_TYPE


@pytest.fixture()
def make_document():
    """Factory: create a contractor document and return its id."""

    def _make(document_type=DOCUMENT_TYPE, name="Public Liability Certificate", metadata=None):
        doc = ContractorDocument(
            document_type=document_type,
            document_name=name,
            contractor_id="c0ffee00-0000-4000-8000-000000000001",
            document_metadata=metadata,
        )
        _db.session.add(doc)
        _db.session.commit()
        return doc.id

    return _make


@pytest.fixture()
def document_id(make_document):
    return make_document()


@pytest.fixture()
def make_workflow(engine, stage_configs, make_document):
    """Factory: initiate a workflow for a fresh document; returns the engine result."""

    def _make(**config):
        doc_id = config.pop("document_id", None) or make_document()
        config.setdefault("document_type", DOCUMENT_TYPE)
        return engine.initiate_workflow(doc_id, **config)

    return _make
