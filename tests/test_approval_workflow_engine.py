"""
Tests: ApprovalWorkflowEngine at the service layer.

Covers:
    - Initiation: validation before persistence, document existence, duplicate
      active workflows, missing configuration, skip / explicit assignment rules
    - Decisions: stage advance, final approval, rejection, terminal immutability,
      single active claim, reassignTo, requires_comment, SLA stamping
    - Status read model (isCurrent round trip, ordered history)
    - Cancel, reassign and comment supplements
    - Auto-approval rules and resubmission counting

All test data created via the engine or ORM helpers.
The `session` autouse fixture recreates tables after every test.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from approval_engine.core.exceptions import (
    ConfigurationMissingError,
    ConflictError,
    NotFoundError,
    StorageFailureError,
    UnauthorizedError,
    ValidationError,
)
from approval_engine.models import db as _db
from approval_engine.models.approval import (
    ApprovalHistory,
    ApprovalQueueItem,
    ApprovalWorkflow,
    StageConfiguration,
)
from approval_engine.services.approval_workflow_service import rule_matches, rules_match
from approval_engine.utils.helpers import unit_of_work

pytestmark = pytest.mark.unit


# ── Helpers ──────────────────────────────────────────────────────────────────


def _to_utc(dt: datetime) -> datetime:
    """SQLite returns naive datetimes; normalise for comparisons."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _workflow(workflow_id) -> ApprovalWorkflow:
    _db.session.expire_all()
    return _db.session.get(ApprovalWorkflow, workflow_id)


def _queue_items(workflow_id, status=None):
    q = select(ApprovalQueueItem).where(ApprovalQueueItem.workflow_id == workflow_id)
    if status:
        q = q.where(ApprovalQueueItem.status == status)
    return _db.session.execute(q.order_by(ApprovalQueueItem.assigned_at)).scalars().all()


def _history(workflow_id):
    return _db.session.execute(
        select(ApprovalHistory)
        .where(ApprovalHistory.workflow_id == workflow_id)
        .order_by(ApprovalHistory.created_at, ApprovalHistory.id)
    ).scalars().all()


def _stage_config(stage_number, document_type="insurance") -> StageConfiguration:
    return _db.session.execute(
        select(StageConfiguration).where(
            StageConfiguration.document_type == document_type,
            StageConfiguration.stage_number == stage_number,
        )
    ).scalar_one()


def _approve(engine, workflow_id, approver, **kwargs):
    return engine.process_approval(workflow_id, approver, decision="approve", **kwargs)


# ═════════════════════════════════════════════════════════════════════════════
# Initiation
# ═════════════════════════════════════════════════════════════════════════════


class TestInitiateWorkflow:
    def test_initiate_assigns_stage_one(self, make_workflow, dispatcher):
        result = make_workflow()

        assert result["currentStage"] == 1
        assert result["status"] == "in_review"
        assert result["nextApproverId"] == "compliance-officer-1"
        assert result["isAssigned"] is True
        assert result["slaDueDate"]

        items = _queue_items(result["workflowId"])
        assert len(items) == 1
        assert items[0].status == "pending"
        assert items[0].approver_id == "compliance-officer-1"
        assert items[0].stage_number == 1
        assert items[0].estimated_review_time == 24 * 60

        history = _history(result["workflowId"])
        assert [h.action for h in history] == ["initiate"]
        assert history[0].actor_id == "system"
        assert history[0].is_within_sla is True
        assert history[0].entry_metadata["documentType"] == "insurance"

        assert dispatcher.events("assigned") == [{
            "workflowId": result["workflowId"],
            "approverId": "compliance-officer-1",
            "event": "assigned",
        }]

    def test_custom_sla_sets_due_date(self, make_workflow):
        before = datetime.now(timezone.utc)
        result = make_workflow(custom_sla_hours=48)

        due = _to_utc(_workflow(result["workflowId"]).sla_due_date)
        assert abs((due - (before + timedelta(hours=48))).total_seconds()) < 60

    def test_default_sla_comes_from_stage_config(self, make_workflow):
        before = datetime.now(timezone.utc)
        result = make_workflow()

        due = _to_utc(_workflow(result["workflowId"]).sla_due_date)
        assert abs((due - (before + timedelta(hours=24))).total_seconds()) < 60

    def test_priority_is_copied_to_queue_item(self, make_workflow):
        result = make_workflow(priority_level="urgent")

        assert _queue_items(result["workflowId"])[0].priority_level == "urgent"

    @pytest.mark.parametrize("document_id", ["not-a-uuid", "", "1234", None])
    def test_invalid_document_id_rejected(self, engine, document_id):
        with pytest.raises(ValidationError) as exc:
            engine.initiate_workflow(document_id, document_type="insurance")
        assert exc.value.details["field"] == "documentId"

    def test_uppercase_uuid_passes_format_check(self, engine, stage_configs):
        # well-formed, just unknown
        with pytest.raises(NotFoundError):
            engine.initiate_workflow("0B7F3C1E-9A5D-4E2B-8C6F-1D2E3F4A5B6C", document_type="insurance")

    def test_invalid_priority_lists_allowed_values(self, engine, document_id, stage_configs):
        with pytest.raises(ValidationError) as exc:
            engine.initiate_workflow(document_id, document_type="insurance", priority_level="asap")
        assert exc.value.details["allowed"] == ["critical", "urgent", "high", "normal", "low"]

    @pytest.mark.parametrize("hours", [0, -5, 10_000, "48", True])
    def test_invalid_custom_sla(self, engine, document_id, stage_configs, hours):
        with pytest.raises(ValidationError):
            engine.initiate_workflow(document_id, document_type="insurance", custom_sla_hours=hours)

    def test_missing_document_type(self, engine, document_id):
        with pytest.raises(ValidationError):
            engine.initiate_workflow(document_id, document_type="")

    def test_unknown_document_is_not_found(self, engine, stage_configs):
        with pytest.raises(NotFoundError) as exc:
            engine.initiate_workflow("0b7f3c1e-9a5d-4e2b-8c6f-1d2e3f4a5b6c", document_type="insurance")
        assert exc.value.details == {"documentId": "0b7f3c1e-9a5d-4e2b-8c6f-1d2e3f4a5b6c"}

    def test_duplicate_active_workflow_conflicts(self, engine, make_workflow, document_id):
        first = make_workflow(document_id=document_id)

        with pytest.raises(ConflictError) as exc:
            engine.initiate_workflow(document_id, document_type="insurance")

        assert exc.value.details == {
            "workflowId": first["workflowId"],
            "currentStage": 1,
            "currentStatus": "in_review",
        }
        assert len(_db.session.execute(select(ApprovalWorkflow)).scalars().all()) == 1

    def test_missing_configuration(self, engine, make_document):
        doc_id = make_document(document_type="bee_certificate")
        with pytest.raises(ConfigurationMissingError) as exc:
            engine.initiate_workflow(doc_id, document_type="bee_certificate")
        assert exc.value.details == {"documentType": "bee_certificate"}

    def test_non_contiguous_configuration_is_missing(self, engine, document_id, stage_configs):
        _stage_config(2).is_active = False
        _db.session.commit()

        with pytest.raises(ConfigurationMissingError):
            engine.initiate_workflow(document_id, document_type="insurance")

    def test_skip_optional_stage(self, engine, make_workflow):
        result = make_workflow(skip_stages=[3])

        status = engine.get_workflow_status(result["workflowId"])
        assert [s["status"] for s in status["stages"]] == ["in_progress", "pending", "skipped", "pending"]
        assert _history(result["workflowId"])[0].entry_metadata["skippedStages"] == [3]

    def test_skip_required_stage_rejected(self, engine, document_id, stage_configs):
        with pytest.raises(ValidationError) as exc:
            engine.initiate_workflow(document_id, document_type="insurance", skip_stages=[2])
        assert exc.value.details["skippable"] == [3]
        assert _db.session.execute(select(ApprovalWorkflow)).first() is None

    def test_skip_unknown_stage_rejected(self, engine, document_id, stage_configs):
        with pytest.raises(ValidationError):
            engine.initiate_workflow(document_id, document_type="insurance", skip_stages=[9])

    def test_specific_approver_overrides_directory(self, engine, make_workflow):
        result = make_workflow(assign_specific_approvers=[
            {"stage": 1, "approverId": "senior-officer-7"},
            {"stage": 2, "approverId": "compliance-lead-2"},
        ])
        assert result["nextApproverId"] == "senior-officer-7"

        nxt = _approve(engine, result["workflowId"], "senior-officer-7")
        assert nxt["nextApproverId"] == "compliance-lead-2"

    def test_malformed_assignment_rejected(self, engine, document_id, stage_configs):
        with pytest.raises(ValidationError):
            engine.initiate_workflow(
                document_id, document_type="insurance",
                assign_specific_approvers=[{"stage": "one", "approverId": "x"}],
            )

    def test_unresolved_approver_leaves_stage_unassigned(self, make_workflow, approvers, dispatcher):
        approvers.defaults.pop(1)

        result = make_workflow()

        assert result["isAssigned"] is False
        assert result["nextApproverId"] is None
        assert "no approver" in result["message"]
        assert _queue_items(result["workflowId"]) == []
        assert dispatcher.sent == []

    def test_dispatcher_failure_does_not_fail_initiation(self, make_workflow, dispatcher):
        dispatcher.fail = True

        result = make_workflow()

        assert result["isAssigned"] is True
        assert _workflow(result["workflowId"]).status == "in_review"


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


class TestProcessApproval:
    def test_approve_stage_one_advances(self, engine, make_workflow, dispatcher):
        wid = make_workflow()["workflowId"]

        result = _approve(engine, wid, "compliance-officer-1", comments="Looks fine")

        assert result["currentStage"] == 2
        assert result["isComplete"] is False
        assert result["nextApproverId"] == "compliance-manager-1"

        stages = engine.get_workflow_status(wid)["stages"]
        assert stages[0]["status"] == "approved"
        assert stages[0]["approverId"] == "compliance-officer-1"
        assert stages[0]["completedAt"]
        assert stages[1]["status"] == "in_progress"

        done = _queue_items(wid, status="completed")
        assert len(done) == 1 and done[0].approver_notes == "Looks fine"
        pending = _queue_items(wid, status="pending")
        assert [i.approver_id for i in pending] == ["compliance-manager-1"]
        assert dispatcher.events("assigned")[-1]["approverId"] == "compliance-manager-1"

    def test_approve_all_stages_completes(self, engine, make_workflow, dispatcher):
        wid = make_workflow()["workflowId"]
        for approver in ("compliance-officer-1", "compliance-manager-1", "legal-reviewer-1"):
            _approve(engine, wid, approver)

        result = _approve(engine, wid, "operations-manager-1")

        assert result["status"] == "approved"
        assert result["isComplete"] is True
        assert result["nextApproverId"] is None
        wf = _workflow(wid)
        assert wf.current_stage == 4
        assert wf.current_approver_id is None
        assert _queue_items(wid, status="pending") == []
        assert dispatcher.events("approved")[0]["approverId"] == "operations-manager-1"

    def test_skipped_stage_is_passed_over(self, engine, make_workflow):
        wid = make_workflow(skip_stages=[3])["workflowId"]
        _approve(engine, wid, "compliance-officer-1")

        result = _approve(engine, wid, "compliance-manager-1")

        assert result["currentStage"] == 4
        assert result["nextApproverId"] == "operations-manager-1"

        final = _approve(engine, wid, "operations-manager-1")
        assert final["status"] == "approved"

    def test_reject_at_stage_two(self, engine, make_workflow, dispatcher):
        wid = make_workflow()["workflowId"]
        _approve(engine, wid, "compliance-officer-1")

        result = engine.process_approval(
            wid, "compliance-manager-1", decision="reject",
            rejection_reason="Certificate expired", time_spent_minutes=12,
        )

        assert result["status"] == "rejected"
        assert result["isComplete"] is True
        wf = _workflow(wid)
        assert wf.rejection_reason == "Certificate expired"
        assert wf.current_approver_id is None

        stages = [s.status for s in wf.stages]
        assert stages == ["approved", "rejected", "pending", "pending"]

        entry = _history(wid)[-1]
        assert entry.action == "reject"
        assert entry.previous_status == "in_review"
        assert entry.new_status == "rejected"
        assert entry.time_spent_minutes == 12
        assert dispatcher.events("rejected")

    def test_decision_after_rejection_conflicts(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        _approve(engine, wid, "compliance-officer-1")
        engine.process_approval(wid, "compliance-manager-1", decision="reject", rejection_reason="No")
        history_before = len(_history(wid))

        with pytest.raises(ConflictError) as exc:
            _approve(engine, wid, "compliance-manager-1")

        assert exc.value.details["currentStatus"] == "rejected"
        wf = _workflow(wid)
        assert wf.status == "rejected"
        assert wf.current_stage == 2
        assert len(_history(wid)) == history_before

    def test_reject_requires_reason(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        with pytest.raises(ValidationError) as exc:
            engine.process_approval(wid, "compliance-officer-1", decision="reject", rejection_reason="  ")
        assert exc.value.details["field"] == "rejectionReason"

    @pytest.mark.parametrize("decision", ["maybe", "APPROVE"])
    def test_unknown_decision(self, engine, make_workflow, decision):
        wid = make_workflow()["workflowId"]
        with pytest.raises(ValidationError):
            engine.process_approval(wid, "compliance-officer-1", decision=decision)

    @pytest.mark.parametrize("minutes", [-1, 1.5, "10"])
    def test_invalid_time_spent(self, engine, make_workflow, minutes):
        wid = make_workflow()["workflowId"]
        with pytest.raises(ValidationError):
            _approve(engine, wid, "compliance-officer-1", time_spent_minutes=minutes)

    def test_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError):
            _approve(engine, "5d6f7a8b-0000-4000-8000-000000000000", "compliance-officer-1")

    def test_wrong_approver_is_unauthorized(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]

        with pytest.raises(UnauthorizedError):
            _approve(engine, wid, "someone-else")

        wf = _workflow(wid)
        assert wf.current_stage == 1
        assert [i.status for i in _queue_items(wid)] == ["pending"]

    def test_second_decision_on_same_stage_is_unauthorized(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        _approve(engine, wid, "compliance-officer-1")

        with pytest.raises(UnauthorizedError):
            _approve(engine, wid, "compliance-officer-1")

        assert _workflow(wid).current_stage == 2
        approvals = [h for h in _history(wid) if h.action == "approve"]
        assert len(approvals) == 1

    def test_reassign_to_overrides_next_approver(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]

        result = _approve(engine, wid, "compliance-officer-1", reassign_to="compliance-manager-9")

        assert result["nextApproverId"] == "compliance-manager-9"
        assert _history(wid)[-1].entry_metadata == {"reassignTo": "compliance-manager-9"}

    def test_time_spent_sets_started_at(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]

        _approve(engine, wid, "compliance-officer-1", time_spent_minutes=30)

        item = _queue_items(wid, status="completed")[0]
        elapsed = _to_utc(item.completed_at) - _to_utc(item.started_at)
        assert elapsed == timedelta(minutes=30)

    def test_decision_after_due_date_is_outside_sla(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        wf = _workflow(wid)
        wf.sla_due_date = datetime.now(timezone.utc) - timedelta(hours=1)
        _db.session.commit()

        result = _approve(engine, wid, "compliance-officer-1")

        assert result["isWithinSla"] is False
        approve_entry = [h for h in _history(wid) if h.action == "approve"][0]
        assert approve_entry.is_within_sla is False

    def test_required_comment_enforced(self, engine, make_workflow):
        _stage_config(1).requires_comment = True
        _db.session.commit()
        wid = make_workflow()["workflowId"]

        with pytest.raises(ValidationError):
            _approve(engine, wid, "compliance-officer-1")

        result = _approve(engine, wid, "compliance-officer-1", comments="Checked policy number")
        assert result["currentStage"] == 2

    def test_next_stage_gets_fresh_sla(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        _approve(engine, wid, "compliance-officer-1")
        _approve(engine, wid, "compliance-manager-1")

        # Legal Review is configured with 48h
        before = datetime.now(timezone.utc)
        wf = _workflow(wid)
        assert wf.current_stage == 3
        assert abs((_to_utc(wf.sla_due_date) - (before + timedelta(hours=48))).total_seconds()) < 60

    def test_stage_never_decreases(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        seen = [_workflow(wid).current_stage]
        for approver in ("compliance-officer-1", "compliance-manager-1", "legal-reviewer-1",
                         "operations-manager-1"):
            _approve(engine, wid, approver)
            seen.append(_workflow(wid).current_stage)

        assert seen == sorted(seen)
        assert max(seen) == 4


# ═════════════════════════════════════════════════════════════════════════════
# Status read model
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowStatus:
    def test_round_trip_after_initiation(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]

        status = engine.get_workflow_status(wid)

        assert status["workflowId"] == wid
        assert status["stageCount"] == 4
        assert status["document"]["name"] == "Public Liability Certificate"
        first, *rest = status["stages"]
        assert first["stageNumber"] == 1
        assert first["stageName"] == "Automated Validation"
        assert first["isCurrent"] is True
        assert all(s["status"] == "pending" and not s["isCurrent"] for s in rest)
        assert "history" not in status

    def test_terminal_workflow_has_no_current_stage(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        engine.process_approval(wid, "compliance-officer-1", decision="reject", rejection_reason="Bad scan")

        status = engine.get_workflow_status(wid)

        assert status["status"] == "rejected"
        assert not any(s["isCurrent"] for s in status["stages"])

    def test_history_is_ordered(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        _approve(engine, wid, "compliance-officer-1")
        engine.add_comment(wid, "auditor-3", "Spot check done")

        status = engine.get_workflow_status(wid, include_history=True)

        assert [h["action"] for h in status["history"]] == ["initiate", "approve", "comment"]
        assert status["history"][1]["newStatus"] == "in_review"

    def test_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_workflow_status("5d6f7a8b-0000-4000-8000-000000000000")


# ═════════════════════════════════════════════════════════════════════════════
# Cancel / reassign / comment
# ═════════════════════════════════════════════════════════════════════════════


class TestCancelWorkflow:
    def test_cancel_withdraws_pending_items(self, engine, make_workflow, dispatcher):
        wid = make_workflow()["workflowId"]

        result = engine.cancel_workflow(wid, "admin-1", "Duplicate upload")

        assert result["status"] == "cancelled"
        wf = _workflow(wid)
        assert wf.status == "cancelled"
        assert wf.rejection_reason == "Duplicate upload"
        assert [i.status for i in _queue_items(wid)] == ["cancelled"]

        entry = _history(wid)[-1]
        assert entry.action == "cancel"
        assert entry.actor_role == "admin"
        assert entry.entry_metadata == {"cancelledBy": "admin-1", "reason": "Duplicate upload"}
        assert dispatcher.events("cancelled")[0]["approverId"] == "compliance-officer-1"

    def test_cancel_requires_reason(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        with pytest.raises(ValidationError) as exc:
            engine.cancel_workflow(wid, "admin-1", "")
        assert "reason" in exc.value.details

    def test_cancel_terminal_conflicts(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        engine.cancel_workflow(wid, "admin-1", "Withdrawn")

        with pytest.raises(ConflictError) as exc:
            engine.cancel_workflow(wid, "admin-1", "Again")
        assert exc.value.details["currentStatus"] == "cancelled"

    def test_cancelled_workflow_allows_new_initiation(self, engine, make_workflow, document_id):
        first = make_workflow(document_id=document_id)
        engine.cancel_workflow(first["workflowId"], "admin-1", "Wrong type")

        second = engine.initiate_workflow(document_id, document_type="insurance")

        assert second["workflowId"] != first["workflowId"]
        assert second["currentStage"] == 1


class TestReassignAndComment:
    def test_reassign_moves_pending_item(self, engine, make_workflow, dispatcher):
        wid = make_workflow()["workflowId"]

        result = engine.reassign_approver(wid, "admin-1", "compliance-officer-2", "Out of office")

        assert result["previousApproverId"] == "compliance-officer-1"
        assert result["newApproverId"] == "compliance-officer-2"
        statuses = {i.approver_id: i.status for i in _queue_items(wid)}
        assert statuses == {"compliance-officer-1": "cancelled", "compliance-officer-2": "pending"}
        assert _history(wid)[-1].action == "reassign"
        assert dispatcher.events("reassigned")[0]["approverId"] == "compliance-officer-2"

        with pytest.raises(UnauthorizedError):
            _approve(engine, wid, "compliance-officer-1")
        assert _approve(engine, wid, "compliance-officer-2")["currentStage"] == 2

    def test_reassign_to_current_approver_rejected(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        with pytest.raises(ValidationError):
            engine.reassign_approver(wid, "admin-1", "compliance-officer-1")

    def test_reassign_loses_to_concurrent_cancel(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        assert _db.session.get(ApprovalWorkflow, wid).status == "in_review"
        # Another writer cancels after this session has read the row.
        _db.session.execute(
            update(ApprovalWorkflow)
            .where(ApprovalWorkflow.id == wid)
            .values(status="cancelled")
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConflictError, match="Cannot reassign workflow with status: cancelled"):
            engine.reassign_approver(wid, "admin-1", "compliance-officer-2")

        assert "compliance-officer-2" not in {i.approver_id for i in _queue_items(wid)}
        assert [h.action for h in _history(wid)] == ["initiate"]

    def test_reassign_loses_to_concurrent_reassign(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        assert _db.session.get(ApprovalWorkflow, wid).current_approver_id == "compliance-officer-1"
        _db.session.execute(
            update(ApprovalWorkflow)
            .where(ApprovalWorkflow.id == wid)
            .values(current_approver_id="compliance-officer-3")
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConflictError, match="changed concurrently"):
            engine.reassign_approver(wid, "admin-1", "compliance-officer-2")

        assert "compliance-officer-2" not in {i.approver_id for i in _queue_items(wid)}

    def test_comment_on_completed_workflow(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        engine.cancel_workflow(wid, "admin-1", "Superseded")

        entry = engine.add_comment(wid, "auditor-3", "Archived for audit", actor_role="auditor")

        assert entry["action"] == "comment"
        assert entry["actorRole"] == "auditor"
        assert _workflow(wid).status == "cancelled"

    def test_comment_requires_text(self, engine, make_workflow):
        wid = make_workflow()["workflowId"]
        with pytest.raises(ValidationError):
            engine.add_comment(wid, "auditor-3", "   ")


# ═════════════════════════════════════════════════════════════════════════════
# Auto-approval & resubmission
# ═════════════════════════════════════════════════════════════════════════════


class TestAutoApproval:
    def _enable_rules(self, stage_number, rules):
        cfg = _stage_config(stage_number)
        cfg.auto_approval_enabled = True
        cfg.auto_approval_rules = rules
        _db.session.commit()

    def test_matching_rules_auto_approve_stage(self, engine, make_workflow, make_document):
        self._enable_rules(1, [
            {"condition": "coverageAmount", "operator": "greater_than", "value": 1000000},
            {"condition": "issuer", "operator": "regex", "value": "^Acme"},
        ])
        doc_id = make_document(metadata={"coverageAmount": 5000000, "issuer": "Acme Mutual"})

        result = make_workflow(document_id=doc_id)

        assert result["currentStage"] == 2
        assert result["nextApproverId"] == "compliance-manager-1"
        stages = engine.get_workflow_status(result["workflowId"])["stages"]
        assert stages[0]["status"] == "auto_approved"
        assert stages[0]["approverId"] == "system"

        entries = _history(result["workflowId"])
        assert [(h.action, h.decision) for h in entries] == [("initiate", None), ("approve", "auto_approve")]

    def test_non_matching_rules_leave_stage_manual(self, make_workflow, make_document):
        self._enable_rules(1, [{"condition": "coverageAmount", "operator": "greater_than", "value": 1000000}])
        doc_id = make_document(metadata={"coverageAmount": 10})

        result = make_workflow(document_id=doc_id)

        assert result["currentStage"] == 1

    def test_auto_approval_after_manual_decision(self, engine, make_workflow, make_document):
        self._enable_rules(2, [{"condition": "verified", "operator": "equals", "value": True}])
        doc_id = make_document(metadata={"verified": True})
        wid = make_workflow(document_id=doc_id)["workflowId"]

        result = _approve(engine, wid, "compliance-officer-1")

        assert result["currentStage"] == 3
        actions = [(h.action, h.decision) for h in _history(wid)]
        assert actions == [("initiate", None), ("approve", "approve"), ("approve", "auto_approve")]

    def test_every_stage_auto_approved_completes(self, make_workflow, make_document):
        for number in (1, 2, 3, 4):
            self._enable_rules(number, [{"condition": "tier", "operator": "equals", "value": "gold"}])
        doc_id = make_document(metadata={"tier": "gold"})

        result = make_workflow(document_id=doc_id)

        assert result["status"] == "approved"
        assert result["isAssigned"] is False
        assert _queue_items(result["workflowId"]) == []


class TestResubmission:
    def test_resubmission_counts_rejections(self, engine, make_workflow, document_id):
        for _ in range(2):
            wid = make_workflow(document_id=document_id)["workflowId"]
            engine.process_approval(wid, "compliance-officer-1", decision="reject", rejection_reason="Blurry")

        third = make_workflow(document_id=document_id)

        assert _workflow(third["workflowId"]).resubmission_count == 2


class TestRuleOperators:
    @pytest.mark.parametrize("rule, metadata, expected", [
        ({"condition": "a", "operator": "equals", "value": 1}, {"a": 1}, True),
        ({"condition": "a", "operator": "not_equals", "value": 1}, {"a": 2}, True),
        ({"condition": "a", "operator": "greater_than", "value": "5"}, {"a": 6}, True),
        ({"condition": "a", "operator": "less_than", "value": 5}, {"a": "x"}, False),
        ({"condition": "a", "operator": "contains", "value": "ins"}, {"a": "insurance"}, True),
        ({"condition": "a", "operator": "contains", "value": 3}, {"a": 12345}, False),
        ({"condition": "a", "operator": "regex", "value": "["}, {"a": "x"}, False),
        ({"condition": "a", "operator": "between", "value": 1}, {"a": 1}, False),
        ({"condition": "missing", "operator": "equals", "value": None}, {"a": 1}, False),
    ])
    def test_rule_matches(self, rule, metadata, expected):
        assert rule_matches(rule, metadata) is expected

    def test_empty_rule_set_never_matches(self):
        assert rules_match([], {"a": 1}) is False
        assert rules_match(None, {"a": 1}) is False


# ═════════════════════════════════════════════════════════════════════════════
# Storage-level guarantees
# ═════════════════════════════════════════════════════════════════════════════


class TestStorageConstraints:
    """The partial unique indexes back up the service-level checks."""

    def test_one_active_workflow_per_document(self, make_workflow, document_id):
        make_workflow(document_id=document_id)

        with pytest.raises(StorageFailureError):
            with unit_of_work():
                _db.session.add(ApprovalWorkflow(
                    document_id=document_id,
                    document_type="insurance",
                    status="pending",
                    sla_due_date=datetime.now(timezone.utc),
                ))

    def test_terminal_workflows_do_not_block(self, engine, make_workflow, document_id):
        wid = make_workflow(document_id=document_id)["workflowId"]
        engine.cancel_workflow(wid, "admin-1", "Replaced")

        with unit_of_work():
            _db.session.add(ApprovalWorkflow(
                document_id=document_id,
                document_type="insurance",
                status="cancelled",
                sla_due_date=datetime.now(timezone.utc),
            ))

    def test_one_pending_item_per_workflow(self, make_workflow):
        wid = make_workflow()["workflowId"]

        with pytest.raises(StorageFailureError):
            with unit_of_work():
                _db.session.add(ApprovalQueueItem(
                    workflow_id=wid, stage_number=1, approver_id="compliance-officer-9",
                ))

        assert len(_queue_items(wid, status="pending")) == 1
