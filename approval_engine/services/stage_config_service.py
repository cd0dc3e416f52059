"""
Stage configuration store — read side plus the default seed.

Transaction policy: functions use flush(), never commit().
Caller (CLI command or test fixture) is responsible for db.session.commit().
"""

import logging

from sqlalchemy import select

from approval_engine.core.exceptions import ConfigurationMissingError, ValidationError
from approval_engine.models import db
from approval_engine.models.approval import StageConfiguration

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
# LOOKUP
# ═══════════════════════════════════════════════════════════════════

def load_stage_configuration(document_type: str) -> list[StageConfiguration]:
    """Active stages of ``document_type`` ordered by stage number.

    Raises:
        ConfigurationMissingError: no active stages, or the active stage
            numbers are not exactly 1..N.
    """
    stages = db.session.execute(
        select(StageConfiguration)
        .where(
            StageConfiguration.document_type == document_type,
            StageConfiguration.is_active.is_(True),
        )
        .order_by(StageConfiguration.stage_number)
    ).scalars().all()

    if not stages:
        raise ConfigurationMissingError(document_type)

    numbers = [s.stage_number for s in stages]
    if numbers != list(range(1, len(numbers) + 1)):
        logger.error(
            "Non-contiguous stage configuration for %s: %s",
            document_type, numbers,
            extra={"document_type": document_type},
        )
        raise ConfigurationMissingError(document_type, reason="stage numbers are not contiguous from 1")

    return list(stages)


def stage_config_for(document_type: str, stage_number: int) -> StageConfiguration | None:
    """Single active stage, or None.  Used where a full load is not needed."""
    return db.session.execute(
        select(StageConfiguration).where(
            StageConfiguration.document_type == document_type,
            StageConfiguration.stage_number == stage_number,
            StageConfiguration.is_active.is_(True),
        )
    ).scalar_one_or_none()


def list_stage_configurations(document_type: str) -> list[dict]:
    if not document_type or not str(document_type).strip():
        raise ValidationError("documentType is required", details={"field": "documentType"})
    return [s.to_dict() for s in load_stage_configuration(document_type.strip())]


# ═══════════════════════════════════════════════════════════════════
# SEED
# ═══════════════════════════════════════════════════════════════════

DEFAULT_STAGES = (
    {
        "stage_number": 1,
        "stage_name": "Automated Validation",
        "required_approver_role": "compliance_officer",
        "allowed_approver_roles": ["compliance_officer", "compliance_manager"],
        "standard_sla_hours": 24,
        "escalation_threshold_hours": 48,
        "is_required": True,
        "can_skip": False,
    },
    {
        "stage_number": 2,
        "stage_name": "Compliance Review",
        "required_approver_role": "compliance_manager",
        "allowed_approver_roles": ["compliance_manager"],
        "standard_sla_hours": 24,
        "escalation_threshold_hours": 48,
        "is_required": True,
        "can_skip": False,
    },
    {
        "stage_number": 3,
        "stage_name": "Legal Review",
        "required_approver_role": "legal_reviewer",
        "allowed_approver_roles": ["legal_reviewer"],
        "standard_sla_hours": 48,
        "escalation_threshold_hours": 48,
        "is_required": False,
        "can_skip": True,
    },
    {
        "stage_number": 4,
        "stage_name": "Final Approval",
        "required_approver_role": "operations_manager",
        "allowed_approver_roles": ["operations_manager", "admin"],
        "standard_sla_hours": 24,
        "escalation_threshold_hours": 48,
        "is_required": True,
        "can_skip": False,
    },
)


def seed_default_stage_configurations(document_types) -> int:
    """
    Insert the four default stages for every document type.
    Safe to run multiple times — skips existing (document_type, stage_number) pairs.

    Returns:
        Number of configuration rows created.
    """
    created = 0
    for document_type in document_types:
        existing = set(db.session.execute(
            select(StageConfiguration.stage_number)
            .where(StageConfiguration.document_type == document_type)
        ).scalars())
        for stage in DEFAULT_STAGES:
            if stage["stage_number"] in existing:
                continue
            db.session.add(StageConfiguration(document_type=document_type, **stage))
            created += 1

    if created > 0:
        db.session.flush()
        logger.info("Seeded %d stage configurations", created)

    return created
