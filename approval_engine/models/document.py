"""
Contractor Document Approval Platform
Contractor document projection.

The document table is owned by the contractor-management side of the system.
Only the columns the approval engine reads are mapped here: existence checks,
the queue join (name / type / contractor) and auto-approval rule evaluation
(metadata).
"""

import uuid
from datetime import datetime, timezone

from approval_engine.models import db


class ContractorDocument(db.Model):
    """Read-side projection of an uploaded contractor document."""

    __tablename__ = "contractor_documents"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contractor_id = db.Column(db.String(36), nullable=True, index=True)
    document_name = db.Column(db.String(255), nullable=True)
    document_type = db.Column(db.String(50), nullable=False, index=True)
    document_metadata = db.Column(
        "metadata",
        db.JSON,
        nullable=True,
        comment="Free-form attributes (expiry dates, amounts, issuer) used by auto-approval rules",
    )
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.document_name or "Untitled Document",
            "type": self.document_type or "unknown",
            "contractorId": self.contractor_id,
        }

    def __repr__(self) -> str:
        return f"<ContractorDocument {self.id} {self.document_type}>"
