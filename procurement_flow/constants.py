"""
Workflow vocabulary: statuses, document types, role names.

Values are the strings persisted in the database and returned by the API.
"""

from __future__ import annotations

from enum import Enum

from .errors import ValidationError


class WorkflowStatus(str, Enum):
    INITIALIZED = "Initialized"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CLOSED = "Closed"


class DocumentType(str, Enum):
    MTF = "mtf"
    STF = "stf"
    OTF = "otf"
    MRF = "mrf"
    MDF = "mdf"

    @classmethod
    def parse(cls, raw: str) -> "DocumentType":
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown document type '{raw}'.") from None


class RoleName(str, Enum):
    ADMINISTRATOR = "Administrator"
    REQUESTER = "Requester"
    MTF_APPROVER = "MTF Approver"
    STF_INITIATOR = "STF Initiator"
    STF_APPROVER = "STF Approver"
    OTF_INITIATOR = "OTF Initiator"
    OTF_APPROVER = "OTF Approver"
    MRF_INITIATOR = "MRF Initiator"
    MRF_APPROVER = "MRF Approver"
    VIEWER = "Viewer"


class HistoryAction(str, Enum):
    CREATED = "Created"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    SUBMITTED = "Submitted"
    REVISED = "Revised"
    CLOSED = "Closed"


# Document types that go through the leveled approval chain.
APPROVABLE_TYPES = (DocumentType.MTF, DocumentType.STF, DocumentType.OTF, DocumentType.MRF)

# Document types whose rejected content can be revised and resubmitted.
REVISABLE_TYPES = (DocumentType.MTF, DocumentType.STF, DocumentType.OTF)
