"""
procurement_flow/audit.py

Workflow history helpers.

Goals:
- Capture WHO did WHAT to WHICH document, with the status before and after.
- Store an actor snapshot to preserve identity even if the user changes later.

IMPORTANT:
- log_action ADDS a WorkflowHistory entry to the current SQLAlchemy session.
  The calling operation controls transaction boundaries (commit/rollback), so a
  history row exists exactly when the transition it describes was committed.
"""

from __future__ import annotations

import logging
from typing import Optional

from .constants import DocumentType, HistoryAction
from .extensions import db
from .models import WorkflowHistory

logger = logging.getLogger(__name__)


def log_action(
    doc_type: DocumentType,
    document,
    action: HistoryAction,
    *,
    actor,
    from_status: Optional[str],
    to_status: str,
    details: Optional[str] = None,
) -> WorkflowHistory:
    """
    Add a WorkflowHistory entry to the current db session.

    Parameters:
        doc_type: stage of the document
        document: header model instance with .id (after flush)
        action: Created / Approved / Rejected / Revised / Closed
        actor: acting User
    """
    document_id = getattr(document, "id", None)
    if document_id is None:
        raise ValueError("log_action document must have an 'id' attribute (after flush).")

    entry = WorkflowHistory(
        document_type=DocumentType(doc_type).value,
        document_id=int(document_id),
        document_no=getattr(document, "document_no", None),
        action=HistoryAction(action).value,
        actor_id=actor.id if actor is not None else None,
        actor_snapshot=actor.email if actor is not None else None,
        from_status=from_status,
        to_status=to_status,
        details=details,
    )
    db.session.add(entry)
    logger.debug("History %s %s: %s %s -> %s", entry.document_type, entry.document_no, entry.action, from_status, to_status)
    return entry


def history_for(doc_type: DocumentType, document_id: int) -> list[WorkflowHistory]:
    """History of one document, oldest first."""
    return (
        WorkflowHistory.query
        .filter_by(document_type=DocumentType(doc_type).value, document_id=document_id)
        .order_by(WorkflowHistory.created_at.asc(), WorkflowHistory.id.asc())
        .all()
    )
