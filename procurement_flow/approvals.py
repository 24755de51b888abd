"""
procurement_flow/approvals.py

Approval level state machine and MTF header status aggregation.

    Initialized -> Pending Approval -> Approved | Rejected ; Rejected -> Closed

The functions here mutate one record (an MTF line or an STF/OTF/MRF header)
in memory and return the Transition that happened. They do not check who is
acting (see security.py) and do not touch the session (see workflow.py).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .constants import WorkflowStatus
from .errors import StateConflictError


@dataclass(frozen=True)
class Transition:
    from_status: str
    to_status: str
    from_level: int
    to_level: int

    @property
    def is_final_approval(self) -> bool:
        return self.to_status == WorkflowStatus.APPROVED and self.from_status != WorkflowStatus.APPROVED


def _status_value(status) -> str:
    return status.value if isinstance(status, WorkflowStatus) else str(status)


def require_status(record, required: WorkflowStatus, action: str) -> None:
    if record.status != required:
        raise StateConflictError(
            f"Cannot {action}: status is '{record.status}', expected '{required.value}'.",
            details={"status": record.status, "required_status": required.value},
        )


def required_level(record) -> int:
    """Level the next approval grants."""
    return int(record.current_approval_level or 0) + 1


def approve_record(record, max_level: int, *, expected_level: Optional[int] = None) -> Transition:
    """
    Advance one approval level.

    Reaching max_level finalizes to Approved; below it the record stays
    Pending Approval for the next level's approver. expected_level lets the
    caller assert the level it saw (check-and-set).
    """
    require_status(record, WorkflowStatus.PENDING_APPROVAL, "approve")

    current = int(record.current_approval_level or 0)
    if expected_level is not None and expected_level != current:
        raise StateConflictError(
            f"Approval level changed: expected L{expected_level}, found L{current}.",
            details={"expected_level": expected_level, "current_level": current},
        )

    new_level = current + 1
    if new_level > max_level:
        raise StateConflictError(
            f"Approval level L{new_level} exceeds the configured maximum L{max_level}.",
            details={"required_level": new_level, "max_level": max_level},
        )

    new_status = WorkflowStatus.APPROVED if new_level >= max_level else WorkflowStatus.PENDING_APPROVAL

    record.current_approval_level = new_level
    record.status = new_status.value
    return Transition(WorkflowStatus.PENDING_APPROVAL.value, new_status.value, current, new_level)


def reject_record(record) -> Transition:
    """Pending Approval -> Rejected. The level is kept."""
    require_status(record, WorkflowStatus.PENDING_APPROVAL, "reject")
    level = int(record.current_approval_level or 0)
    record.status = WorkflowStatus.REJECTED.value
    return Transition(WorkflowStatus.PENDING_APPROVAL.value, WorkflowStatus.REJECTED.value, level, level)


def close_record(record) -> Transition:
    """Rejected -> Closed (terminal)."""
    require_status(record, WorkflowStatus.REJECTED, "close")
    level = int(record.current_approval_level or 0)
    record.status = WorkflowStatus.CLOSED.value
    return Transition(WorkflowStatus.REJECTED.value, WorkflowStatus.CLOSED.value, level, level)


def submit_record(record) -> Transition:
    """Initialized -> Pending Approval."""
    require_status(record, WorkflowStatus.INITIALIZED, "submit")
    record.status = WorkflowStatus.PENDING_APPROVAL.value
    record.current_approval_level = 0
    return Transition(WorkflowStatus.INITIALIZED.value, WorkflowStatus.PENDING_APPROVAL.value, 0, 0)


def reset_for_revision(record, *, submit: bool = True) -> Transition:
    """Rejected -> Pending Approval (or Initialized), level back to 0."""
    require_status(record, WorkflowStatus.REJECTED, "revise")
    level = int(record.current_approval_level or 0)
    target = WorkflowStatus.PENDING_APPROVAL if submit else WorkflowStatus.INITIALIZED
    record.status = target.value
    record.current_approval_level = 0
    return Transition(WorkflowStatus.REJECTED.value, target.value, level, 0)


# ---------------------------------------------------------------------
# MTF header aggregation
# ---------------------------------------------------------------------
def aggregate_header_status(statuses: Iterable) -> str:
    """
    Header status from the multiset of its line statuses.

    1. any Pending Approval                   -> Pending Approval
    2. all lines share one status             -> that status
    3. no pending, some Approved or Closed    -> Approved
    4. otherwise                              -> Rejected
    """
    values = [_status_value(s) for s in statuses]
    if not values:
        return WorkflowStatus.INITIALIZED.value

    distinct = set(values)
    if WorkflowStatus.PENDING_APPROVAL.value in distinct:
        return WorkflowStatus.PENDING_APPROVAL.value
    if len(distinct) == 1:
        return values[0]
    if WorkflowStatus.APPROVED.value in distinct or WorkflowStatus.CLOSED.value in distinct:
        return WorkflowStatus.APPROVED.value
    return WorkflowStatus.REJECTED.value


def header_approval_level(levels: Iterable[int]) -> int:
    """A header is only as advanced as its least advanced line."""
    values = [int(level or 0) for level in levels]
    return min(values) if values else 0


def refresh_mtf_header(header) -> Transition:
    """Recompute an MTF header's status and level from its lines (in memory)."""
    old_status = header.status
    old_level = int(header.current_approval_level or 0)

    header.status = aggregate_header_status(line.status for line in header.lines)
    header.current_approval_level = header_approval_level(line.current_approval_level for line in header.lines)
    return Transition(old_status, header.status, old_level, header.current_approval_level)
