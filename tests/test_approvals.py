"""Approval level state machine and MTF header aggregation (no database)."""

from types import SimpleNamespace

import pytest

from procurement_flow.approvals import (
    aggregate_header_status,
    approve_record,
    close_record,
    header_approval_level,
    refresh_mtf_header,
    reject_record,
    reset_for_revision,
    submit_record,
)
from procurement_flow.constants import WorkflowStatus
from procurement_flow.errors import StateConflictError

PENDING = WorkflowStatus.PENDING_APPROVAL.value
APPROVED = WorkflowStatus.APPROVED.value
REJECTED = WorkflowStatus.REJECTED.value
CLOSED = WorkflowStatus.CLOSED.value


def record(status=PENDING, level=0):
    return SimpleNamespace(status=status, current_approval_level=level)


class TestApprove:
    def test_below_max_stays_pending_and_advances_one_level(self):
        doc = record()
        t = approve_record(doc, max_level=2)
        assert (doc.status, doc.current_approval_level) == (PENDING, 1)
        assert not t.is_final_approval

    def test_reaching_max_finalizes(self):
        doc = record(level=1)
        t = approve_record(doc, max_level=2)
        assert (doc.status, doc.current_approval_level) == (APPROVED, 2)
        assert t.is_final_approval

    def test_single_level_project(self):
        doc = record()
        approve_record(doc, max_level=1)
        assert doc.status == APPROVED

    @pytest.mark.parametrize("status", [APPROVED, REJECTED, CLOSED, WorkflowStatus.INITIALIZED.value])
    def test_only_pending_can_be_approved(self, status):
        doc = record(status=status, level=1)
        with pytest.raises(StateConflictError):
            approve_record(doc, max_level=2)
        assert doc.status == status and doc.current_approval_level == 1

    def test_expected_level_mismatch_is_conflict(self):
        doc = record(level=1)
        with pytest.raises(StateConflictError):
            approve_record(doc, max_level=3, expected_level=0)
        assert doc.current_approval_level == 1

    def test_level_beyond_max_is_conflict(self):
        doc = record(level=2)
        with pytest.raises(StateConflictError):
            approve_record(doc, max_level=2)


class TestRejectCloseRevise:
    def test_reject_keeps_level(self):
        doc = record(level=1)
        reject_record(doc)
        assert (doc.status, doc.current_approval_level) == (REJECTED, 1)

    def test_close_requires_rejected(self):
        with pytest.raises(StateConflictError):
            close_record(record())
        doc = record(status=REJECTED)
        close_record(doc)
        assert doc.status == CLOSED

    def test_closed_is_terminal(self):
        doc = record(status=CLOSED, level=1)
        for op in (lambda: approve_record(doc, 2), lambda: reject_record(doc), lambda: close_record(doc),
                   lambda: reset_for_revision(doc)):
            with pytest.raises(StateConflictError):
                op()
        assert doc.status == CLOSED

    def test_revision_resets_level(self):
        doc = record(status=REJECTED, level=2)
        t = reset_for_revision(doc)
        assert (doc.status, doc.current_approval_level) == (PENDING, 0)
        assert (t.from_level, t.to_level) == (2, 0)

    def test_revision_before_submission_returns_to_initialized(self):
        doc = record(status=REJECTED, level=1)
        reset_for_revision(doc, submit=False)
        assert doc.status == WorkflowStatus.INITIALIZED.value

    def test_submit(self):
        doc = record(status=WorkflowStatus.INITIALIZED.value)
        submit_record(doc)
        assert (doc.status, doc.current_approval_level) == (PENDING, 0)
        with pytest.raises(StateConflictError):
            submit_record(doc)


class TestAggregation:
    @pytest.mark.parametrize(
        "statuses, expected",
        [
            ([APPROVED, APPROVED], APPROVED),
            ([APPROVED, PENDING], PENDING),
            ([APPROVED, REJECTED], APPROVED),
            ([REJECTED, REJECTED], REJECTED),
            ([CLOSED, CLOSED], CLOSED),
            ([REJECTED, CLOSED], APPROVED),
            ([PENDING, REJECTED, CLOSED], PENDING),
            ([], WorkflowStatus.INITIALIZED.value),
        ],
    )
    def test_header_status(self, statuses, expected):
        assert aggregate_header_status(statuses) == expected
        # order does not matter
        assert aggregate_header_status(list(reversed(statuses))) == expected

    def test_header_level_is_least_advanced_line(self):
        assert header_approval_level([2, 1, 3]) == 1
        assert header_approval_level([]) == 0

    def test_refresh_header_from_lines(self):
        header = SimpleNamespace(
            status=PENDING,
            current_approval_level=0,
            lines=[record(APPROVED, 2), record(PENDING, 1)],
        )
        refresh_mtf_header(header)
        assert (header.status, header.current_approval_level) == (PENDING, 1)

        header.lines[1].status, header.lines[1].current_approval_level = APPROVED, 2
        t = refresh_mtf_header(header)
        assert (header.status, header.current_approval_level) == (APPROVED, 2)
        assert t.from_status == PENDING
