"""Document lifecycle orchestrator."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from procurement_flow import workflow
from procurement_flow.approvals import approve_record
from procurement_flow.audit import history_for
from procurement_flow.constants import DocumentType, HistoryAction, WorkflowStatus
from procurement_flow.errors import (
    AuthorizationError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationError,
)
from procurement_flow.extensions import db
from procurement_flow.models import MdfIssue, MtfLine, StfOrder, WorkflowHistory
from procurement_flow.reconciliation import mrf_line_backlog, mtf_line_backlog, otf_line_backlog, stf_line_backlog
from procurement_flow.workflow import ChildLineInput, MtfLineInput

PENDING = WorkflowStatus.PENDING_APPROVAL.value
APPROVED = WorkflowStatus.APPROVED.value
REJECTED = WorkflowStatus.REJECTED.value
CLOSED = WorkflowStatus.CLOSED.value


def child(parent, qty, unit_price=None):
    return ChildLineInput(
        parent_line_id=parent.id,
        quantity=Decimal(str(qty)),
        unit_price=None if unit_price is None else Decimal(str(unit_price)),
    )


class TestCreateMtf:
    def test_create_assigns_number_level_zero_and_history(self, users, project, discipline, item):
        header = workflow.create_mtf(
            users.requester,
            project_id=project.id,
            discipline_id=discipline.id,
            lines=[MtfLineInput(item_id=item.id, quantity=Decimal("4"))],
            attachment={"fileName": "spec.pdf", "fileType": "application/pdf", "content": b"%PDF"},
        )
        assert header.document_no == "MTF-0001"
        assert (header.status, header.current_approval_level) == (PENDING, 0)
        line = header.lines[0]
        # Estimated price defaults to the item's budget price.
        assert line.est_unit_price == Decimal("10.00")
        assert line.est_total_price == Decimal("40.00")
        assert header.attachment["fileName"] == "spec.pdf"

        entries = history_for(DocumentType.MTF, header.id)
        assert [e.action for e in entries] == [HistoryAction.CREATED.value]
        assert entries[0].actor_id == users.requester.id

    def test_numbers_are_sequential(self, make_mtf):
        assert make_mtf(1, approve=False).document_no == "MTF-0001"
        assert make_mtf(1, approve=False).document_no == "MTF-0002"

    def test_requires_initiator_role(self, users, project, discipline, item):
        with pytest.raises(AuthorizationError):
            workflow.create_mtf(
                users.buyer,
                project_id=project.id,
                discipline_id=discipline.id,
                lines=[MtfLineInput(item_id=item.id, quantity=Decimal("1"))],
            )

    @pytest.mark.parametrize("qty", ["0", "-3"])
    def test_quantity_must_be_positive(self, users, project, discipline, item, qty):
        with pytest.raises(ValidationError) as exc:
            workflow.create_mtf(
                users.requester,
                project_id=project.id,
                discipline_id=discipline.id,
                lines=[
                    MtfLineInput(item_id=item.id, quantity=Decimal("1")),
                    MtfLineInput(item_id=item.id, quantity=Decimal(qty)),
                ],
            )
        assert exc.value.details["line"] == 1
        assert db.session.query(MtfLine).count() == 0

    def test_unknown_item(self, users, project, discipline):
        with pytest.raises(ReferentialIntegrityError):
            workflow.create_mtf(
                users.requester,
                project_id=project.id,
                discipline_id=discipline.id,
                lines=[MtfLineInput(item_id=999, quantity=Decimal("1"))],
            )

    def test_project_outside_scope(self, users, other_project, discipline, item):
        with pytest.raises(ReferentialIntegrityError):
            workflow.create_mtf(
                users.requester,
                project_id=other_project.id,
                discipline_id=discipline.id,
                lines=[MtfLineInput(item_id=item.id, quantity=Decimal("1"))],
            )


class TestMtfApproval:
    def test_two_level_approval(self, users, make_mtf):
        header = make_mtf(100, approve=False)

        workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)
        assert (header.status, header.current_approval_level) == (PENDING, 1)

        workflow.approve(DocumentType.MTF, header.id, users.mtf_l2)
        assert (header.status, header.current_approval_level) == (APPROVED, 2)
        assert header.lines[0].status == APPROVED

        details = [e.details for e in history_for(DocumentType.MTF, header.id)]
        assert details[1] == "MTF approved to L1."
        assert details[2] == "MTF fully approved at L2."

    def test_exact_level_required(self, users, make_mtf):
        header = make_mtf(10, approve=False)
        with pytest.raises(AuthorizationError):
            workflow.approve(DocumentType.MTF, header.id, users.mtf_l2)
        workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)
        with pytest.raises(AuthorizationError):
            workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)
        assert header.current_approval_level == 1

    def test_project_membership_required(self, users, make_mtf):
        header = make_mtf(10, approve=False)
        with pytest.raises(AuthorizationError):
            workflow.approve(DocumentType.MTF, header.id, users.outsider)

    def test_stale_expected_level_is_conflict(self, users, make_mtf):
        header = make_mtf(10, approve=False)
        workflow.approve(DocumentType.MTF, header.id, users.mtf_l1, expected_level=0)
        with pytest.raises(StateConflictError):
            workflow.approve(DocumentType.MTF, header.id, users.mtf_l1, expected_level=0)
        assert header.current_approval_level == 1

    def test_line_level_actions_aggregate_to_header(self, users, make_mtf):
        header = make_mtf(10, 20, approve=False)
        first, second = header.lines

        workflow.approve_mtf_line(first.id, users.mtf_l1)
        assert (header.status, header.current_approval_level) == (PENDING, 0)

        workflow.approve_mtf_line(first.id, users.mtf_l2)
        workflow.reject_mtf_line(second.id, users.mtf_l1)
        assert (first.status, second.status) == (APPROVED, REJECTED)
        # Mixed terminal states without pending lines.
        assert header.status == APPROVED

        workflow.close_mtf_line(second.id, users.requester)
        assert second.status == CLOSED
        assert header.status == APPROVED

    def test_header_reject_then_close(self, users, make_mtf):
        header = make_mtf(10, 20, approve=False)
        workflow.reject(DocumentType.MTF, header.id, users.mtf_l1)
        assert header.status == REJECTED
        assert {line.status for line in header.lines} == {REJECTED}

        with pytest.raises(AuthorizationError):
            workflow.close(DocumentType.MTF, header.id, users.mtf_l1)

        workflow.close(DocumentType.MTF, header.id, users.requester)
        assert header.status == CLOSED
        with pytest.raises(StateConflictError):
            workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)


class TestEndToEnd:
    def test_mtf_to_stf_reject_close(self, users, make_mtf, supplier):
        mtf = make_mtf(100)
        line = mtf.lines[0]
        assert (mtf.status, mtf.current_approval_level) == (APPROVED, 2)

        stf = workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(line, 60)])
        assert stf.document_no == "STF-0001"
        assert stf.total_value == Decimal("600.00")
        assert mtf_line_backlog(line) == Decimal("40")

        workflow.reject(DocumentType.STF, stf.id, users.stf_l1)
        assert stf.status == REJECTED
        assert mtf_line_backlog(line) == Decimal("40")

        workflow.close(DocumentType.STF, stf.id, users.buyer)
        assert stf.status == CLOSED

        for op in (
            lambda: workflow.approve(DocumentType.STF, stf.id, users.stf_l1),
            lambda: workflow.reject(DocumentType.STF, stf.id, users.stf_l1),
            lambda: workflow.close(DocumentType.STF, stf.id, users.buyer),
            lambda: workflow.revise(DocumentType.STF, stf.id, users.buyer, lines=[child(line, 10)]),
        ):
            with pytest.raises(StateConflictError):
                op()

        actions = [e.action for e in history_for(DocumentType.STF, stf.id)]
        assert actions == ["Created", "Rejected", "Closed"]

    def test_full_chain_to_site_issue(self, users, make_mtf, make_stf):
        mtf = make_mtf(100)
        stf = make_stf(mtf.lines[0], 80, approve=True)
        stf_line = stf.lines[0]

        otf = workflow.create_otf(
            users.invoicing,
            lines=[child(stf_line, 50)],
            invoice_no="INV-77",
            invoice_date=date(2024, 3, 1),
        )
        assert otf.lines[0].unit_price == stf_line.unit_price
        assert stf_line_backlog(stf_line) == Decimal("30")
        workflow.approve(DocumentType.OTF, otf.id, users.otf_l1)

        mrf = workflow.create_mrf(users.storekeeper, lines=[child(otf.lines[0], 50)])
        assert otf_line_backlog(otf.lines[0]) == Decimal("0")
        with pytest.raises(ValidationError):
            workflow.create_mdf(users.storekeeper, lines=[child(mrf.lines[0], 10)])
        workflow.approve(DocumentType.MRF, mrf.id, users.mrf_l1)

        mdf = workflow.create_mdf(users.storekeeper, lines=[child(mrf.lines[0], 45)])
        assert mdf.document_no == "MDF-0001"
        assert mrf_line_backlog(mrf.lines[0]) == Decimal("5")
        with pytest.raises(ValidationError) as exc:
            workflow.create_mdf(users.storekeeper, lines=[child(mrf.lines[0], 6)])
        assert exc.value.details["backlog"] == 5.0

        with pytest.raises(ValidationError):
            workflow.approve(DocumentType.MDF, mdf.id, users.mrf_l1)


class TestChildCreation:
    def test_partial_fulfillment(self, make_mtf, make_stf):
        line = make_mtf(100).lines[0]
        make_stf(line, 30)
        make_stf(line, 70)
        assert mtf_line_backlog(line) == Decimal("0")

        with pytest.raises(ValidationError) as exc:
            make_stf(line, "0.01")
        assert exc.value.details["backlog"] == 0.0
        assert StfOrder.query.count() == 2

    def test_batch_sums_quantities_per_parent(self, users, make_mtf, supplier):
        line = make_mtf(100).lines[0]
        with pytest.raises(ValidationError) as exc:
            workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(line, 60), child(line, 50)])
        assert exc.value.details["requested"] == 110.0
        assert StfOrder.query.count() == 0
        assert WorkflowHistory.query.filter_by(document_type="stf").count() == 0

    def test_parent_must_be_approved(self, users, make_mtf, supplier):
        line = make_mtf(10, approve=False).lines[0]
        with pytest.raises(ValidationError):
            workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(line, 1)])

    def test_unknown_parent_line(self, users, supplier, make_mtf):
        make_mtf(10)
        with pytest.raises(ReferentialIntegrityError):
            workflow.create_stf(
                users.buyer,
                supplier_id=supplier.id,
                lines=[ChildLineInput(parent_line_id=999, quantity=Decimal("1"))],
            )

    def test_parent_outside_project_scope(self, users, supplier, make_mtf):
        line = make_mtf(10).lines[0]
        with pytest.raises(ReferentialIntegrityError):
            workflow.create_stf(users.outsider, supplier_id=supplier.id, lines=[child(line, 1)])

    def test_inactive_supplier(self, users, supplier, make_mtf):
        line = make_mtf(10).lines[0]
        supplier.active = False
        db.session.commit()
        with pytest.raises(ValidationError):
            workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(line, 1)])

    def test_requires_initiator(self, users, supplier, make_mtf):
        line = make_mtf(10).lines[0]
        with pytest.raises(AuthorizationError):
            workflow.create_stf(users.requester, supplier_id=supplier.id, lines=[child(line, 1)])


class TestRevise:
    def test_revise_rejected_stf_restarts_approval(self, users, make_mtf, make_stf, supplier):
        line = make_mtf(100).lines[0]
        stf = make_stf(line, 60)
        workflow.reject(DocumentType.STF, stf.id, users.stf_l1)

        with pytest.raises(AuthorizationError):
            workflow.revise(DocumentType.STF, stf.id, users.stf_l1, lines=[child(line, 100)])

        # Its own previous quantity is released while revising.
        workflow.revise(DocumentType.STF, stf.id, users.buyer, lines=[child(line, 100, unit_price="9.50")])
        assert (stf.status, stf.current_approval_level) == (PENDING, 0)
        assert [row.order_qty for row in stf.lines] == [Decimal("100.00")]
        assert stf.total_value == Decimal("950.00")
        assert mtf_line_backlog(line) == Decimal("0")

        workflow.approve(DocumentType.STF, stf.id, users.stf_l1)
        assert stf.status == APPROVED

    def test_revise_requires_rejected(self, users, make_mtf, make_stf):
        line = make_mtf(10).lines[0]
        stf = make_stf(line, 5)
        with pytest.raises(StateConflictError):
            workflow.revise(DocumentType.STF, stf.id, users.buyer, lines=[child(line, 5)])

    def test_revise_rejected_mtf_replaces_lines(self, users, make_mtf, item):
        header = make_mtf(10, approve=False)
        workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)
        workflow.reject(DocumentType.MTF, header.id, users.mtf_l2)
        assert header.current_approval_level == 1

        workflow.revise(
            DocumentType.MTF,
            header.id,
            users.requester,
            lines=[MtfLineInput(item_id=item.id, quantity=Decimal("3"), est_unit_price=Decimal("2.00"))],
        )
        assert (header.status, header.current_approval_level) == (PENDING, 0)
        assert [row.request_qty for row in header.lines] == [Decimal("3.00")]
        assert history_for(DocumentType.MTF, header.id)[-1].action == HistoryAction.REVISED.value

    def test_mrf_cannot_be_revised(self, users, make_mtf, make_stf):
        stf = make_stf(make_mtf(10).lines[0], 10, approve=True)
        otf = workflow.create_otf(users.invoicing, lines=[child(stf.lines[0], 10)])
        workflow.approve(DocumentType.OTF, otf.id, users.otf_l1)
        mrf = workflow.create_mrf(users.storekeeper, lines=[child(otf.lines[0], 10)])
        workflow.reject(DocumentType.MRF, mrf.id, users.mrf_l1)

        with pytest.raises(ValidationError):
            workflow.revise(DocumentType.MRF, mrf.id, users.storekeeper, lines=[child(otf.lines[0], 10)])
        workflow.close(DocumentType.MRF, mrf.id, users.storekeeper)
        assert mrf.status == CLOSED


class TestSubmit:
    def test_initialized_document_is_submitted_by_creator(self, users, project, discipline, item):
        header = workflow.create_mtf(
            users.requester,
            project_id=project.id,
            discipline_id=discipline.id,
            lines=[MtfLineInput(item_id=item.id, quantity=Decimal("1"))],
            submit=False,
        )
        assert header.status == WorkflowStatus.INITIALIZED.value
        with pytest.raises(StateConflictError):
            workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)

        workflow.submit(DocumentType.MTF, header.id, users.requester)
        assert header.status == PENDING
        workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)
        assert header.current_approval_level == 1


class TestListing:
    def test_list_is_scoped_and_filterable(self, users, make_mtf):
        pending = make_mtf(1, approve=False)
        approved = make_mtf(2)

        docs = workflow.list_documents(DocumentType.MTF, users.requester)
        assert [d.id for d in docs] == [approved.id, pending.id]

        docs = workflow.list_documents(DocumentType.MTF, users.requester, status=APPROVED)
        assert [d.id for d in docs] == [approved.id]

        assert workflow.list_documents(DocumentType.MTF, users.outsider) == []

    def test_pending_for_me(self, users, make_mtf):
        header = make_mtf(1, approve=False)
        assert [d.id for d in workflow.list_documents(DocumentType.MTF, users.mtf_l1, pending_for_me=True)] == [
            header.id
        ]
        assert workflow.list_documents(DocumentType.MTF, users.mtf_l2, pending_for_me=True) == []

    def test_get_document_outside_scope(self, users, make_mtf):
        header = make_mtf(1)
        with pytest.raises(ReferentialIntegrityError):
            workflow.get_document(DocumentType.MTF, header.id, users.outsider)

    def test_backlog_for_line(self, users, make_mtf, make_stf):
        line = make_mtf(10).lines[0]
        make_stf(line, 4)
        data = workflow.backlog_for_line(DocumentType.MTF, line.id, users.buyer)
        assert data == {
            "document_type": "mtf",
            "document_no": "MTF-0001",
            "line_id": line.id,
            "quantity": 10.0,
            "committed": 4.0,
            "backlog": 6.0,
        }


class TestQuantityPrecision:
    def test_sub_cent_quantity_rejected(self, users, make_mtf, supplier):
        line = make_mtf(10).lines[0]
        with pytest.raises(ValidationError) as exc:
            workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(line, "0.004")])
        assert exc.value.line == 0
        assert StfOrder.query.count() == 0
        assert mtf_line_backlog(line) == Decimal("10")

    def test_sub_cent_price_rejected(self, users, make_mtf, supplier):
        line = make_mtf(10).lines[0]
        with pytest.raises(ValidationError):
            workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(line, 1, unit_price="9.999")])

    def test_two_decimals_stored_exactly(self, users, make_mtf, supplier):
        line = make_mtf(10).lines[0]
        stf = workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(line, "0.01", unit_price="3.50")])
        db.session.expire_all()
        assert stf.lines[0].order_qty == Decimal("0.01")
        assert stf.total_value == Decimal("0.04")

    @pytest.mark.parametrize("raw", ["NaN", "Infinity", "abc"])
    def test_non_numeric_quantity(self, raw):
        with pytest.raises(ValidationError):
            workflow.parse_lines(DocumentType.STF, [{"mtf_line_id": 1, "quantity": raw}])


class TestDocumentNumbers:
    def test_numbers_keep_counting_past_padding(self, app, make_mtf):
        app.config["DOCUMENT_NUMBER_WIDTH"] = 1
        numbers = [make_mtf(1, approve=False).document_no for _ in range(11)]
        assert numbers[:2] == ["MTF-1", "MTF-2"]
        assert numbers[-3:] == ["MTF-9", "MTF-10", "MTF-11"]

    def test_wider_padding_continues_sequence(self, app, make_mtf):
        app.config["DOCUMENT_NUMBER_WIDTH"] = 1
        for _ in range(9):
            make_mtf(1, approve=False)
        app.config["DOCUMENT_NUMBER_WIDTH"] = 4
        assert make_mtf(1, approve=False).document_no == "MTF-0010"


class TestConcurrentApproval:
    def test_second_approver_at_same_level_conflicts(self, monkeypatch, users, make_mtf, make_stf):
        stf = make_stf(make_mtf(100).lines[0], 10)
        check = workflow.require_approver

        def rival_commits_first(doc_type, record, user, max_level):
            check(doc_type, record, user, max_level)
            # Another approver's session commits the same level before our flush.
            with Session(db.engine) as rival:
                approve_record(rival.get(StfOrder, record.id), max_level)
                rival.commit()

        monkeypatch.setattr(workflow, "require_approver", rival_commits_first)
        with pytest.raises(StateConflictError):
            workflow.approve(DocumentType.STF, stf.id, users.stf_l1)
        monkeypatch.undo()

        db.session.expire_all()
        order = db.session.get(StfOrder, stf.id)
        assert (order.status, order.current_approval_level) == (APPROVED, 1)
        actions = [e.action for e in history_for(DocumentType.STF, stf.id)]
        assert HistoryAction.APPROVED.value not in actions

        with pytest.raises(StateConflictError):
            workflow.approve(DocumentType.STF, stf.id, users.stf_l1)

    def test_stale_expected_level(self, users, make_mtf, make_stf):
        stf = make_stf(make_mtf(100).lines[0], 10)
        with pytest.raises(StateConflictError) as exc:
            workflow.approve(DocumentType.STF, stf.id, users.stf_l1, expected_level=1)
        assert exc.value.details == {"expected_level": 1, "current_level": 0}
        assert stf.current_approval_level == 0


def received_line(users, project, discipline, item, supplier, qty=10):
    """An Approved MRF line for project, built through every stage."""
    mtf = workflow.create_mtf(
        users.requester,
        project_id=project.id,
        discipline_id=discipline.id,
        lines=[MtfLineInput(item_id=item.id, quantity=Decimal(qty))],
    )
    for approver in (users.mtf_l1, users.mtf_l2)[: project.max_mtf_approval_level]:
        workflow.approve(DocumentType.MTF, mtf.id, approver)

    stf = workflow.create_stf(users.buyer, supplier_id=supplier.id, lines=[child(mtf.lines[0], qty)])
    workflow.approve(DocumentType.STF, stf.id, users.stf_l1)
    otf = workflow.create_otf(users.invoicing, lines=[child(stf.lines[0], qty)])
    workflow.approve(DocumentType.OTF, otf.id, users.otf_l1)
    mrf = workflow.create_mrf(users.storekeeper, lines=[child(otf.lines[0], qty)])
    workflow.approve(DocumentType.MRF, mrf.id, users.mrf_l1)
    return mrf.lines[0]


class TestSiteIssueScope:
    def test_issue_lines_must_share_one_project(self, users, project, other_project, discipline, item, supplier):
        for user in (users.requester, users.mtf_l1, users.buyer, users.stf_l1,
                     users.invoicing, users.otf_l1, users.storekeeper, users.mrf_l1):
            user.projects.append(other_project)
        db.session.commit()

        here = received_line(users, project, discipline, item, supplier)
        there = received_line(users, other_project, discipline, item, supplier)

        with pytest.raises(ValidationError) as exc:
            workflow.create_mdf(users.storekeeper, lines=[child(here, 1), child(there, 1)])
        assert exc.value.details["project_ids"] == sorted([project.id, other_project.id])
        assert MdfIssue.query.count() == 0

        issue = workflow.create_mdf(users.storekeeper, lines=[child(here, 1)])
        assert issue.project_id == project.id
