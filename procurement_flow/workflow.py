"""
procurement_flow/workflow.py

Document lifecycle orchestrator: create / approve / reject / close / revise /
submit for every stage of the chain, plus the scoped read helpers the API uses.

Every mutating operation:
1) validates completely (state first, then authorization, then quantities),
2) mutates in memory,
3) flushes, writes exactly one WorkflowHistory row,
4) commits once.

IMPORTANT:
- Nothing is committed when an operation raises. _transaction() rolls back and
  translates optimistic-lock failures (StaleDataError) and unique-key clashes
  into StateConflictError, so concurrent writers get a retryable conflict.
- Parent lines are locked (SELECT ... FOR UPDATE) before backlog is read, so
  check-and-reserve of quantities is atomic per parent line.
- The acting user is always passed explicitly; routes pass current_user.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from .approvals import (
    Transition,
    approve_record,
    close_record,
    refresh_mtf_header,
    reject_record,
    require_status,
    required_level,
    reset_for_revision,
    submit_record,
)
from .audit import history_for, log_action
from .constants import APPROVABLE_TYPES, REVISABLE_TYPES, DocumentType, HistoryAction, WorkflowStatus
from .errors import ReferentialIntegrityError, StateConflictError, ValidationError
from .extensions import db
from .models import (
    Discipline,
    Item,
    MdfIssue,
    MdfIssueLine,
    MrfHeader,
    MrfLine,
    MtfHeader,
    MtfLine,
    OtfOrder,
    OtfOrderLine,
    StfOrder,
    StfOrderLine,
    Supplier,
    User,
)
from .reconciliation import backlogs_for, line_backlog, line_total
from .repository import (
    child_spec_of,
    get_header,
    get_line,
    get_project,
    lock_lines,
    max_approval_level,
    spec_for,
)
from .security import (
    can_approve,
    require_approver,
    require_creator,
    require_initiator,
    require_project_scope,
)
from .utils import next_document_no, parse_decimal, parse_optional_int

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ---------------------------------------------------------------------
# Transaction boundary
# ---------------------------------------------------------------------
@contextmanager
def _transaction() -> Iterator[None]:
    """Commit on success; roll back on any failure."""
    try:
        yield
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise StateConflictError("The document was modified concurrently. Reload and retry.") from None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error, rolled back: %s", exc.orig)
        raise StateConflictError("A conflicting record was written concurrently. Retry the operation.") from None
    except Exception:
        db.session.rollback()
        raise


# ---------------------------------------------------------------------
# Line inputs
# ---------------------------------------------------------------------
def _first(payload: dict, *keys):
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _require_mapping(index: int, payload) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Each line must be an object.", line=index)
    return payload


def _required_decimal(index: int, payload: dict, *keys) -> Decimal:
    raw = _first(payload, *keys)
    value = parse_decimal(raw)
    if value is None:
        raise ValidationError(f"'{keys[0]}' is required and must be a number.", line=index)
    return value


def _optional_decimal(index: int, payload: dict, *keys) -> Optional[Decimal]:
    raw = _first(payload, *keys)
    if raw is None or raw == "":
        return None
    value = parse_decimal(raw)
    if value is None:
        raise ValidationError(f"'{keys[0]}' must be a number.", line=index)
    return value


@dataclass(frozen=True)
class MtfLineInput:
    """One requested item on an MTF."""

    item_id: int
    quantity: Decimal
    description: Optional[str] = None
    est_unit_price: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, index: int, payload: Any) -> "MtfLineInput":
        payload = _require_mapping(index, payload)
        item_id = parse_optional_int(_first(payload, "item_id", "itemId"))
        if item_id is None:
            raise ValidationError("'item_id' is required.", line=index)
        return cls(
            item_id=item_id,
            quantity=_required_decimal(index, payload, "quantity", "request_qty"),
            description=(_first(payload, "description", "material_description") or None),
            est_unit_price=_optional_decimal(index, payload, "est_unit_price", "unit_price"),
        )


@dataclass(frozen=True)
class ChildLineInput:
    """One line of an STF/OTF/MRF/MDF: a quantity drawn from a parent line."""

    parent_line_id: int
    quantity: Decimal
    unit_price: Optional[Decimal] = None
    description: Optional[str] = None

    @classmethod
    def from_payload(cls, index: int, payload: Any, parent_key: str) -> "ChildLineInput":
        payload = _require_mapping(index, payload)
        parent_id = parse_optional_int(_first(payload, parent_key, "parent_line_id"))
        if parent_id is None:
            raise ValidationError(f"'{parent_key}' is required.", line=index)
        return cls(
            parent_line_id=parent_id,
            quantity=_required_decimal(index, payload, "quantity", "order_qty", "received_qty", "delivered_qty"),
            unit_price=_optional_decimal(index, payload, "unit_price"),
            description=(_first(payload, "description", "material_description") or None),
        )


def parse_lines(doc_type: DocumentType, payload_lines: Any) -> list:
    """JSON 'lines' array -> typed line inputs for doc_type."""
    doc_type = DocumentType(doc_type)
    if not isinstance(payload_lines, list):
        raise ValidationError("'lines' must be a list.")
    if doc_type == DocumentType.MTF:
        return [MtfLineInput.from_payload(i, raw) for i, raw in enumerate(payload_lines)]
    parent_key = spec_for(doc_type).parent_fk
    return [ChildLineInput.from_payload(i, raw, parent_key) for i, raw in enumerate(payload_lines)]


# ---------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------
def _initial_status(submit: bool) -> str:
    return (WorkflowStatus.PENDING_APPROVAL if submit else WorkflowStatus.INITIALIZED).value


def _require_lines(doc_type: DocumentType, lines: Sequence) -> None:
    if not lines:
        raise ValidationError(f"A {spec_for(doc_type).prefix} needs at least one line.")


def _has_sub_cent(value: Decimal) -> bool:
    # Quantity and price columns are Numeric(12, 2).
    return value != value.quantize(CENT)


def _validate_quantities(lines: Sequence) -> None:
    for index, entry in enumerate(lines):
        if entry.quantity is None or entry.quantity <= 0:
            raise ValidationError(
                "Quantity must be greater than zero.",
                line=index,
                details={"quantity": None if entry.quantity is None else float(entry.quantity)},
            )
        if _has_sub_cent(entry.quantity):
            raise ValidationError(
                "Quantity cannot have more than 2 decimal places.",
                line=index,
                details={"quantity": str(entry.quantity)},
            )


def _validate_price(index: int, price: Optional[Decimal]) -> None:
    if price is None:
        return
    if price < 0:
        raise ValidationError("Unit price cannot be negative.", line=index, details={"unit_price": float(price)})
    if _has_sub_cent(price):
        raise ValidationError(
            "Unit price cannot have more than 2 decimal places.",
            line=index,
            details={"unit_price": str(price)},
        )


def _load_items(lines: Sequence[MtfLineInput]) -> Dict[int, Item]:
    ids = sorted({entry.item_id for entry in lines})
    items = {item.id: item for item in Item.query.filter(Item.id.in_(ids)).all()}
    for index, entry in enumerate(lines):
        if entry.item_id not in items:
            raise ReferentialIntegrityError(
                f"Item {entry.item_id} does not exist.",
                details={"item_id": entry.item_id, "line": index},
            )
    return items


def _get_discipline(discipline_id: int) -> Discipline:
    discipline = db.session.get(Discipline, discipline_id)
    if discipline is None:
        raise ReferentialIntegrityError(
            f"Discipline {discipline_id} does not exist.",
            details={"discipline_id": discipline_id},
        )
    return discipline


def _get_active_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id) if supplier_id is not None else None
    if supplier is None:
        raise ReferentialIntegrityError(f"Supplier {supplier_id} does not exist.", details={"supplier_id": supplier_id})
    if not supplier.active:
        raise ValidationError(f"Supplier '{supplier.name}' is inactive.", details={"supplier_id": supplier_id})
    return supplier


def _parent_gate_status(parent_type: DocumentType, parent_line) -> str:
    """Status that decides whether a parent line can source child lines."""
    if parent_type == DocumentType.MTF:
        # MTF lines are approved individually.
        return parent_line.status
    return getattr(parent_line, spec_for(parent_type).header_rel).status


@dataclass
class _ValidatedParents:
    lines: Dict[int, Any]
    project_id: Optional[int]
    discipline_id: Optional[int]


def _validate_child_lines(
    doc_type: DocumentType,
    user: User,
    lines: Sequence[ChildLineInput],
    *,
    exclude_header_id: Optional[int] = None,
) -> _ValidatedParents:
    """
    Check a child document's lines against their parent lines.

    - quantities positive, parents exist and are locked for the transaction;
    - parent is Approved (MTF: the line, otherwise the parent header);
    - parent is inside the user's projects;
    - one project per document, one discipline per document (MDF excepted);
    - requested quantity per parent line <= parent backlog.
    """
    spec = spec_for(doc_type)
    parent_type = spec.parent_type
    parent_spec = spec_for(parent_type)

    _require_lines(doc_type, lines)
    _validate_quantities(lines)
    for index, entry in enumerate(lines):
        _validate_price(index, entry.unit_price)

    parents = lock_lines(parent_type, [entry.parent_line_id for entry in lines])

    project_ids = set()
    discipline_ids = set()
    for index, entry in enumerate(lines):
        parent = parents[entry.parent_line_id]
        parent_header = getattr(parent, parent_spec.header_rel)

        require_project_scope(user, parent_header.project_id)

        gate = _parent_gate_status(parent_type, parent)
        if gate != WorkflowStatus.APPROVED:
            raise ValidationError(
                f"{parent_spec.prefix} {parent_header.document_no} line {parent.id} is '{gate}'; "
                f"only Approved {parent_spec.prefix} lines can be used on a {spec.prefix}.",
                line=index,
                details={"parent_line_id": parent.id, "parent_status": gate},
            )
        project_ids.add(parent_header.project_id)
        discipline_ids.add(parent_header.discipline_id)

    if len(project_ids) > 1:
        raise ValidationError(
            f"All lines of a {spec.prefix} must come from the same project.",
            details={"project_ids": sorted(project_ids)},
        )
    # MDF carries no discipline of its own.
    if doc_type != DocumentType.MDF and len(discipline_ids) > 1:
        raise ValidationError(
            f"All lines of a {spec.prefix} must come from the same discipline.",
            details={"discipline_ids": sorted(discipline_ids)},
        )

    requested: Dict[int, Decimal] = defaultdict(Decimal)
    for entry in lines:
        requested[entry.parent_line_id] += entry.quantity

    available = backlogs_for(parent_type, list(parents.values()), exclude_child_header_id=exclude_header_id)
    for index, entry in enumerate(lines):
        parent_id = entry.parent_line_id
        if requested[parent_id] > available[parent_id]:
            raise ValidationError(
                f"Quantity exceeds the remaining backlog of {parent_spec.prefix} line {parent_id}.",
                line=index,
                details={
                    "parent_line_id": parent_id,
                    "backlog": float(available[parent_id]),
                    "requested": float(requested[parent_id]),
                },
            )

    return _ValidatedParents(
        lines=parents,
        project_id=next(iter(project_ids)) if len(project_ids) == 1 else None,
        discipline_id=next(iter(discipline_ids)) if len(discipline_ids) == 1 else None,
    )


def _ensure_no_children(doc_type: DocumentType, line_ids: Sequence[int]) -> None:
    """Lines already consumed downstream cannot be replaced."""
    child = child_spec_of(doc_type)
    if child is None or not line_ids:
        return
    parent_col = getattr(child.line_model, child.parent_fk)
    used = child.line_model.query.filter(parent_col.in_(list(line_ids))).count()
    if used:
        raise StateConflictError(
            f"{spec_for(doc_type).prefix} lines are already referenced by {child.prefix} documents.",
            details={"referencing_lines": used},
        )


def _check_expected_level(record, expected_level: Optional[int]) -> None:
    current = int(record.current_approval_level or 0)
    if expected_level is not None and expected_level != current:
        raise StateConflictError(
            f"Approval level changed: expected L{expected_level}, found L{current}.",
            details={"expected_level": expected_level, "current_level": current},
        )


def _check_level_bound(record, max_level: int) -> None:
    needed = required_level(record)
    if needed > max_level:
        raise StateConflictError(
            f"No approval level L{needed} is configured (maximum L{max_level}).",
            details={"required_level": needed, "max_level": max_level},
        )


def _require_approvable(doc_type: DocumentType) -> None:
    if doc_type not in APPROVABLE_TYPES:
        raise ValidationError(f"{spec_for(doc_type).prefix} documents have no approval workflow.")


def _approval_details(prefix: str, transition: Transition, count: int = 1) -> str:
    scope = f" ({count} line(s))" if count > 1 else ""
    if transition.is_final_approval:
        return f"{prefix} fully approved at L{transition.to_level}{scope}."
    return f"{prefix} approved to L{transition.to_level}{scope}."


# ---------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------
def create_mtf(
    user: User,
    *,
    project_id: int,
    discipline_id: int,
    lines: Sequence[MtfLineInput],
    attachment: Optional[dict] = None,
    submit: bool = True,
) -> MtfHeader:
    """Create an MTF; every line starts at level 0."""
    with _transaction():
        require_initiator(DocumentType.MTF, user)
        project = get_project(project_id)
        require_project_scope(user, project.id)
        discipline = _get_discipline(discipline_id)

        _require_lines(DocumentType.MTF, lines)
        _validate_quantities(lines)
        items = _load_items(lines)

        status = _initial_status(submit)
        header = MtfHeader(
            document_no=next_document_no_for(DocumentType.MTF),
            project_id=project.id,
            discipline_id=discipline.id,
            status=status,
            current_approval_level=0,
            created_by=user.id,
        )
        header.set_attachment(attachment)
        header.lines.extend(_build_mtf_lines(lines, items, status))
        refresh_mtf_header(header)

        db.session.add(header)
        db.session.flush()
        log_action(
            DocumentType.MTF, header, HistoryAction.CREATED,
            actor=user, from_status=None, to_status=header.status,
            details=f"MTF created with {len(lines)} line(s).",
        )

    logger.info("%s created by user %s (%d lines)", header.document_no, user.id, len(header.lines))
    return header


def _build_mtf_lines(lines: Sequence[MtfLineInput], items: Dict[int, Item], status: str) -> List[MtfLine]:
    built = []
    for index, entry in enumerate(lines):
        item = items[entry.item_id]
        unit_price = entry.est_unit_price
        if unit_price is None:
            unit_price = Decimal(str(item.budget_unit_price or 0))
        _validate_price(index, unit_price)
        built.append(MtfLine(
            item_id=item.id,
            material_description=entry.description or item.material_description or item.material_name,
            request_qty=entry.quantity,
            est_unit_price=unit_price,
            est_total_price=line_total(entry.quantity, unit_price),
            status=status,
            current_approval_level=0,
        ))
    return built


def next_document_no_for(doc_type: DocumentType) -> str:
    spec = spec_for(doc_type)
    return next_document_no(spec.header_model, spec.prefix)


def _build_stf_lines(lines: Sequence[ChildLineInput], parents: Dict[int, MtfLine]) -> List[StfOrderLine]:
    built = []
    for entry in lines:
        parent = parents[entry.parent_line_id]
        unit_price = entry.unit_price if entry.unit_price is not None else parent.est_unit_price
        built.append(StfOrderLine(
            mtf_line_id=parent.id,
            material_description=entry.description or parent.material_description,
            order_qty=entry.quantity,
            unit_price=unit_price or 0,
        ))
    return built


def _build_otf_lines(lines: Sequence[ChildLineInput], parents: Dict[int, StfOrderLine]) -> List[OtfOrderLine]:
    built = []
    for entry in lines:
        parent = parents[entry.parent_line_id]
        unit_price = entry.unit_price if entry.unit_price is not None else parent.unit_price
        built.append(OtfOrderLine(
            stf_order_line_id=parent.id,
            order_qty=entry.quantity,
            unit_price=unit_price or 0,
        ))
    return built


def create_stf(
    user: User,
    *,
    supplier_id: int,
    lines: Sequence[ChildLineInput],
    attachment: Optional[dict] = None,
    submit: bool = True,
) -> StfOrder:
    """Order approved MTF lines from one supplier."""
    with _transaction():
        require_initiator(DocumentType.STF, user)
        supplier = _get_active_supplier(supplier_id)
        parents = _validate_child_lines(DocumentType.STF, user, lines)

        order = StfOrder(
            document_no=next_document_no_for(DocumentType.STF),
            project_id=parents.project_id,
            discipline_id=parents.discipline_id,
            supplier_id=supplier.id,
            status=_initial_status(submit),
            current_approval_level=0,
            created_by=user.id,
        )
        order.set_attachment(attachment)
        order.lines.extend(_build_stf_lines(lines, parents.lines))
        order.recalc_totals()

        db.session.add(order)
        db.session.flush()
        log_action(
            DocumentType.STF, order, HistoryAction.CREATED,
            actor=user, from_status=None, to_status=order.status,
            details=f"STF created for supplier '{supplier.name}' with {len(lines)} line(s).",
        )

    logger.info("%s created by user %s (total %s)", order.document_no, user.id, order.total_value)
    return order


def create_otf(
    user: User,
    *,
    lines: Sequence[ChildLineInput],
    invoice_no: Optional[str] = None,
    invoice_date: Optional[date] = None,
    attachment: Optional[dict] = None,
    submit: bool = True,
) -> OtfOrder:
    """Invoice approved STF lines."""
    with _transaction():
        require_initiator(DocumentType.OTF, user)
        parents = _validate_child_lines(DocumentType.OTF, user, lines)

        order = OtfOrder(
            document_no=next_document_no_for(DocumentType.OTF),
            project_id=parents.project_id,
            discipline_id=parents.discipline_id,
            status=_initial_status(submit),
            current_approval_level=0,
            invoice_no=(invoice_no or "").strip() or None,
            invoice_date=invoice_date,
            created_by=user.id,
        )
        order.set_attachment(attachment)
        order.lines.extend(_build_otf_lines(lines, parents.lines))
        order.recalc_totals()

        db.session.add(order)
        db.session.flush()
        log_action(
            DocumentType.OTF, order, HistoryAction.CREATED,
            actor=user, from_status=None, to_status=order.status,
            details=f"OTF created with {len(lines)} line(s).",
        )

    logger.info("%s created by user %s (total %s)", order.document_no, user.id, order.total_value)
    return order


def create_mrf(
    user: User,
    *,
    lines: Sequence[ChildLineInput],
    attachment: Optional[dict] = None,
    submit: bool = True,
) -> MrfHeader:
    """Record goods received against approved OTF lines."""
    with _transaction():
        require_initiator(DocumentType.MRF, user)
        parents = _validate_child_lines(DocumentType.MRF, user, lines)

        header = MrfHeader(
            document_no=next_document_no_for(DocumentType.MRF),
            project_id=parents.project_id,
            discipline_id=parents.discipline_id,
            status=_initial_status(submit),
            current_approval_level=0,
            created_by=user.id,
        )
        header.set_attachment(attachment)
        header.lines.extend(
            MrfLine(otf_order_line_id=entry.parent_line_id, received_qty=entry.quantity) for entry in lines
        )

        db.session.add(header)
        db.session.flush()
        log_action(
            DocumentType.MRF, header, HistoryAction.CREATED,
            actor=user, from_status=None, to_status=header.status,
            details=f"MRF created with {len(lines)} line(s).",
        )

    logger.info("%s created by user %s", header.document_no, user.id)
    return header


def create_mdf(user: User, *, lines: Sequence[ChildLineInput]) -> MdfIssue:
    """Issue received material to site. MDF has no approval chain."""
    with _transaction():
        require_initiator(DocumentType.MDF, user)
        _validate_child_lines(DocumentType.MDF, user, lines)

        issue = MdfIssue(document_no=next_document_no_for(DocumentType.MDF), created_by=user.id)
        issue.lines.extend(
            MdfIssueLine(mrf_line_id=entry.parent_line_id, delivered_qty=entry.quantity) for entry in lines
        )

        db.session.add(issue)
        db.session.flush()
        log_action(
            DocumentType.MDF, issue, HistoryAction.CREATED,
            actor=user, from_status=None, to_status="Issued",
            details=f"MDF issued with {len(lines)} line(s).",
        )

    logger.info("%s issued by user %s", issue.document_no, user.id)
    return issue


# ---------------------------------------------------------------------
# Approve / reject
# ---------------------------------------------------------------------
def _pending_mtf_lines(header: MtfHeader) -> List[MtfLine]:
    """Pending lines at the lowest pending level: the ones the next approver acts on."""
    pending = [line for line in header.lines if line.status == WorkflowStatus.PENDING_APPROVAL]
    if not pending:
        raise StateConflictError(
            f"{header.document_no} has no lines pending approval.",
            details={"status": header.status},
        )
    lowest = min(int(line.current_approval_level or 0) for line in pending)
    return [line for line in pending if int(line.current_approval_level or 0) == lowest]


def approve(doc_type: DocumentType, document_id: int, user: User, *, expected_level: Optional[int] = None):
    """
    Advance a document by one approval level.

    For an MTF header the pending lines at the lowest level advance together;
    use approve_mtf_line to act on one line.
    """
    doc_type = DocumentType(doc_type)
    _require_approvable(doc_type)
    if doc_type == DocumentType.MTF:
        return _approve_mtf(document_id, None, user, expected_level)

    spec = spec_for(doc_type)
    with _transaction():
        header = get_header(doc_type, document_id)
        max_level = max_approval_level(doc_type, header.project)

        require_status(header, WorkflowStatus.PENDING_APPROVAL, "approve")
        _check_expected_level(header, expected_level)
        _check_level_bound(header, max_level)
        require_approver(doc_type, header, user, max_level)

        transition = approve_record(header, max_level)
        db.session.flush()
        log_action(
            doc_type, header, HistoryAction.APPROVED,
            actor=user, from_status=transition.from_status, to_status=transition.to_status,
            details=_approval_details(spec.prefix, transition),
        )

    logger.info("%s approved by user %s: L%d -> L%d (%s)",
                header.document_no, user.id, transition.from_level, transition.to_level, transition.to_status)
    return header


def approve_mtf_line(line_id: int, user: User, *, expected_level: Optional[int] = None) -> MtfHeader:
    """Advance one MTF line by one approval level."""
    return _approve_mtf(None, line_id, user, expected_level)


def _approve_mtf(header_id: Optional[int], line_id: Optional[int], user: User, expected_level: Optional[int]):
    with _transaction():
        if line_id is not None:
            line = get_line(DocumentType.MTF, line_id)
            header = line.header
            require_status(line, WorkflowStatus.PENDING_APPROVAL, "approve")
            targets = [line]
        else:
            header = get_header(DocumentType.MTF, header_id)
            require_status(header, WorkflowStatus.PENDING_APPROVAL, "approve")
            targets = _pending_mtf_lines(header)

        max_level = max_approval_level(DocumentType.MTF, header.project)
        lead = targets[0]
        _check_expected_level(lead, expected_level)
        _check_level_bound(lead, max_level)
        require_approver(DocumentType.MTF, lead, user, max_level)

        transitions = [approve_record(line, max_level) for line in targets]
        refresh_mtf_header(header)

        db.session.flush()
        log_action(
            DocumentType.MTF, header, HistoryAction.APPROVED,
            actor=user, from_status=transitions[0].from_status, to_status=transitions[0].to_status,
            details=_approval_details("MTF", transitions[0], len(transitions)),
        )

    logger.info("%s: %d line(s) approved by user %s to L%d",
                header.document_no, len(transitions), user.id, transitions[0].to_level)
    return header


def reject(doc_type: DocumentType, document_id: int, user: User):
    """
    Reject a pending document at its current level.

    For an MTF header every pending line is rejected.
    """
    doc_type = DocumentType(doc_type)
    _require_approvable(doc_type)
    if doc_type == DocumentType.MTF:
        return _reject_mtf(document_id, None, user)

    spec = spec_for(doc_type)
    with _transaction():
        header = get_header(doc_type, document_id)
        max_level = max_approval_level(doc_type, header.project)

        require_status(header, WorkflowStatus.PENDING_APPROVAL, "reject")
        _check_level_bound(header, max_level)
        require_approver(doc_type, header, user, max_level)

        level = required_level(header)
        transition = reject_record(header)
        db.session.flush()
        log_action(
            doc_type, header, HistoryAction.REJECTED,
            actor=user, from_status=transition.from_status, to_status=transition.to_status,
            details=f"{spec.prefix} rejected at L{level}.",
        )

    logger.info("%s rejected by user %s at L%d", header.document_no, user.id, level)
    return header


def reject_mtf_line(line_id: int, user: User) -> MtfHeader:
    """Reject one pending MTF line."""
    return _reject_mtf(None, line_id, user)


def _reject_mtf(header_id: Optional[int], line_id: Optional[int], user: User):
    with _transaction():
        if line_id is not None:
            line = get_line(DocumentType.MTF, line_id)
            header = line.header
            require_status(line, WorkflowStatus.PENDING_APPROVAL, "reject")
            targets = [line]
            lead = line
        else:
            header = get_header(DocumentType.MTF, header_id)
            require_status(header, WorkflowStatus.PENDING_APPROVAL, "reject")
            lead = _pending_mtf_lines(header)[0]
            targets = [line for line in header.lines if line.status == WorkflowStatus.PENDING_APPROVAL]

        max_level = max_approval_level(DocumentType.MTF, header.project)
        _check_level_bound(lead, max_level)
        require_approver(DocumentType.MTF, lead, user, max_level)

        level = required_level(lead)
        for line in targets:
            reject_record(line)
        transition = refresh_mtf_header(header)

        db.session.flush()
        log_action(
            DocumentType.MTF, header, HistoryAction.REJECTED,
            actor=user, from_status=WorkflowStatus.PENDING_APPROVAL.value, to_status=transition.to_status,
            details=f"MTF rejected at L{level} ({len(targets)} line(s)).",
        )

    logger.info("%s: %d line(s) rejected by user %s at L%d", header.document_no, len(targets), user.id, level)
    return header


# ---------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------
def close(doc_type: DocumentType, document_id: int, user: User):
    """
    Close a Rejected document (terminal). Its lines stop counting against
    the parent backlog. For an MTF header every Rejected line is closed.
    """
    doc_type = DocumentType(doc_type)
    _require_approvable(doc_type)

    spec = spec_for(doc_type)
    with _transaction():
        header = get_header(doc_type, document_id)
        require_status(header, WorkflowStatus.REJECTED, "close")
        require_creator(header, user)

        if doc_type == DocumentType.MTF:
            rejected = [line for line in header.lines if line.status == WorkflowStatus.REJECTED]
            for line in rejected:
                close_record(line)
            transition = refresh_mtf_header(header)
            details = f"MTF closed ({len(rejected)} line(s)); rejection acknowledged by initiator."
        else:
            transition = close_record(header)
            details = f"{spec.prefix} closed; rejection acknowledged by initiator."

        db.session.flush()
        log_action(
            doc_type, header, HistoryAction.CLOSED,
            actor=user, from_status=WorkflowStatus.REJECTED.value, to_status=transition.to_status,
            details=details,
        )

    logger.info("%s closed by user %s", header.document_no, user.id)
    return header


def close_mtf_line(line_id: int, user: User) -> MtfHeader:
    """Close one Rejected MTF line."""
    with _transaction():
        line = get_line(DocumentType.MTF, line_id)
        header = line.header
        require_status(line, WorkflowStatus.REJECTED, "close")
        require_creator(header, user)

        close_record(line)
        transition = refresh_mtf_header(header)

        db.session.flush()
        log_action(
            DocumentType.MTF, header, HistoryAction.CLOSED,
            actor=user, from_status=WorkflowStatus.REJECTED.value, to_status=transition.to_status,
            details=f"MTF line {line.id} closed; rejection acknowledged by initiator.",
        )

    logger.info("%s line %s closed by user %s", header.document_no, line_id, user.id)
    return header


# ---------------------------------------------------------------------
# Submit (Initialized -> Pending Approval)
# ---------------------------------------------------------------------
def submit(doc_type: DocumentType, document_id: int, user: User):
    doc_type = DocumentType(doc_type)
    _require_approvable(doc_type)

    with _transaction():
        header = get_header(doc_type, document_id)
        require_status(header, WorkflowStatus.INITIALIZED, "submit")
        require_creator(header, user)

        if doc_type == DocumentType.MTF:
            for line in header.lines:
                if line.status == WorkflowStatus.INITIALIZED:
                    submit_record(line)
            transition = refresh_mtf_header(header)
        else:
            transition = submit_record(header)

        db.session.flush()
        log_action(
            doc_type, header, HistoryAction.SUBMITTED,
            actor=user, from_status=transition.from_status, to_status=transition.to_status,
            details=f"{spec_for(doc_type).prefix} submitted for approval.",
        )

    logger.info("%s submitted by user %s", header.document_no, user.id)
    return header


# ---------------------------------------------------------------------
# Revise (Rejected -> Pending Approval with new content)
# ---------------------------------------------------------------------
def revise(
    doc_type: DocumentType,
    document_id: int,
    user: User,
    *,
    lines: Sequence,
    attachment: Optional[dict] = None,
    supplier_id: Optional[int] = None,
    invoice_no: Optional[str] = None,
    invoice_date: Optional[date] = None,
    submit: bool = True,
):
    """
    Replace the content of a Rejected document and send it back to L1.

    attachment=None keeps the stored attachment; a dict replaces it.
    """
    doc_type = DocumentType(doc_type)
    _require_approvable(doc_type)

    with _transaction():
        header = get_header(doc_type, document_id)
        require_status(header, WorkflowStatus.REJECTED, "revise")
        if doc_type not in REVISABLE_TYPES:
            raise ValidationError(f"{spec_for(doc_type).prefix} documents cannot be revised; close and recreate.")
        require_creator(header, user)

        old_status = header.status
        if doc_type == DocumentType.MTF:
            _revise_mtf(header, lines, submit)
        elif doc_type == DocumentType.STF:
            _revise_stf(header, user, lines, supplier_id, submit)
        else:
            _revise_otf(header, user, lines, invoice_no, invoice_date, submit)

        if attachment is not None:
            header.set_attachment(attachment)

        db.session.flush()
        log_action(
            doc_type, header, HistoryAction.REVISED,
            actor=user, from_status=old_status, to_status=header.status,
            details=f"{spec_for(doc_type).prefix} revised with {len(lines)} line(s) and resubmitted from L1.",
        )

    logger.info("%s revised by user %s", header.document_no, user.id)
    return header


def _revise_mtf(header: MtfHeader, lines: Sequence[MtfLineInput], submit: bool) -> None:
    _require_lines(DocumentType.MTF, lines)
    _validate_quantities(lines)
    items = _load_items(lines)
    _ensure_no_children(DocumentType.MTF, [line.id for line in header.lines])

    status = _initial_status(submit)
    new_lines = _build_mtf_lines(lines, items, status)

    header.lines.clear()
    header.lines.extend(new_lines)
    refresh_mtf_header(header)


def _revise_stf(
    order: StfOrder, user: User, lines: Sequence[ChildLineInput], supplier_id: Optional[int], submit: bool,
) -> None:
    supplier = _get_active_supplier(supplier_id if supplier_id is not None else order.supplier_id)
    _ensure_no_children(DocumentType.STF, [line.id for line in order.lines])
    parents = _validate_child_lines(DocumentType.STF, user, lines, exclude_header_id=order.id)

    new_lines = _build_stf_lines(lines, parents.lines)
    reset_for_revision(order, submit=submit)
    order.supplier_id = supplier.id
    order.project_id = parents.project_id
    order.discipline_id = parents.discipline_id
    order.lines.clear()
    order.lines.extend(new_lines)
    order.recalc_totals()


def _revise_otf(
    order: OtfOrder,
    user: User,
    lines: Sequence[ChildLineInput],
    invoice_no: Optional[str],
    invoice_date: Optional[date],
    submit: bool,
) -> None:
    _ensure_no_children(DocumentType.OTF, [line.id for line in order.lines])
    parents = _validate_child_lines(DocumentType.OTF, user, lines, exclude_header_id=order.id)

    new_lines = _build_otf_lines(lines, parents.lines)
    reset_for_revision(order, submit=submit)
    order.project_id = parents.project_id
    order.discipline_id = parents.discipline_id
    if invoice_no is not None:
        order.invoice_no = invoice_no.strip() or None
    if invoice_date is not None:
        order.invoice_date = invoice_date
    order.lines.clear()
    order.lines.extend(new_lines)
    order.recalc_totals()


# ---------------------------------------------------------------------
# Reads (scoped to the user's projects)
# ---------------------------------------------------------------------
def get_document(doc_type: DocumentType, document_id: int, user: User):
    """Header by id; documents outside the user's projects do not exist for them."""
    doc_type = DocumentType(doc_type)
    header = get_header(doc_type, document_id)
    # MdfIssue derives its project from its lines, which share one project.
    if header.project_id is not None:
        require_project_scope(user, header.project_id)
    return header


def document_history(doc_type: DocumentType, document_id: int, user: User) -> list:
    get_document(doc_type, document_id, user)
    return history_for(doc_type, document_id)


def list_documents(
    doc_type: DocumentType,
    user: User,
    *,
    status: Optional[str] = None,
    project_id: Optional[int] = None,
    created_by: Optional[int] = None,
    document_no: Optional[str] = None,
    pending_for_me: bool = False,
) -> list:
    """Documents of one stage in the user's projects, newest first."""
    doc_type = DocumentType(doc_type)
    spec = spec_for(doc_type)
    model = spec.header_model

    project_ids = user.project_ids
    if project_id is not None:
        project_ids = project_ids & {project_id}
    if not project_ids:
        return []

    q = model.query
    if doc_type == DocumentType.MDF:
        q = (
            q.join(MdfIssueLine, MdfIssueLine.mdf_issue_id == MdfIssue.id)
            .join(MrfLine, MdfIssueLine.mrf_line_id == MrfLine.id)
            .join(MrfHeader, MrfLine.mrf_header_id == MrfHeader.id)
            .filter(MrfHeader.project_id.in_(project_ids))
            .distinct()
        )
    else:
        q = q.filter(model.project_id.in_(project_ids))
        if status:
            q = q.filter(model.status == status)

    if created_by is not None:
        q = q.filter(model.created_by == created_by)
    if document_no:
        q = q.filter(model.document_no.ilike(f"%{document_no.strip()}%"))

    documents = q.order_by(model.id.desc()).all()

    if pending_for_me and doc_type in APPROVABLE_TYPES:
        documents = [d for d in documents if _pending_for(doc_type, d, user)]
    return documents


def _pending_for(doc_type: DocumentType, header, user: User) -> bool:
    if header.status != WorkflowStatus.PENDING_APPROVAL:
        return False
    max_level = max_approval_level(doc_type, header.project)
    if doc_type == DocumentType.MTF:
        return any(
            can_approve(doc_type, line, user, max_level)
            for line in header.lines
            if line.status == WorkflowStatus.PENDING_APPROVAL
        )
    return can_approve(doc_type, header, user, max_level)


def backlog_for_line(doc_type: DocumentType, line_id: int, user: User) -> dict:
    """Remaining quantity of one line against the next stage."""
    doc_type = DocumentType(doc_type)
    spec = spec_for(doc_type)
    line = get_line(doc_type, line_id)
    header = getattr(line, spec.header_rel)
    require_project_scope(user, header.project_id)

    quantity = getattr(line, spec.qty_attr)
    remaining = line_backlog(doc_type, line)
    return {
        "document_type": doc_type.value,
        "document_no": header.document_no,
        "line_id": line.id,
        "quantity": float(quantity or 0),
        "committed": float(Decimal(str(quantity or 0)) - remaining),
        "backlog": float(remaining),
    }
