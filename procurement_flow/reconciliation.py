"""
procurement_flow/reconciliation.py

Quantity reconciliation across the chain MTF -> STF -> OTF -> MRF -> MDF.

At every level:
    committed = sum(child.qty for child lines referencing the parent line)
    backlog   = parent.qty - committed

Which child lines count:
- lines of a Closed child document never count (closing releases the quantity);
- lines of a Rejected, not yet Closed, child document count while
  WORKFLOW_COUNT_REJECTED_CHILDREN is on (the default);
- everything else counts, whatever its approval state.

The pure functions at the top take plain sequences; the query functions below
them load rows and delegate to the pure functions.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional, Sequence

from flask import current_app

from .constants import DocumentType, WorkflowStatus
from .errors import ValidationError
from .extensions import db
from .models import (
    Discipline,
    Item,
    MdfIssueLine,
    MrfHeader,
    MrfLine,
    MtfHeader,
    MtfLine,
    OtfOrder,
    OtfOrderLine,
    Project,
    StfOrder,
    StfOrderLine,
    Supplier,
    User,
)
from .repository import DocumentSpec, child_spec_of, get_line, spec_for

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ---------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------
def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _field(obj, name: str):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name)


def line_total(qty, unit_price) -> Decimal:
    return (_dec(qty) * _dec(unit_price)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def committed_qty(parent_line_id: int, child_lines: Iterable[Any], parent_attr: str, qty_attr: str) -> Decimal:
    """Sum of child quantities whose parent reference equals parent_line_id."""
    return sum(
        (_dec(_field(c, qty_attr)) for c in child_lines if _field(c, parent_attr) == parent_line_id),
        ZERO,
    )


def backlog(parent_qty, parent_line_id: int, child_lines: Iterable[Any], parent_attr: str, qty_attr: str) -> Decimal:
    """parent_qty - committed_qty(...)."""
    return _dec(parent_qty) - committed_qty(parent_line_id, child_lines, parent_attr, qty_attr)


def average_unit_price(lines: Sequence[Any], qty_attr: str, price_attr: str = "unit_price") -> Optional[Decimal]:
    """sum(qty * price) / sum(qty); None when there is no quantity."""
    total_qty = sum((_dec(_field(line, qty_attr)) for line in lines), ZERO)
    if total_qty <= 0:
        return None
    total_value = sum((_dec(_field(line, qty_attr)) * _dec(_field(line, price_attr)) for line in lines), ZERO)
    return (total_value / total_qty).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def counts_toward_backlog(status: Optional[str], count_rejected: bool = True) -> bool:
    """Whether lines of a child document in this status consume parent backlog."""
    if status is None:
        # Documents without a status (MDF issues) always count.
        return True
    if status == WorkflowStatus.CLOSED:
        return False
    if status == WorkflowStatus.REJECTED and not count_rejected:
        return False
    return True


# ---------------------------------------------------------------------
# Database-backed queries
# ---------------------------------------------------------------------
def _count_rejected() -> bool:
    return bool(current_app.config.get("WORKFLOW_COUNT_REJECTED_CHILDREN", True))


def _excluded_statuses() -> list[str]:
    excluded = [WorkflowStatus.CLOSED.value]
    if not _count_rejected():
        excluded.append(WorkflowStatus.REJECTED.value)
    return excluded


def committed_quantities(
    child: DocumentSpec,
    parent_line_ids: Sequence[int],
    *,
    exclude_header_id: Optional[int] = None,
) -> Dict[int, Decimal]:
    """
    {parent_line_id: committed quantity} from the child stage's lines.

    exclude_header_id leaves out one child document (used when that document's
    line set is being replaced by a revision).
    """
    ids = sorted(set(parent_line_ids))
    if not ids:
        return {}

    line_model = child.line_model
    header_model = child.header_model
    parent_col = getattr(line_model, child.parent_fk)
    header_fk = getattr(line_model, child.header_fk)

    q = (
        db.session.query(parent_col, db.func.sum(getattr(line_model, child.qty_attr)))
        .join(header_model, header_fk == header_model.id)
        .filter(parent_col.in_(ids))
    )
    if hasattr(header_model, "status"):
        q = q.filter(header_model.status.notin_(_excluded_statuses()))
    if exclude_header_id is not None:
        q = q.filter(header_model.id != exclude_header_id)

    totals = {parent_id: _dec(total) for parent_id, total in q.group_by(parent_col).all()}
    return {i: totals.get(i, ZERO) for i in ids}


def parent_quantity(doc_type: DocumentType, line) -> Decimal:
    return _dec(getattr(line, spec_for(doc_type).qty_attr))


def backlogs_for(
    doc_type: DocumentType,
    lines: Sequence[Any],
    *,
    exclude_child_header_id: Optional[int] = None,
) -> Dict[int, Decimal]:
    """{line.id: backlog} for lines of doc_type against the next stage."""
    child = child_spec_of(doc_type)
    if child is None:
        raise ValidationError(f"{spec_for(doc_type).prefix} lines have no downstream stage.")

    committed = committed_quantities(child, [line.id for line in lines], exclude_header_id=exclude_child_header_id)
    return {line.id: parent_quantity(doc_type, line) - committed[line.id] for line in lines}


def line_backlog(doc_type: DocumentType, line) -> Decimal:
    return backlogs_for(doc_type, [line])[line.id]


def mtf_line_backlog(line: MtfLine) -> Decimal:
    """request_qty - STF ordered."""
    return line_backlog(DocumentType.MTF, line)


def stf_line_backlog(line: StfOrderLine) -> Decimal:
    """STF order_qty - OTF ordered."""
    return line_backlog(DocumentType.STF, line)


def otf_line_backlog(line: OtfOrderLine) -> Decimal:
    """OTF order_qty - MRF received."""
    return line_backlog(DocumentType.OTF, line)


def mrf_line_backlog(line: MrfLine) -> Decimal:
    """MRF received_qty - MDF delivered."""
    return line_backlog(DocumentType.MRF, line)


LINE_BACKLOG = {
    DocumentType.MTF: mtf_line_backlog,
    DocumentType.STF: stf_line_backlog,
    DocumentType.OTF: otf_line_backlog,
    DocumentType.MRF: mrf_line_backlog,
}


def get_backlog(doc_type: DocumentType, line_id: int) -> Decimal:
    """Backlog of one line, for callers building creation forms."""
    doc_type = DocumentType(doc_type)
    if doc_type not in LINE_BACKLOG:
        raise ValidationError(f"{spec_for(doc_type).prefix} lines have no downstream stage.")
    return LINE_BACKLOG[doc_type](get_line(doc_type, line_id))


# ---------------------------------------------------------------------
# Dashboard rollup
# ---------------------------------------------------------------------
def _counted(rows: Iterable[tuple]) -> list:
    count_rejected = _count_rejected()
    return [line for line, status in rows if counts_toward_backlog(status, count_rejected)]


def _group_by(lines: Iterable[Any], attr: str) -> Dict[int, list]:
    grouped: Dict[int, list] = defaultdict(list)
    for line in lines:
        grouped[getattr(line, attr)].append(line)
    return grouped


def _latest_header(lines: Sequence[Any], header_attr: str):
    headers = [getattr(line, header_attr) for line in lines]
    if not headers:
        return None
    return max(headers, key=lambda h: h.id)


def _num(value) -> Optional[float]:
    return None if value is None else float(value)


def dashboard_rows(user: User, project_id: Optional[int] = None) -> list[dict]:
    """
    One row per MTF line in the user's projects, with quantities and backlogs at
    every stage of the chain.
    """
    project_ids = user.project_ids
    if project_id is not None:
        project_ids = project_ids & {project_id}
    if not project_ids:
        return []

    rows = (
        db.session.query(MtfLine, MtfHeader, Project, Discipline, Item, User)
        .join(MtfHeader, MtfLine.mtf_header_id == MtfHeader.id)
        .join(Project, MtfHeader.project_id == Project.id)
        .join(Discipline, MtfHeader.discipline_id == Discipline.id)
        .join(Item, MtfLine.item_id == Item.id)
        .join(User, MtfHeader.created_by == User.id)
        .filter(MtfHeader.project_id.in_(project_ids))
        .order_by(MtfHeader.id.asc(), MtfLine.id.asc())
        .all()
    )
    if not rows:
        return []

    mtf_ids = [r[0].id for r in rows]

    stf_lines = _counted(
        db.session.query(StfOrderLine, StfOrder.status)
        .join(StfOrder, StfOrderLine.stf_order_id == StfOrder.id)
        .filter(StfOrderLine.mtf_line_id.in_(mtf_ids))
        .all()
    )
    stf_ids = [line.id for line in stf_lines]

    otf_lines = _counted(
        db.session.query(OtfOrderLine, OtfOrder.status)
        .join(OtfOrder, OtfOrderLine.otf_order_id == OtfOrder.id)
        .filter(OtfOrderLine.stf_order_line_id.in_(stf_ids))
        .all()
    ) if stf_ids else []
    otf_ids = [line.id for line in otf_lines]

    mrf_lines = _counted(
        db.session.query(MrfLine, MrfHeader.status)
        .join(MrfHeader, MrfLine.mrf_header_id == MrfHeader.id)
        .filter(MrfLine.otf_order_line_id.in_(otf_ids))
        .all()
    ) if otf_ids else []
    mrf_ids = [line.id for line in mrf_lines]

    mdf_lines = (
        MdfIssueLine.query.filter(MdfIssueLine.mrf_line_id.in_(mrf_ids)).all() if mrf_ids else []
    )

    stf_by_mtf = _group_by(stf_lines, "mtf_line_id")
    otf_by_stf = _group_by(otf_lines, "stf_order_line_id")
    mrf_by_otf = _group_by(mrf_lines, "otf_order_line_id")
    mdf_by_mrf = _group_by(mdf_lines, "mrf_line_id")

    suppliers = {s.id: s for s in Supplier.query.all()}

    result = []
    for mtf_line, header, project, discipline, item, requester in rows:
        stf_for_line = stf_by_mtf.get(mtf_line.id, [])
        otf_for_line = [o for s in stf_for_line for o in otf_by_stf.get(s.id, [])]
        mrf_for_line = [m for o in otf_for_line for m in mrf_by_otf.get(o.id, [])]
        mdf_for_line = [d for m in mrf_for_line for d in mdf_by_mrf.get(m.id, [])]

        request_qty = _dec(mtf_line.request_qty)
        stf_ordered = sum((_dec(s.order_qty) for s in stf_for_line), ZERO)
        otf_ordered = sum((_dec(o.order_qty) for o in otf_for_line), ZERO)
        mrf_received = sum((_dec(m.received_qty) for m in mrf_for_line), ZERO)
        mdf_delivered = sum((_dec(d.delivered_qty) for d in mdf_for_line), ZERO)

        stf_total = sum((line_total(s.order_qty, s.unit_price) for s in stf_for_line), ZERO)
        otf_total = sum((line_total(o.order_qty, o.unit_price) for o in otf_for_line), ZERO)

        stf_header = _latest_header(stf_for_line, "order")
        otf_header = _latest_header(otf_for_line, "order")
        mrf_header = _latest_header(mrf_for_line, "header")
        supplier = suppliers.get(stf_header.supplier_id) if stf_header else None

        result.append({
            "mtf_header_id": header.id,
            "mtf_line_id": mtf_line.id,
            "mtf_id": header.document_no,
            "project_id": project.id,
            "project_code": project.code,
            "project_name": project.name,
            "project_currency": project.base_currency,
            "discipline_id": discipline.id,
            "discipline_code": discipline.discipline_code,
            "budget_code": discipline.budget_code,
            "material_code": item.material_code,
            "material_name": item.material_name,
            "material_description": mtf_line.material_description,
            "unit": item.unit,
            "mtf_status": mtf_line.status,
            "mtf_line_approval_level": mtf_line.current_approval_level,
            "stf_header_id": stf_header.id if stf_header else None,
            "stf_id": stf_header.document_no if stf_header else None,
            "stf_status": stf_header.status if stf_header else None,
            "supplier_name": supplier.name if supplier else None,
            "otf_header_id": otf_header.id if otf_header else None,
            "otf_id": otf_header.document_no if otf_header else None,
            "otf_status": otf_header.status if otf_header else None,
            "mrf_header_id": mrf_header.id if mrf_header else None,
            "mrf_id": mrf_header.document_no if mrf_header else None,
            "mrf_status": mrf_header.status if mrf_header else None,
            "request_qty": _num(request_qty),
            "stf_ordered_qty": _num(stf_ordered),
            "otf_ordered_qty": _num(otf_ordered),
            "mrf_received_qty": _num(mrf_received),
            "mdf_delivered_qty": _num(mdf_delivered),
            "mtf_backlog": _num(request_qty - stf_ordered),
            "stf_backlog": _num(stf_ordered - otf_ordered),
            "otf_backlog": _num(otf_ordered - mrf_received),
            "requester": requester.full_name(),
            "date_created": header.date_created.isoformat() if header.date_created else None,
            "mtf_est_unit_price": _num(mtf_line.est_unit_price),
            "mtf_est_total_price": _num(mtf_line.est_total_price),
            "stf_unit_price": _num(average_unit_price(stf_for_line, "order_qty")),
            "stf_total_price": _num(stf_total) if stf_for_line else None,
            "otf_unit_price": _num(average_unit_price(otf_for_line, "order_qty")),
            "otf_total_price": _num(otf_total) if otf_for_line else None,
        })

    logger.debug("Dashboard for user %s: %d rows", user.id, len(result))
    return result
