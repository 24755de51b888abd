"""
procurement_flow/repository.py

Document-type registry and the lookups every other module goes through.

Each DocumentType is described once (header model, line model, parent link,
quantity column, approval depth column, approver / initiator roles). Callers
never re-derive header-from-line or line-from-header relations themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from .constants import DocumentType, RoleName
from .errors import ReferentialIntegrityError
from .extensions import db
from .models import (
    MdfIssue,
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
)


@dataclass(frozen=True)
class DocumentSpec:
    """Static description of one stage of the chain."""

    doc_type: DocumentType
    prefix: str
    header_model: type
    line_model: type
    header_fk: str
    header_rel: str
    qty_attr: str
    parent_fk: Optional[str]
    parent_type: Optional[DocumentType]
    max_level_attr: Optional[str]
    approver_role: Optional[RoleName]
    initiator_roles: tuple


DOCUMENT_SPECS = {
    DocumentType.MTF: DocumentSpec(
        doc_type=DocumentType.MTF,
        prefix="MTF",
        header_model=MtfHeader,
        line_model=MtfLine,
        header_fk="mtf_header_id",
        header_rel="header",
        qty_attr="request_qty",
        parent_fk=None,
        parent_type=None,
        max_level_attr="max_mtf_approval_level",
        approver_role=RoleName.MTF_APPROVER,
        initiator_roles=(RoleName.REQUESTER, RoleName.ADMINISTRATOR),
    ),
    DocumentType.STF: DocumentSpec(
        doc_type=DocumentType.STF,
        prefix="STF",
        header_model=StfOrder,
        line_model=StfOrderLine,
        header_fk="stf_order_id",
        header_rel="order",
        qty_attr="order_qty",
        parent_fk="mtf_line_id",
        parent_type=DocumentType.MTF,
        max_level_attr="max_stf_approval_level",
        approver_role=RoleName.STF_APPROVER,
        initiator_roles=(RoleName.STF_INITIATOR,),
    ),
    DocumentType.OTF: DocumentSpec(
        doc_type=DocumentType.OTF,
        prefix="OTF",
        header_model=OtfOrder,
        line_model=OtfOrderLine,
        header_fk="otf_order_id",
        header_rel="order",
        qty_attr="order_qty",
        parent_fk="stf_order_line_id",
        parent_type=DocumentType.STF,
        max_level_attr="max_otf_approval_level",
        approver_role=RoleName.OTF_APPROVER,
        initiator_roles=(RoleName.OTF_INITIATOR,),
    ),
    DocumentType.MRF: DocumentSpec(
        doc_type=DocumentType.MRF,
        prefix="MRF",
        header_model=MrfHeader,
        line_model=MrfLine,
        header_fk="mrf_header_id",
        header_rel="header",
        qty_attr="received_qty",
        parent_fk="otf_order_line_id",
        parent_type=DocumentType.OTF,
        max_level_attr="max_mrf_approval_level",
        approver_role=RoleName.MRF_APPROVER,
        initiator_roles=(RoleName.MRF_INITIATOR,),
    ),
    DocumentType.MDF: DocumentSpec(
        doc_type=DocumentType.MDF,
        prefix="MDF",
        header_model=MdfIssue,
        line_model=MdfIssueLine,
        header_fk="mdf_issue_id",
        header_rel="issue",
        qty_attr="delivered_qty",
        parent_fk="mrf_line_id",
        parent_type=DocumentType.MRF,
        max_level_attr=None,
        approver_role=None,
        # Site issue is performed by the receiving party.
        initiator_roles=(RoleName.MRF_INITIATOR,),
    ),
}


def spec_for(doc_type: DocumentType) -> DocumentSpec:
    return DOCUMENT_SPECS[DocumentType(doc_type)]


def child_spec_of(doc_type: DocumentType) -> Optional[DocumentSpec]:
    """The stage whose lines reference lines of doc_type (MTF -> STF, ...)."""
    for spec in DOCUMENT_SPECS.values():
        if spec.parent_type == doc_type:
            return spec
    return None


# ---------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------
def get_header(doc_type: DocumentType, header_id: int):
    spec = spec_for(doc_type)
    header = db.session.get(spec.header_model, header_id)
    if header is None:
        raise ReferentialIntegrityError(
            f"{spec.prefix} {header_id} does not exist.",
            details={"document_type": spec.doc_type.value, "id": header_id},
        )
    return header


def get_line(doc_type: DocumentType, line_id: int):
    spec = spec_for(doc_type)
    line = db.session.get(spec.line_model, line_id)
    if line is None:
        raise ReferentialIntegrityError(
            f"{spec.prefix} line {line_id} does not exist.",
            details={"document_type": spec.doc_type.value, "line_id": line_id},
        )
    return line


def lock_lines(doc_type: DocumentType, line_ids: Sequence[int]) -> dict:
    """
    Load lines by id with a row lock (SELECT ... FOR UPDATE where the database
    supports it) so that backlog read/validate/write is atomic per parent line.
    Missing ids raise ReferentialIntegrityError.
    """
    spec = spec_for(doc_type)
    ids = sorted(set(line_ids))
    if not ids:
        return {}

    rows = (
        spec.line_model.query
        .filter(spec.line_model.id.in_(ids))
        .order_by(spec.line_model.id.asc())
        .with_for_update()
        .all()
    )
    found = {row.id: row for row in rows}
    missing = [i for i in ids if i not in found]
    if missing:
        raise ReferentialIntegrityError(
            f"{spec.prefix} line(s) {missing} do not exist.",
            details={"document_type": spec.doc_type.value, "line_ids": missing},
        )
    return found


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise ReferentialIntegrityError(f"Project {project_id} does not exist.", details={"project_id": project_id})
    return project


def max_approval_level(doc_type: DocumentType, project: Project) -> int:
    spec = spec_for(doc_type)
    if spec.max_level_attr is None:
        return 0
    return int(getattr(project, spec.max_level_attr) or 0)
