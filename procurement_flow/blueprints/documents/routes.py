"""
procurement_flow/blueprints/documents/routes.py

Document API (JSON) for the MTF -> STF -> OTF -> MRF -> MDF chain.

Routes:
- GET  /api/v1/<doc_type>                              list (scoped, filterable)
- GET  /api/v1/<doc_type>/<id>                         one document with lines
- GET  /api/v1/<doc_type>/<id>/history                 workflow history
- POST /api/v1/<doc_type>                              create
- POST /api/v1/<doc_type>/<id>/approve|reject|close|submit
- POST /api/v1/mtf/lines/<line_id>/approve|reject|close
- PUT  /api/v1/<doc_type>/<id>/revise
- GET  /api/v1/<doc_type>/lines/<line_id>/backlog
- GET  /api/v1/dashboard

IMPORTANT:
- Routes only parse payloads and serialize results. Every rule (state,
  authorization, quantities) lives in workflow.py, which raises typed errors
  rendered by errors.register_error_handlers.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...constants import DocumentType
from ...errors import ValidationError
from ...reconciliation import dashboard_rows
from ...security import role_required
from ... import workflow
from ...utils import decode_attachment, parse_date, parse_optional_int

documents_bp = Blueprint("documents", __name__, url_prefix="/api/v1")


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _actor():
    """The real User behind the current_user proxy."""
    return current_user._get_current_object()


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _submit_flag(payload: dict) -> bool:
    raw = payload.get("submit", True)
    if isinstance(raw, str):
        return raw.strip().lower() not in {"0", "false", "no", "off"}
    return bool(raw)


def _serialize(doc_type: DocumentType, header) -> dict:
    data = header.to_dict()
    data["document_type"] = doc_type.value
    return data


def _bool_arg(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in {"1", "true", "yes", "on"}


# ----------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------
@documents_bp.route("/dashboard", methods=["GET"])
@login_required
def dashboard():
    project_id = parse_optional_int(request.args.get("project_id"))
    rows = dashboard_rows(_actor(), project_id=project_id)
    return jsonify({"rows": rows, "count": len(rows)})


@documents_bp.route("/<doc_type>", methods=["GET"])
@login_required
def list_documents(doc_type: str):
    dtype = DocumentType.parse(doc_type)
    documents = workflow.list_documents(
        dtype,
        _actor(),
        status=(request.args.get("status") or "").strip() or None,
        project_id=parse_optional_int(request.args.get("project_id")),
        created_by=parse_optional_int(request.args.get("created_by")),
        document_no=(request.args.get("document_no") or "").strip() or None,
        pending_for_me=_bool_arg("pending_for_me"),
    )
    return jsonify({
        "documents": [d.to_dict(with_lines=False) for d in documents],
        "count": len(documents),
    })


@documents_bp.route("/<doc_type>/<int:document_id>", methods=["GET"])
@login_required
def get_document(doc_type: str, document_id: int):
    dtype = DocumentType.parse(doc_type)
    user = _actor()
    header = workflow.get_document(dtype, document_id, user)
    data = _serialize(dtype, header)
    data["history"] = [e.to_dict() for e in workflow.document_history(dtype, document_id, user)]
    return jsonify(data)


@documents_bp.route("/<doc_type>/<int:document_id>/history", methods=["GET"])
@login_required
def document_history(doc_type: str, document_id: int):
    dtype = DocumentType.parse(doc_type)
    entries = workflow.document_history(dtype, document_id, _actor())
    return jsonify({"history": [e.to_dict() for e in entries]})


@documents_bp.route("/<doc_type>/lines/<int:line_id>/backlog", methods=["GET"])
@login_required
def line_backlog(doc_type: str, line_id: int):
    dtype = DocumentType.parse(doc_type)
    return jsonify(workflow.backlog_for_line(dtype, line_id, _actor()))


# ----------------------------------------------------------------------
# Create
# ----------------------------------------------------------------------
@documents_bp.route("/<doc_type>", methods=["POST"])
@login_required
@role_required()
def create_document(doc_type: str):
    dtype = DocumentType.parse(doc_type)
    payload = _payload()
    user = _actor()
    lines = workflow.parse_lines(dtype, payload.get("lines"))
    attachment = decode_attachment(payload.get("attachment"))

    if dtype == DocumentType.MTF:
        project_id = parse_optional_int(payload.get("project_id"))
        discipline_id = parse_optional_int(payload.get("discipline_id"))
        if project_id is None or discipline_id is None:
            raise ValidationError("'project_id' and 'discipline_id' are required.")
        header = workflow.create_mtf(
            user,
            project_id=project_id,
            discipline_id=discipline_id,
            lines=lines,
            attachment=attachment,
            submit=_submit_flag(payload),
        )
    elif dtype == DocumentType.STF:
        supplier_id = parse_optional_int(payload.get("supplier_id"))
        if supplier_id is None:
            raise ValidationError("'supplier_id' is required.")
        header = workflow.create_stf(
            user, supplier_id=supplier_id, lines=lines, attachment=attachment, submit=_submit_flag(payload),
        )
    elif dtype == DocumentType.OTF:
        header = workflow.create_otf(
            user,
            lines=lines,
            invoice_no=payload.get("invoice_no"),
            invoice_date=parse_date(payload.get("invoice_date")),
            attachment=attachment,
            submit=_submit_flag(payload),
        )
    elif dtype == DocumentType.MRF:
        header = workflow.create_mrf(user, lines=lines, attachment=attachment, submit=_submit_flag(payload))
    else:
        header = workflow.create_mdf(user, lines=lines)

    return jsonify(_serialize(dtype, header)), 201


# ----------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------
@documents_bp.route("/<doc_type>/<int:document_id>/approve", methods=["POST"])
@login_required
def approve_document(doc_type: str, document_id: int):
    dtype = DocumentType.parse(doc_type)
    expected_level = parse_optional_int(_payload().get("expected_level"))
    header = workflow.approve(dtype, document_id, _actor(), expected_level=expected_level)
    return jsonify(_serialize(dtype, header))


@documents_bp.route("/<doc_type>/<int:document_id>/reject", methods=["POST"])
@login_required
def reject_document(doc_type: str, document_id: int):
    dtype = DocumentType.parse(doc_type)
    header = workflow.reject(dtype, document_id, _actor())
    return jsonify(_serialize(dtype, header))


@documents_bp.route("/<doc_type>/<int:document_id>/close", methods=["POST"])
@login_required
def close_document(doc_type: str, document_id: int):
    dtype = DocumentType.parse(doc_type)
    header = workflow.close(dtype, document_id, _actor())
    return jsonify(_serialize(dtype, header))


@documents_bp.route("/<doc_type>/<int:document_id>/submit", methods=["POST"])
@login_required
def submit_document(doc_type: str, document_id: int):
    dtype = DocumentType.parse(doc_type)
    header = workflow.submit(dtype, document_id, _actor())
    return jsonify(_serialize(dtype, header))


@documents_bp.route("/<doc_type>/<int:document_id>/revise", methods=["PUT"])
@login_required
def revise_document(doc_type: str, document_id: int):
    dtype = DocumentType.parse(doc_type)
    payload = _payload()
    header = workflow.revise(
        dtype,
        document_id,
        _actor(),
        lines=workflow.parse_lines(dtype, payload.get("lines")),
        attachment=decode_attachment(payload.get("attachment")),
        supplier_id=parse_optional_int(payload.get("supplier_id")),
        invoice_no=payload.get("invoice_no"),
        invoice_date=parse_date(payload.get("invoice_date")),
        submit=_submit_flag(payload),
    )
    return jsonify(_serialize(dtype, header))


# ----------------------------------------------------------------------
# MTF line-level transitions
# ----------------------------------------------------------------------
@documents_bp.route("/mtf/lines/<int:line_id>/approve", methods=["POST"])
@login_required
def approve_mtf_line(line_id: int):
    expected_level = parse_optional_int(_payload().get("expected_level"))
    header = workflow.approve_mtf_line(line_id, _actor(), expected_level=expected_level)
    return jsonify(_serialize(DocumentType.MTF, header))


@documents_bp.route("/mtf/lines/<int:line_id>/reject", methods=["POST"])
@login_required
def reject_mtf_line(line_id: int):
    header = workflow.reject_mtf_line(line_id, _actor())
    return jsonify(_serialize(DocumentType.MTF, header))


@documents_bp.route("/mtf/lines/<int:line_id>/close", methods=["POST"])
@login_required
def close_mtf_line(line_id: int):
    header = workflow.close_mtf_line(line_id, _actor())
    return jsonify(_serialize(DocumentType.MTF, header))
