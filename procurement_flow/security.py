"""
procurement_flow/security.py

Authorization predicates for the procurement workflow.

Key rules:
- Approve: the document is Pending Approval, the next level exists, the user
  covers the document's discipline and project, and holds the document type's
  approver role at EXACTLY the required level (one approver per level).
- Revise / Close: only the creator of a Rejected document.
- Create: the stage's initiator role (no level semantics).

The predicates are pure (user + record in, bool out). The require_* helpers
raise AuthorizationError and are what the orchestrator calls.

This module also provides a global safety net:
- viewer_readonly_guard() blocks POST/PUT/PATCH/DELETE for Viewer-only users.
  Wire it via app.before_request in app factory.

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional

from flask import current_app, jsonify, request
from flask_login import current_user

from .constants import DocumentType, RoleName, WorkflowStatus
from .errors import AuthorizationError, ReferentialIntegrityError
from .repository import spec_for

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _forbidden():
    """Consistent 403 payload."""
    return jsonify({"error": "AuthorizationError", "message": "Read-only access.", "details": {}}), 403


def _role_name(role) -> str:
    return role.value if isinstance(role, RoleName) else str(role)


def has_role(user, role, level: Optional[int] = None) -> bool:
    """True if user holds role (at exactly `level` when given)."""
    name = _role_name(role)
    for r in user.roles:
        if r.name != name:
            continue
        if level is None or r.level == level:
            return True
    return False


def _mtf_requires_project() -> bool:
    try:
        return bool(current_app.config.get("WORKFLOW_MTF_REQUIRES_PROJECT_MEMBERSHIP", True))
    except RuntimeError:
        # Outside an application context (pure predicate use).
        return True


# ---------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------
def can_approve(doc_type: DocumentType, record, user, max_level: int) -> bool:
    """
    Whether user may approve (or reject) record at its current level.

    record is an MTF line or an STF/OTF/MRF header; it exposes status,
    current_approval_level, project_id and discipline_id.
    """
    doc_type = DocumentType(doc_type)
    spec = spec_for(doc_type)
    if spec.approver_role is None:
        return False

    if record.status != WorkflowStatus.PENDING_APPROVAL:
        return False

    level_needed = int(record.current_approval_level or 0) + 1
    if level_needed > max_level:
        return False

    if record.discipline_id not in user.discipline_ids:
        return False

    if doc_type != DocumentType.MTF or _mtf_requires_project():
        if record.project_id not in user.project_ids:
            return False

    return has_role(user, spec.approver_role, level=level_needed)


def can_act_on_rejected(record, user) -> bool:
    """Creator of a Rejected document may revise or close it."""
    return record.status == WorkflowStatus.REJECTED and record.created_by == user.id


def can_create(doc_type: DocumentType, user) -> bool:
    spec = spec_for(DocumentType(doc_type))
    return any(has_role(user, role) for role in spec.initiator_roles)


def is_viewer_only(user) -> bool:
    names = {r.name for r in user.roles}
    return names == {RoleName.VIEWER.value}


# ---------------------------------------------------------------------
# Enforcement helpers (raise)
# ---------------------------------------------------------------------
def require_approver(doc_type: DocumentType, record, user, max_level: int) -> None:
    if not can_approve(doc_type, record, user, max_level):
        level_needed = int(record.current_approval_level or 0) + 1
        raise AuthorizationError(
            f"User {user.id} may not act on {spec_for(doc_type).prefix} {record.document_no} at L{level_needed}.",
            details={"required_level": level_needed, "document_type": DocumentType(doc_type).value},
        )


def require_creator(record, user) -> None:
    if record.created_by != user.id:
        raise AuthorizationError(
            "Only the creator of the document may revise or close it.",
            details={"created_by": record.created_by},
        )


def require_initiator(doc_type: DocumentType, user) -> None:
    if not can_create(doc_type, user):
        spec = spec_for(doc_type)
        raise AuthorizationError(
            f"Creating a {spec.prefix} requires one of: {', '.join(r.value for r in spec.initiator_roles)}.",
            details={"document_type": spec.doc_type.value},
        )


def require_project_scope(user, project_id: int) -> None:
    """Records outside the user's projects are treated as non-existent."""
    if project_id not in user.project_ids:
        raise ReferentialIntegrityError(
            f"Project {project_id} is outside the user's scope.",
            details={"project_id": project_id},
        )


# ---------------------------------------------------------------------
# Flask hooks / decorators
# ---------------------------------------------------------------------
def viewer_readonly_guard():
    """
    Global guard: Viewers cannot mutate data.

    Allow-list for self-service mutating endpoints:
    - auth.login
    - auth.logout
    """
    if request.method not in MUTATING_METHODS:
        return None

    if not current_user.is_authenticated:
        return None

    endpoint = (request.endpoint or "").strip()
    if endpoint in {"auth.login", "auth.logout"}:
        return None

    if is_viewer_only(current_user):
        return _forbidden()

    return None


def role_required(stage: Optional[DocumentType] = None) -> Callable[..., Any]:
    """
    Decorator factory: the current user must hold the stage's initiator role.

    Without a stage, the stage is read from the view's <doc_type> URL argument.

    Usage:
        @role_required(DocumentType.STF)
        def create_stf(): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            doc_type = stage if stage is not None else DocumentType.parse(kwargs.get("doc_type"))
            require_initiator(doc_type, current_user)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator
