"""
Procurement Workflow – Domain Models

Master data:
- Project (per-document-type maximum approval level, base currency)
- Discipline (discipline + budget codes)
- Supplier, Item (item library)
- Role (name + optional level), User (roles / projects / disciplines)

Document chain (each child line references exactly one parent line):
- MTF header + lines            (request)
- STF order + lines  -> MTF line (supplier purchase order)
- OTF order + lines  -> STF line (invoicing)
- MRF header + lines -> OTF line (goods receipt)
- MDF issue + lines  -> MRF line (site issue)

IMPORTANT:
- status / current_approval_level are only mutated by the workflow orchestrator.
- Approvable records carry a version_id_col: concurrent writers of the same row
  fail on flush (StaleDataError) instead of double-advancing a level.
- Documents are never deleted.
"""

from __future__ import annotations

import base64
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from .constants import WorkflowStatus
from .extensions import db


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _to_decimal(value) -> Decimal:
    """Convert Numeric/None to Decimal safely."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value))


def _money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _num(value) -> float | None:
    """Decimal -> float for JSON payloads."""
    if value is None:
        return None
    return float(value)


# ---------------------------------------------------------------------
# Association tables (user scope of authority)
# ---------------------------------------------------------------------
user_roles = db.Table(
    "user_roles",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

user_projects = db.Table(
    "user_projects",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    db.Column("project_id", db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
)

user_disciplines = db.Table(
    "user_disciplines",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    db.Column("discipline_id", db.Integer, db.ForeignKey("disciplines.id", ondelete="CASCADE"), primary_key=True),
)


# ---------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------
class Project(db.Model):
    """Project. Carries the approval depth of each document type."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(50), nullable=False, unique=True, index=True)
    country = db.Column(db.String(100))
    base_currency = db.Column(db.String(3), nullable=False, default="USD")

    max_mtf_approval_level = db.Column(db.Integer, nullable=False, default=1)
    max_stf_approval_level = db.Column(db.Integer, nullable=False, default=1)
    max_otf_approval_level = db.Column(db.Integer, nullable=False, default=1)
    max_mrf_approval_level = db.Column(db.Integer, nullable=False, default=1)
    max_mdf_approval_level = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "country": self.country,
            "base_currency": self.base_currency,
            "max_mtf_approval_level": self.max_mtf_approval_level,
            "max_stf_approval_level": self.max_stf_approval_level,
            "max_otf_approval_level": self.max_otf_approval_level,
            "max_mrf_approval_level": self.max_mrf_approval_level,
            "max_mdf_approval_level": self.max_mdf_approval_level,
        }

    def __repr__(self):
        return f"<Project {self.code}>"


class Discipline(db.Model):
    __tablename__ = "disciplines"

    id = db.Column(db.Integer, primary_key=True)

    discipline_code = db.Column(db.String(50), nullable=False, index=True)
    discipline_name = db.Column(db.String(255), nullable=False)
    budget_code = db.Column(db.String(50), nullable=False)
    budget_name = db.Column(db.String(255), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("discipline_code", "budget_code", name="uq_discipline_budget"),
    )

    def __repr__(self):
        return f"<Discipline {self.discipline_code}/{self.budget_code}>"


class Supplier(db.Model):
    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    contact_person = db.Column(db.String(255))
    email = db.Column(db.String(255))
    phone = db.Column(db.String(50))
    address = db.Column(db.String(255))
    active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<Supplier {self.name}>"


class Item(db.Model):
    """Item library entry. budget_unit_price seeds MTF estimated prices."""

    __tablename__ = "items"

    id = db.Column(db.Integer, primary_key=True)

    material_code = db.Column(db.String(50), nullable=False, unique=True, index=True)
    material_name = db.Column(db.String(255), nullable=False)
    material_description = db.Column(db.Text)
    unit = db.Column(db.String(20), nullable=False, default="EA")
    budget_unit_price = db.Column(db.Numeric(12, 2))

    def __repr__(self):
        return f"<Item {self.material_code}>"


class Role(db.Model):
    """A role name, optionally at an approval level (e.g. 'STF Approver' L2)."""

    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False, index=True)
    level = db.Column(db.Integer, nullable=True)

    __table_args__ = (db.UniqueConstraint("name", "level", name="uq_role_name_level"),)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "level": self.level}

    def __repr__(self):
        return f"<Role {self.name} L{self.level}>" if self.level else f"<Role {self.name}>"


class User(UserMixin, db.Model):
    """System user with a scope of authority (projects, disciplines, roles)."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    roles = db.relationship("Role", secondary=user_roles, lazy="selectin")
    projects = db.relationship("Project", secondary=user_projects, lazy="selectin")
    disciplines = db.relationship("Discipline", secondary=user_disciplines, lazy="selectin")

    @property
    def is_active(self) -> bool:
        return bool(self.active)

    @property
    def project_ids(self) -> set[int]:
        return {p.id for p in self.projects}

    @property
    def discipline_ids(self) -> set[int]:
        return {d.id for d in self.disciplines}

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "active": self.active,
            "roles": [r.to_dict() for r in self.roles],
            "project_ids": sorted(self.project_ids),
            "discipline_ids": sorted(self.discipline_ids),
        }

    def __repr__(self):
        return f"<User {self.email}>"


# ---------------------------------------------------------------------
# Attachments (opaque to the core)
# ---------------------------------------------------------------------
class AttachmentMixin:
    """{fileName, fileType, content} stored on the document header."""

    attachment_name = db.Column(db.String(255), nullable=True)
    attachment_type = db.Column(db.String(100), nullable=True)
    attachment_content = db.Column(db.LargeBinary, nullable=True)

    def set_attachment(self, attachment: dict | None) -> None:
        if not attachment:
            self.attachment_name = None
            self.attachment_type = None
            self.attachment_content = None
            return
        self.attachment_name = attachment.get("fileName")
        self.attachment_type = attachment.get("fileType")
        self.attachment_content = attachment.get("content")

    @property
    def attachment(self) -> dict | None:
        if not self.attachment_name:
            return None
        content = self.attachment_content or b""
        return {
            "fileName": self.attachment_name,
            "fileType": self.attachment_type,
            "fileContent": base64.b64encode(content).decode("ascii"),
        }


# ---------------------------------------------------------------------
# MTF – Material Transfer Form
# ---------------------------------------------------------------------
class MtfHeader(AttachmentMixin, db.Model):
    """
    MTF header.

    status and current_approval_level are derived from the lines
    (see approvals.refresh_mtf_header); never set them directly.
    """

    __tablename__ = "mtf_headers"

    id = db.Column(db.Integer, primary_key=True)
    document_no = db.Column(db.String(20), nullable=False, unique=True, index=True)

    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    discipline_id = db.Column(db.Integer, db.ForeignKey("disciplines.id"), nullable=False, index=True)

    status = db.Column(db.String(30), nullable=False, default=WorkflowStatus.PENDING_APPROVAL.value, index=True)
    current_approval_level = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    date_created = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    version_id = db.Column(db.Integer, nullable=False)

    project = db.relationship("Project")
    discipline = db.relationship("Discipline")
    creator = db.relationship("User", foreign_keys=[created_by])

    lines = db.relationship(
        "MtfLine",
        back_populates="header",
        order_by="MtfLine.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, with_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_no": self.document_no,
            "project_id": self.project_id,
            "discipline_id": self.discipline_id,
            "status": self.status,
            "current_approval_level": self.current_approval_level,
            "created_by": self.created_by,
            "date_created": _iso(self.date_created),
            "attachment": self.attachment,
        }
        if with_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data

    def __repr__(self):
        return f"<MtfHeader {self.document_no} {self.status}>"


class MtfLine(db.Model):
    """MTF line. The unit of MTF approval."""

    __tablename__ = "mtf_lines"

    id = db.Column(db.Integer, primary_key=True)

    mtf_header_id = db.Column(
        db.Integer,
        db.ForeignKey("mtf_headers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)

    material_description = db.Column(db.Text)
    request_qty = db.Column(db.Numeric(12, 2), nullable=False)
    est_unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    est_total_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    status = db.Column(db.String(30), nullable=False, default=WorkflowStatus.PENDING_APPROVAL.value, index=True)
    current_approval_level = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False)

    header = db.relationship("MtfHeader", back_populates="lines")
    item = db.relationship("Item")

    __mapper_args__ = {"version_id_col": version_id}

    # Authorization / project scope is inherited from the header.
    @property
    def project_id(self) -> int:
        return self.header.project_id

    @property
    def discipline_id(self) -> int:
        return self.header.discipline_id

    @property
    def created_by(self) -> int:
        return self.header.created_by

    @property
    def document_no(self) -> str:
        return self.header.document_no

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mtf_header_id": self.mtf_header_id,
            "item_id": self.item_id,
            "material_description": self.material_description,
            "request_qty": _num(self.request_qty),
            "est_unit_price": _num(self.est_unit_price),
            "est_total_price": _num(self.est_total_price),
            "status": self.status,
            "current_approval_level": self.current_approval_level,
        }


# ---------------------------------------------------------------------
# STF – Stock Transfer Form (supplier order)
# ---------------------------------------------------------------------
class StfOrder(AttachmentMixin, db.Model):
    __tablename__ = "stf_orders"

    id = db.Column(db.Integer, primary_key=True)
    document_no = db.Column(db.String(20), nullable=False, unique=True, index=True)

    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    discipline_id = db.Column(db.Integer, db.ForeignKey("disciplines.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    status = db.Column(db.String(30), nullable=False, default=WorkflowStatus.PENDING_APPROVAL.value, index=True)
    current_approval_level = db.Column(db.Integer, nullable=False, default=0)
    total_value = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    date_created = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    version_id = db.Column(db.Integer, nullable=False)

    project = db.relationship("Project")
    discipline = db.relationship("Discipline")
    supplier = db.relationship("Supplier")
    creator = db.relationship("User", foreign_keys=[created_by])

    lines = db.relationship(
        "StfOrderLine",
        back_populates="order",
        order_by="StfOrderLine.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def recalc_totals(self):
        total = Decimal("0.00")
        for line in self.lines:
            total += _to_decimal(line.order_qty) * _to_decimal(line.unit_price)
        self.total_value = _money(total)

    def to_dict(self, with_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_no": self.document_no,
            "project_id": self.project_id,
            "discipline_id": self.discipline_id,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "current_approval_level": self.current_approval_level,
            "total_value": _num(self.total_value),
            "created_by": self.created_by,
            "date_created": _iso(self.date_created),
            "attachment": self.attachment,
        }
        if with_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data

    def __repr__(self):
        return f"<StfOrder {self.document_no} {self.status}>"


class StfOrderLine(db.Model):
    __tablename__ = "stf_order_lines"

    id = db.Column(db.Integer, primary_key=True)

    stf_order_id = db.Column(
        db.Integer,
        db.ForeignKey("stf_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    mtf_line_id = db.Column(db.Integer, db.ForeignKey("mtf_lines.id"), nullable=False, index=True)

    material_description = db.Column(db.Text)
    order_qty = db.Column(db.Numeric(12, 2), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    order = db.relationship("StfOrder", back_populates="lines")
    mtf_line = db.relationship("MtfLine")

    @property
    def total_price(self) -> Decimal:
        return _money(_to_decimal(self.order_qty) * _to_decimal(self.unit_price))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stf_order_id": self.stf_order_id,
            "mtf_line_id": self.mtf_line_id,
            "material_description": self.material_description,
            "order_qty": _num(self.order_qty),
            "unit_price": _num(self.unit_price),
        }


# ---------------------------------------------------------------------
# OTF – On-The-Fly order (invoicing)
# ---------------------------------------------------------------------
class OtfOrder(AttachmentMixin, db.Model):
    __tablename__ = "otf_orders"

    id = db.Column(db.Integer, primary_key=True)
    document_no = db.Column(db.String(20), nullable=False, unique=True, index=True)

    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    discipline_id = db.Column(db.Integer, db.ForeignKey("disciplines.id"), nullable=False, index=True)

    status = db.Column(db.String(30), nullable=False, default=WorkflowStatus.PENDING_APPROVAL.value, index=True)
    current_approval_level = db.Column(db.Integer, nullable=False, default=0)
    total_value = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    invoice_no = db.Column(db.String(100), nullable=True, index=True)
    invoice_date = db.Column(db.Date, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    date_created = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    version_id = db.Column(db.Integer, nullable=False)

    project = db.relationship("Project")
    discipline = db.relationship("Discipline")
    creator = db.relationship("User", foreign_keys=[created_by])

    lines = db.relationship(
        "OtfOrderLine",
        back_populates="order",
        order_by="OtfOrderLine.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def recalc_totals(self):
        total = Decimal("0.00")
        for line in self.lines:
            total += _to_decimal(line.order_qty) * _to_decimal(line.unit_price)
        self.total_value = _money(total)

    def to_dict(self, with_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_no": self.document_no,
            "project_id": self.project_id,
            "discipline_id": self.discipline_id,
            "status": self.status,
            "current_approval_level": self.current_approval_level,
            "total_value": _num(self.total_value),
            "invoice_no": self.invoice_no,
            "invoice_date": self.invoice_date.isoformat() if self.invoice_date else None,
            "created_by": self.created_by,
            "date_created": _iso(self.date_created),
            "attachment": self.attachment,
        }
        if with_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data

    def __repr__(self):
        return f"<OtfOrder {self.document_no} {self.status}>"


class OtfOrderLine(db.Model):
    __tablename__ = "otf_order_lines"

    id = db.Column(db.Integer, primary_key=True)

    otf_order_id = db.Column(
        db.Integer,
        db.ForeignKey("otf_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stf_order_line_id = db.Column(db.Integer, db.ForeignKey("stf_order_lines.id"), nullable=False, index=True)

    order_qty = db.Column(db.Numeric(12, 2), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    order = db.relationship("OtfOrder", back_populates="lines")
    stf_line = db.relationship("StfOrderLine")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "otf_order_id": self.otf_order_id,
            "stf_order_line_id": self.stf_order_line_id,
            "order_qty": _num(self.order_qty),
            "unit_price": _num(self.unit_price),
        }


# ---------------------------------------------------------------------
# MRF – Material Receipt Form
# ---------------------------------------------------------------------
class MrfHeader(AttachmentMixin, db.Model):
    __tablename__ = "mrf_headers"

    id = db.Column(db.Integer, primary_key=True)
    document_no = db.Column(db.String(20), nullable=False, unique=True, index=True)

    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    discipline_id = db.Column(db.Integer, db.ForeignKey("disciplines.id"), nullable=False, index=True)

    status = db.Column(db.String(30), nullable=False, default=WorkflowStatus.PENDING_APPROVAL.value, index=True)
    current_approval_level = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    date_created = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    version_id = db.Column(db.Integer, nullable=False)

    project = db.relationship("Project")
    discipline = db.relationship("Discipline")
    creator = db.relationship("User", foreign_keys=[created_by])

    lines = db.relationship(
        "MrfLine",
        back_populates="header",
        order_by="MrfLine.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, with_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_no": self.document_no,
            "project_id": self.project_id,
            "discipline_id": self.discipline_id,
            "status": self.status,
            "current_approval_level": self.current_approval_level,
            "created_by": self.created_by,
            "date_created": _iso(self.date_created),
            "attachment": self.attachment,
        }
        if with_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data

    def __repr__(self):
        return f"<MrfHeader {self.document_no} {self.status}>"


class MrfLine(db.Model):
    __tablename__ = "mrf_lines"

    id = db.Column(db.Integer, primary_key=True)

    mrf_header_id = db.Column(
        db.Integer,
        db.ForeignKey("mrf_headers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    otf_order_line_id = db.Column(db.Integer, db.ForeignKey("otf_order_lines.id"), nullable=False, index=True)

    received_qty = db.Column(db.Numeric(12, 2), nullable=False)

    header = db.relationship("MrfHeader", back_populates="lines")
    otf_line = db.relationship("OtfOrderLine")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mrf_header_id": self.mrf_header_id,
            "otf_order_line_id": self.otf_order_line_id,
            "received_qty": _num(self.received_qty),
        }


# ---------------------------------------------------------------------
# MDF – Material Delivery (site issue). No approval chain.
# ---------------------------------------------------------------------
class MdfIssue(db.Model):
    __tablename__ = "mdf_issues"

    id = db.Column(db.Integer, primary_key=True)
    document_no = db.Column(db.String(20), nullable=False, unique=True, index=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    date_created = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    creator = db.relationship("User", foreign_keys=[created_by])

    lines = db.relationship(
        "MdfIssueLine",
        back_populates="issue",
        order_by="MdfIssueLine.id",
        cascade="all, delete-orphan",
    )

    # All lines of an issue come from one project (checked at creation).
    @property
    def project_id(self) -> int | None:
        for line in self.lines:
            return line.mrf_line.header.project_id
        return None

    def to_dict(self, with_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_no": self.document_no,
            "created_by": self.created_by,
            "date_created": _iso(self.date_created),
        }
        if with_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class MdfIssueLine(db.Model):
    __tablename__ = "mdf_issue_lines"

    id = db.Column(db.Integer, primary_key=True)

    mdf_issue_id = db.Column(
        db.Integer,
        db.ForeignKey("mdf_issues.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    mrf_line_id = db.Column(db.Integer, db.ForeignKey("mrf_lines.id"), nullable=False, index=True)

    delivered_qty = db.Column(db.Numeric(12, 2), nullable=False)

    issue = db.relationship("MdfIssue", back_populates="lines")
    mrf_line = db.relationship("MrfLine")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mdf_issue_id": self.mdf_issue_id,
            "mrf_line_id": self.mrf_line_id,
            "delivered_qty": _num(self.delivered_qty),
        }


# ---------------------------------------------------------------------
# History
# ---------------------------------------------------------------------
class WorkflowHistory(db.Model):
    """One row per workflow action (Created / Approved / Rejected / Revised / Closed)."""

    __tablename__ = "workflow_history"

    id = db.Column(db.Integer, primary_key=True)

    document_type = db.Column(db.String(10), nullable=False, index=True)
    document_id = db.Column(db.Integer, nullable=False, index=True)
    document_no = db.Column(db.String(20), nullable=True)

    action = db.Column(db.String(20), nullable=False, index=True)

    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    actor_snapshot = db.Column(db.String(255), nullable=True)

    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=False)
    details = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    actor = db.relationship("User", backref=db.backref("history_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "document_no": self.document_no,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor": self.actor_snapshot,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "details": self.details,
            "timestamp": _iso(self.created_at),
        }
