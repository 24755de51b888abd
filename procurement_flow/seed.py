"""
procurement_flow/seed.py

Seed the role catalogue and an optional demo data set.

Rules:
- Safe to run multiple times (idempotent): rows are matched by their natural
  keys (role name + level, project code, email, material code ...).
- Approver roles exist at levels 1..MAX_SEEDED_LEVEL; a project's
  max_<type>_approval_level should not exceed that.

NOTE:
- Demo data is for local development only (flask seed-demo).
"""

from __future__ import annotations

import logging
from decimal import Decimal

from .constants import RoleName
from .extensions import db
from .models import Discipline, Item, Project, Role, Supplier, User

logger = logging.getLogger(__name__)

MAX_SEEDED_LEVEL = 3

APPROVER_ROLES = (
    RoleName.MTF_APPROVER,
    RoleName.STF_APPROVER,
    RoleName.OTF_APPROVER,
    RoleName.MRF_APPROVER,
)

PLAIN_ROLES = (
    RoleName.ADMINISTRATOR,
    RoleName.REQUESTER,
    RoleName.STF_INITIATOR,
    RoleName.OTF_INITIATOR,
    RoleName.MRF_INITIATOR,
    RoleName.VIEWER,
)


def get_or_create_role(name: RoleName, level: int | None = None) -> tuple[Role, bool]:
    role = Role.query.filter_by(name=name.value, level=level).first()
    if role:
        return role, False
    role = Role(name=name.value, level=level)
    db.session.add(role)
    return role, True


def seed_roles() -> int:
    """Create missing roles. Returns how many were created."""
    created = 0
    for name in PLAIN_ROLES:
        _role, is_new = get_or_create_role(name)
        created += int(is_new)
    for name in APPROVER_ROLES:
        for level in range(1, MAX_SEEDED_LEVEL + 1):
            _role, is_new = get_or_create_role(name, level)
            created += int(is_new)
    db.session.commit()
    logger.info("Role catalogue seeded (%d new)", created)
    return created


# (email, first name, last name, [(role, level)])
DEMO_USERS = [
    ("admin@example.com", "System", "Administrator", [(RoleName.ADMINISTRATOR, None)]),
    ("requester@example.com", "Rena", "Requester", [(RoleName.REQUESTER, None)]),
    ("mtf.l1@example.com", "Mark", "Approver", [(RoleName.MTF_APPROVER, 1)]),
    ("mtf.l2@example.com", "Maya", "Approver", [(RoleName.MTF_APPROVER, 2)]),
    ("buyer@example.com", "Sam", "Buyer", [(RoleName.STF_INITIATOR, None)]),
    ("stf.l1@example.com", "Stella", "Approver", [(RoleName.STF_APPROVER, 1)]),
    ("invoicing@example.com", "Otto", "Clerk", [(RoleName.OTF_INITIATOR, None)]),
    ("otf.l1@example.com", "Olga", "Approver", [(RoleName.OTF_APPROVER, 1)]),
    ("storekeeper@example.com", "Ray", "Keeper", [(RoleName.MRF_INITIATOR, None)]),
    ("mrf.l1@example.com", "Mira", "Approver", [(RoleName.MRF_APPROVER, 1)]),
    ("viewer@example.com", "Vic", "Viewer", [(RoleName.VIEWER, None)]),
]


def seed_demo_data(password: str = "demo1234") -> list[User]:
    """Demo project, master data and one user per role, all scoped to the project."""
    seed_roles()

    project = Project.query.filter_by(code="DEMO").first()
    if not project:
        project = Project(
            name="Demo Project",
            code="DEMO",
            country="Greece",
            base_currency="EUR",
            max_mtf_approval_level=2,
            max_stf_approval_level=1,
            max_otf_approval_level=1,
            max_mrf_approval_level=1,
        )
        db.session.add(project)

    discipline = Discipline.query.filter_by(discipline_code="MECH", budget_code="B-100").first()
    if not discipline:
        discipline = Discipline(
            discipline_code="MECH",
            discipline_name="Mechanical",
            budget_code="B-100",
            budget_name="Mechanical works",
        )
        db.session.add(discipline)

    if not Supplier.query.filter_by(name="Acme Supplies").first():
        db.session.add(Supplier(name="Acme Supplies", email="sales@acme.example", active=True))

    for code, name, unit, price in (
        ("PIPE-050", "Steel pipe DN50", "M", Decimal("12.50")),
        ("VALVE-050", "Gate valve DN50", "EA", Decimal("85.00")),
    ):
        if not Item.query.filter_by(material_code=code).first():
            db.session.add(Item(material_code=code, material_name=name, unit=unit, budget_unit_price=price))

    db.session.flush()

    users = []
    for email, first, last, grants in DEMO_USERS:
        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(email=email, first_name=first, last_name=last, active=True)
            user.set_password(password)
            db.session.add(user)
        for name, level in grants:
            role, _ = get_or_create_role(name, level)
            if role not in user.roles:
                user.roles.append(role)
        if project not in user.projects:
            user.projects.append(project)
        if discipline not in user.disciplines:
            user.disciplines.append(discipline)
        users.append(user)

    db.session.commit()
    logger.info("Demo data seeded (%d users)", len(users))
    return users
