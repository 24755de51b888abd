"""Pytest configuration and fixtures."""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from procurement_flow import create_app
from procurement_flow.constants import DocumentType, RoleName
from procurement_flow.extensions import db
from procurement_flow.models import Discipline, Item, Project, Supplier, User
from procurement_flow.seed import get_or_create_role, seed_roles
from procurement_flow import workflow
from procurement_flow.workflow import ChildLineInput, MtfLineInput

PASSWORD = "testpass123"


@pytest.fixture(scope="function")
def app():
    """Application with a fresh in-memory schema per test."""
    app = create_app("config.TestConfig")
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def project(app) -> Project:
    project = Project(
        name="Test Project",
        code="TP-01",
        base_currency="EUR",
        max_mtf_approval_level=2,
        max_stf_approval_level=1,
        max_otf_approval_level=1,
        max_mrf_approval_level=1,
    )
    db.session.add(project)
    db.session.commit()
    return project


@pytest.fixture
def other_project(app) -> Project:
    project = Project(name="Other Project", code="OP-01", base_currency="EUR")
    db.session.add(project)
    db.session.commit()
    return project


@pytest.fixture
def discipline(app) -> Discipline:
    discipline = Discipline(
        discipline_code="MECH",
        discipline_name="Mechanical",
        budget_code="B-100",
        budget_name="Mechanical works",
    )
    db.session.add(discipline)
    db.session.commit()
    return discipline


@pytest.fixture
def item(app) -> Item:
    item = Item(
        material_code="PIPE-050",
        material_name="Steel pipe DN50",
        unit="M",
        budget_unit_price=Decimal("10.00"),
    )
    db.session.add(item)
    db.session.commit()
    return item


@pytest.fixture
def supplier(app) -> Supplier:
    supplier = Supplier(name="Test Supplier", email="supplier@example.com", active=True)
    db.session.add(supplier)
    db.session.commit()
    return supplier


def make_user(email, grants, projects=(), disciplines=()) -> User:
    """Create a user holding [(RoleName, level)] in the given scope."""
    first, _, last = email.partition("@")
    user = User(email=email, first_name=first, last_name=last or "user", active=True)
    user.set_password(PASSWORD)
    for name, level in grants:
        role, _ = get_or_create_role(name, level)
        user.roles.append(role)
    user.projects.extend(projects)
    user.disciplines.extend(disciplines)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def users(app, project, discipline) -> SimpleNamespace:
    """One user per role, all scoped to `project` / `discipline`."""
    scope = {"projects": [project], "disciplines": [discipline]}
    return SimpleNamespace(
        requester=make_user("requester@example.com", [(RoleName.REQUESTER, None)], **scope),
        mtf_l1=make_user("mtf.l1@example.com", [(RoleName.MTF_APPROVER, 1)], **scope),
        mtf_l2=make_user("mtf.l2@example.com", [(RoleName.MTF_APPROVER, 2)], **scope),
        buyer=make_user("buyer@example.com", [(RoleName.STF_INITIATOR, None)], **scope),
        stf_l1=make_user("stf.l1@example.com", [(RoleName.STF_APPROVER, 1)], **scope),
        invoicing=make_user("invoicing@example.com", [(RoleName.OTF_INITIATOR, None)], **scope),
        otf_l1=make_user("otf.l1@example.com", [(RoleName.OTF_APPROVER, 1)], **scope),
        storekeeper=make_user("storekeeper@example.com", [(RoleName.MRF_INITIATOR, None)], **scope),
        mrf_l1=make_user("mrf.l1@example.com", [(RoleName.MRF_APPROVER, 1)], **scope),
        viewer=make_user("viewer@example.com", [(RoleName.VIEWER, None)], **scope),
        outsider=make_user(
            "outsider@example.com",
            [(RoleName.MTF_APPROVER, 1), (RoleName.STF_INITIATOR, None)],
            disciplines=[discipline],
        ),
    )


# ----------------------------------------------------------------------
# Chain builders
# ----------------------------------------------------------------------
@pytest.fixture
def make_mtf(users, project, discipline, item):
    def _make(*quantities, approve=True):
        header = workflow.create_mtf(
            users.requester,
            project_id=project.id,
            discipline_id=discipline.id,
            lines=[MtfLineInput(item_id=item.id, quantity=Decimal(str(q))) for q in quantities or (100,)],
        )
        if approve:
            workflow.approve(DocumentType.MTF, header.id, users.mtf_l1)
            workflow.approve(DocumentType.MTF, header.id, users.mtf_l2)
        return header

    return _make


@pytest.fixture
def make_stf(users, supplier):
    def _make(mtf_line, quantity, approve=False, unit_price=None):
        order = workflow.create_stf(
            users.buyer,
            supplier_id=supplier.id,
            lines=[ChildLineInput(
                parent_line_id=mtf_line.id,
                quantity=Decimal(str(quantity)),
                unit_price=None if unit_price is None else Decimal(str(unit_price)),
            )],
        )
        if approve:
            workflow.approve(DocumentType.STF, order.id, users.stf_l1)
        return order

    return _make


def login(client, user, password=PASSWORD):
    resp = client.post("/auth/login", json={"email": user.email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp


@pytest.fixture
def login_as(client):
    def _login(user):
        login(client, user)
        return client

    return _login
