import os

# Must be set before db/auth are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["FRONTEND_URL"] = "http://hrm.test"

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import create_access_token, hash_password
from db import get_db
from main import app
from models import Base, User, Employee, LeaveType
from services.directory import person_for_user
from services.notification_service import NotificationDispatcher, get_dispatcher

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeEmailSender:
    def __init__(self, fail=False):
        self.fail = fail
        self.application = []
        self.decision = []
        self.info = []

    def send_leave_application_email(self, to_email, approver_name, leave, approve_link=None,
                                     reject_link=None, prior_decision=None):
        self.application.append(dict(to=to_email, name=approver_name, leave=leave,
                                     approve_link=approve_link, reject_link=reject_link,
                                     prior_decision=prior_decision))
        return not self.fail

    def send_leave_decision_email(self, to_email, employee_name, leave, status, approver_name, remark=None):
        self.decision.append(dict(to=to_email, status=status, approver=approver_name, remark=remark, leave=leave))
        return not self.fail

    def send_leave_info_email(self, to_email, recipient_name, leave, approver_name):
        self.info.append(dict(to=to_email, leave=leave, approver=approver_name))
        return not self.fail


class FakeLiveChannel:
    def __init__(self):
        self.to_users = []
        self.to_roles = []

    async def send_to_user(self, user_id, event):
        self.to_users.append((user_id, event))
        return 1

    async def send_to_role(self, role, event):
        self.to_roles.append((role, event))
        return 1


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def add_person(db, username, role="employee", department=None, location=None, manager_id=None,
               first_name=None, last_name=None, status="Active", password=None):
    user = User(
        username=username,
        email=f"{username}@acme.com",
        first_name=first_name or username.capitalize(),
        last_name=last_name,
        role=role,
        status=status,
        hashed_password=hash_password(password) if password else None,
    )
    db.add(user)
    db.flush()
    emp = Employee(
        user_id=user.id,
        emp_code=f"EMP{user.id:03d}",
        department=department,
        location=location,
        manager_id=manager_id,
    )
    db.add(emp)
    db.flush()
    return user, emp


@pytest.fixture
def org(db):
    """
    admin (Management), two HODs (Engineering/Pune, Sales/Mumbai),
    an Engineering employee and a Sales employee, plus two leave types.
    """
    admin_user, admin_emp = add_person(db, "alice", role="admin", department="Management", location="Pune")
    hod_user, hod_emp = add_person(db, "henry", role="hod", department="Engineering", location="Pune")
    sales_hod_user, sales_hod_emp = add_person(db, "sara", role="hod", department="Sales", location="Mumbai")
    emp_user, emp_emp = add_person(db, "eve", role="employee", department="Engineering", location="Pune")
    sales_user, sales_emp = add_person(db, "sam", role="employee", department="Sales", location="Mumbai")

    db.add_all([
        LeaveType(name="Annual Leave", code="AL", max_days=12, is_active=True),
        LeaveType(name="Sick Leave", code="SL", max_days=6, is_active=True),
        LeaveType(name="Sabbatical", code="SAB", max_days=30, is_active=False),
    ])
    db.commit()

    return SimpleNamespace(
        admin=person_for_user(db, admin_user.id),
        hod=person_for_user(db, hod_user.id),
        sales_hod=person_for_user(db, sales_hod_user.id),
        employee=person_for_user(db, emp_user.id),
        sales_employee=person_for_user(db, sales_user.id),
    )


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def live_channel():
    return FakeLiveChannel()


@pytest.fixture
def dispatcher(email_sender, live_channel):
    return NotificationDispatcher(email_sender, live_channel, session_factory=TestingSessionLocal)


@pytest.fixture
def client(db, dispatcher):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(person):
    token = create_access_token({"sub": person_username(person), "role": person.role})
    return {"Authorization": f"Bearer {token}"}


def person_username(person):
    return person.email.split("@", 1)[0]


@pytest.fixture
def person_factory(db):
    def _make(username, **kwargs):
        user, emp = add_person(db, username, **kwargs)
        db.commit()
        return person_for_user(db, user.id)
    return _make


@pytest.fixture
def headers_for():
    return auth_headers
