import asyncio
import json
from datetime import date

from sqlalchemy.exc import OperationalError

from exceptions import DependencyError
from models import ApprovalToken
from services.directory import Person
from services.live_events import LiveEventManager
from services.notification_service import (
    ApprovalRequested,
    DecisionNotice,
    LeaveSnapshot,
    LiveEvent,
    NotificationDispatcher,
    OrgWideNotice,
)
from conftest import FakeEmailSender, FakeLiveChannel, TestingSessionLocal


def _snapshot(leave_id=1):
    return LeaveSnapshot(
        id=leave_id,
        employee_id=4,
        employee_user_id=4,
        employee_name="Eve",
        employee_email="eve@acme.com",
        leave_type="Annual Leave",
        start_date=date(2030, 6, 10),
        end_date=date(2030, 6, 12),
        number_of_days=3,
        reason="Family trip",
        status="pending",
        hod_status="Pending",
        admin_status="Pending",
    )


def _person(name, role, user_id):
    return Person(user_id=user_id, employee_id=user_id, email=f"{name}@acme.com",
                  display_name=name.capitalize(), role=role)


def test_approval_request_mints_links(db):
    sender, live = FakeEmailSender(), FakeLiveChannel()
    dispatcher = NotificationDispatcher(sender, live, session_factory=TestingSessionLocal)

    failures = asyncio.run(dispatcher.dispatch([
        ApprovalRequested(_snapshot(), _person("henry", "hod", 2), "hod"),
    ]))

    assert failures == []
    [mail] = sender.application
    assert mail["to"] == "henry@acme.com"
    assert mail["approve_link"].startswith("http://hrm.test/leave/email-action?token=")
    assert mail["approve_link"].endswith("&action=approve")
    assert mail["reject_link"].endswith("&action=reject")
    assert mail["leave"]["start_date"] == "2030-06-10"
    assert db.query(ApprovalToken).count() == 2


def test_token_store_failure_still_sends_without_links():
    def broken_session():
        raise OperationalError("INSERT INTO approval_tokens", {}, Exception("database is locked"))

    sender = FakeEmailSender()
    dispatcher = NotificationDispatcher(sender, FakeLiveChannel(), session_factory=broken_session)

    failures = asyncio.run(dispatcher.dispatch([
        ApprovalRequested(_snapshot(), _person("alice", "admin", 1), "admin", prior_decision="Approved by HOD Henry"),
    ]))

    assert failures == []
    [mail] = sender.application
    assert mail["approve_link"] is None
    assert mail["reject_link"] is None
    assert mail["prior_decision"] == "Approved by HOD Henry"


def test_failed_email_is_reported_and_others_still_run():
    sender, live = FakeEmailSender(fail=True), FakeLiveChannel()
    dispatcher = NotificationDispatcher(sender, live, session_factory=TestingSessionLocal)
    snap = _snapshot()

    failures = asyncio.run(dispatcher.dispatch([
        DecisionNotice(snap, "Approved", "Alice"),
        OrgWideNotice(snap, "Alice", recipients=(_person("henry", "hod", 2), _person("sam", "employee", 5))),
        LiveEvent("leave_status_update", snap, user_ids=(4,), role="hod", message="Leave approved"),
    ]))

    assert len(failures) == 2
    assert all(isinstance(f, DependencyError) for f in failures)
    assert len(sender.decision) == 1
    assert len(sender.info) == 2
    assert [uid for uid, _ in live.to_users] == [4]
    assert [role for role, _ in live.to_roles] == ["hod"]


def test_live_event_payload():
    snap = _snapshot(leave_id=42)
    payload = LiveEvent("new_leave", snap, message="New leave application from Eve").payload()

    assert payload["type"] == "new_leave"
    assert payload["leaveId"] == 42
    assert payload["leave"]["end_date"] == "2030-06-12"


def test_unexpected_exception_is_wrapped():
    class ExplodingChannel(FakeLiveChannel):
        async def send_to_user(self, user_id, event):
            raise RuntimeError("socket gone")

    dispatcher = NotificationDispatcher(FakeEmailSender(), ExplodingChannel(), session_factory=TestingSessionLocal)
    failures = asyncio.run(dispatcher.dispatch([LiveEvent("leave_deleted", _snapshot(), user_ids=(4,))]))

    assert len(failures) == 1
    assert "socket gone" in failures[0].message


# ============================================================================
# LIVE EVENT MANAGER
# ============================================================================

class FakeSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.sent = []
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, message):
        if self.broken:
            raise RuntimeError("closed")
        self.sent.append(json.loads(message))


def test_live_manager_fans_out_by_user_and_role():
    manager = LiveEventManager()
    admin_socket, hod_socket, dead_socket = FakeSocket(), FakeSocket(), FakeSocket(broken=True)

    async def scenario():
        await manager.connect(admin_socket, 1, "admin")
        await manager.connect(hod_socket, 2, "HOD")
        await manager.connect(dead_socket, 3, "hod")

        to_role = await manager.send_to_role("hod", {"type": "new_leave", "leaveId": 7})
        to_user = await manager.send_to_user(1, {"type": "leave_status_update", "leaveId": 7})
        return to_role, to_user

    to_role, to_user = asyncio.run(scenario())

    assert to_role == 1
    assert to_user == 1
    assert hod_socket.sent[0]["leaveId"] == 7
    assert "timestamp" in hod_socket.sent[0]
    assert admin_socket.sent[0]["type"] == "leave_status_update"
    # the broken socket was dropped
    assert manager.connection_count() == 2
    assert 3 not in manager.user_roles
