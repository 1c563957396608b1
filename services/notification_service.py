"""
Notification Service
====================
Effects produced by the leave lifecycle, and the dispatcher that runs them.

The lifecycle never sends anything itself. Each operation commits its state
change and returns a list of effects; routers hand that list to
NotificationDispatcher.dispatch() as a background task. Every effect carries
a LeaveSnapshot, so dispatch never touches the request's DB session.

A failing effect is logged as a DependencyError and skipped; it never
affects the other effects or the already-committed leave request.
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Optional, Tuple, List
import logging

from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from db import SessionLocal
from exceptions import DependencyError
from models import LeaveRequest
from services.approval_tokens import ApprovalTokenService
from services.directory import Person
from services.email_service import email_service
from services.live_events import live_event_manager

logger = logging.getLogger(__name__)


# ============================================================================
# EFFECTS
# ============================================================================

@dataclass(frozen=True)
class LeaveSnapshot:
    id: int
    employee_id: int
    employee_user_id: Optional[int]
    employee_name: str
    employee_email: str
    leave_type: str
    start_date: date
    end_date: date
    number_of_days: int
    reason: Optional[str]
    status: str
    hod_status: str
    admin_status: str

    def as_dict(self) -> dict:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data


def snapshot_leave(leave: LeaveRequest) -> LeaveSnapshot:
    emp = leave.employee
    user = emp.user if emp else None
    return LeaveSnapshot(
        id=leave.id,
        employee_id=leave.employee_id,
        employee_user_id=user.id if user else None,
        employee_name=user.full_name if user else f"Employee {leave.employee_id}",
        employee_email=(user.email or "").strip().lower() if user else "",
        leave_type=leave.leave_type,
        start_date=leave.start_date,
        end_date=leave.end_date,
        number_of_days=leave.number_of_days,
        reason=leave.reason,
        status=leave.status,
        hod_status=leave.hod_status,
        admin_status=leave.admin_status,
    )


@dataclass(frozen=True)
class ApprovalRequested:
    """Ask one approver to act; approve/reject links are minted at dispatch."""
    leave: LeaveSnapshot
    approver: Person
    approver_role: str
    prior_decision: Optional[str] = None


@dataclass(frozen=True)
class DecisionNotice:
    """Final outcome, sent to the requester."""
    leave: LeaveSnapshot
    status: str
    approver_name: str
    remark: Optional[str] = None


@dataclass(frozen=True)
class OrgWideNotice:
    """Informational mail to everyone else once a request is finally approved."""
    leave: LeaveSnapshot
    approver_name: str
    recipients: Tuple[Person, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class LiveEvent:
    kind: str
    leave: LeaveSnapshot
    user_ids: Tuple[int, ...] = field(default_factory=tuple)
    role: Optional[str] = None
    message: Optional[str] = None

    def payload(self) -> dict:
        return {
            "type": self.kind,
            "message": self.message,
            "leaveId": self.leave.id,
            "leave": self.leave.as_dict(),
        }


# ============================================================================
# DISPATCHER
# ============================================================================

class NotificationDispatcher:
    def __init__(self, email_sender=None, live_channel=None, session_factory=None):
        self.email_sender = email_sender or email_service
        self.live_channel = live_channel or live_event_manager
        self.session_factory = session_factory or SessionLocal

    async def dispatch(self, effects) -> List[DependencyError]:
        """
        Run every effect in order. Returns the failures (already logged) so
        callers and tests can inspect them; never raises.
        """
        handlers = {
            ApprovalRequested: self.notify_approval_requested,
            DecisionNotice: self.notify_decision,
            OrgWideNotice: self.notify_org_wide,
            LiveEvent: self.push_live_event,
        }
        failures = []
        for effect in effects or ():
            handler = handlers.get(type(effect))
            if handler is None:
                logger.warning(f"⚠️  No handler for effect {type(effect).__name__}")
                continue
            try:
                await handler(effect)
            except Exception as e:
                err = e if isinstance(e, DependencyError) else DependencyError(
                    f"{type(effect).__name__} for leave {effect.leave.id} failed: {e}"
                )
                logger.error(f"❌ {err.message}")
                failures.append(err)
        return failures

    def _issue_tokens(self, leave_id: int, email: str, role: str):
        db = self.session_factory()
        try:
            return ApprovalTokenService.issue(db, leave_id, email, role)
        finally:
            db.close()

    async def notify_approval_requested(self, effect: ApprovalRequested):
        approver = effect.approver
        if not approver.email:
            raise DependencyError(f"Approver for leave {effect.leave.id} has no email address")

        approve_link = reject_link = None
        try:
            pair = await run_in_threadpool(
                self._issue_tokens, effect.leave.id, approver.email, effect.approver_role
            )
            approve_link = ApprovalTokenService.approval_link(pair.approve_token, "approve")
            reject_link = ApprovalTokenService.approval_link(pair.reject_token, "reject")
        except SQLAlchemyError as e:
            logger.error(
                f"❌ Could not issue approval tokens for leave {effect.leave.id} -> {approver.email}: {e}. "
                f"Sending email without one-click links"
            )

        sent = await run_in_threadpool(
            self.email_sender.send_leave_application_email,
            approver.email,
            approver.display_name,
            effect.leave.as_dict(),
            approve_link,
            reject_link,
            effect.prior_decision,
        )
        if not sent:
            raise DependencyError(f"Approval request email to {approver.email} for leave {effect.leave.id} not sent")
        logger.info(f"📧 Approval request for leave {effect.leave.id} sent to {effect.approver_role} {approver.email}")

    async def notify_decision(self, effect: DecisionNotice):
        leave = effect.leave
        if not leave.employee_email:
            raise DependencyError(f"Requester of leave {leave.id} has no email address")
        sent = await run_in_threadpool(
            self.email_sender.send_leave_decision_email,
            leave.employee_email,
            leave.employee_name,
            leave.as_dict(),
            effect.status,
            effect.approver_name,
            effect.remark,
        )
        if not sent:
            raise DependencyError(f"Decision email to {leave.employee_email} for leave {leave.id} not sent")
        logger.info(f"📧 Decision ({effect.status}) for leave {leave.id} sent to {leave.employee_email}")

    async def notify_org_wide(self, effect: OrgWideNotice):
        failed = []
        for person in effect.recipients:
            sent = await run_in_threadpool(
                self.email_sender.send_leave_info_email,
                person.email,
                person.display_name,
                effect.leave.as_dict(),
                effect.approver_name,
            )
            if not sent:
                failed.append(person.email)

        logger.info(
            f"📧 Org-wide notice for leave {effect.leave.id}: "
            f"{len(effect.recipients) - len(failed)}/{len(effect.recipients)} sent"
        )
        if failed:
            raise DependencyError(f"Org-wide notice for leave {effect.leave.id} failed for {', '.join(failed)}")

    async def push_live_event(self, effect: LiveEvent):
        payload = effect.payload()
        for user_id in effect.user_ids:
            await self.live_channel.send_to_user(user_id, payload)
        if effect.role:
            await self.live_channel.send_to_role(effect.role, payload)


notification_dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency; overridden in tests."""
    return notification_dispatcher
