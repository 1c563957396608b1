"""
Leave Service - Dual Approval Workflow
======================================
Every leave request passes two independent gates, HOD and Admin.

    status = Rejected  if either gate is Rejected
           = Approved  if both gates are Approved
           = pending   otherwise

The employee's balance is credited once, on the first gate approval. The
credit is guarded by `balance_credited`, flipped by a conditional UPDATE, so
repeated or concurrent approvals never credit twice.

Each operation commits its own state change and returns a LeaveOutcome whose
`effects` (emails, live pushes) are dispatched afterwards by the caller.
"""

from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from exceptions import (
    ConflictError,
    ForbiddenError,
    HodResolutionError,
    IntegrityError,
    LeaveServiceError,
    NotFoundError,
    ValidationError,
)
from models import LeaveRequest, LeaveType
from services import balance_ledger
from services.approval_tokens import ApprovalTokenService
from services.directory import (
    Person,
    active_people_except,
    approver_by_email,
    can_hod_act,
    is_admin,
    is_hod,
    load_snapshot,
    normalize_role,
    person_for_employee,
    resolve_admins,
    resolve_hod_for,
)
from services.notification_service import (
    ApprovalRequested,
    DecisionNotice,
    LiveEvent,
    OrgWideNotice,
    snapshot_leave,
)
from services.overlap import check_overlap, describe_conflict
from utils import as_date, inclusive_day_count, utc_now, working_day_count

logger = logging.getLogger(__name__)

GATE_PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"
STATUS_PENDING = "pending"

GATE_HOD = "hod"
GATE_ADMIN = "admin"
GATES = (GATE_HOD, GATE_ADMIN)

AUTO_REMARK = "Autoapproved"

_DECISIONS = {"approved": APPROVED, "rejected": REJECTED}
_UPDATABLE_FIELDS = ("leave_type", "start_date", "end_date", "number_of_days", "reason")


def derive_status(hod_status: str, admin_status: str) -> str:
    if hod_status == REJECTED or admin_status == REJECTED:
        return REJECTED
    if hod_status == APPROVED and admin_status == APPROVED:
        return APPROVED
    return STATUS_PENDING


@dataclass
class LeaveOutcome:
    leave: Optional[LeaveRequest]
    effects: list = field(default_factory=list)
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkOutcome:
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    effects: list = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)

    @property
    def message(self) -> str:
        return f"Processed {len(self.successful)} of {self.total} leave applications"


# ============================================================================
# HELPERS
# ============================================================================

def _transactional(func):
    """Roll back and raise IntegrityError when the database fails mid-operation."""
    @wraps(func)
    def wrapper(db: Session, *args, **kwargs):
        try:
            return func(db, *args, **kwargs)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception(f"❌ {func.__name__} failed, transaction rolled back")
            raise IntegrityError(f"Could not save the leave application: {e.__class__.__name__}") from e
    return wrapper


def _get_leave(db: Session, leave_id: int) -> LeaveRequest:
    leave = db.query(LeaveRequest).filter(LeaveRequest.id == leave_id).first()
    if not leave:
        raise NotFoundError("Leave application not found")
    return leave


def _employee_of(db: Session, employee_id: int) -> Person:
    employee = person_for_employee(db, employee_id)
    if employee is None:
        raise NotFoundError("Employee not found")
    return employee


def _active_leave_type(db: Session, name: str) -> LeaveType:
    lt = db.query(LeaveType).filter(LeaveType.name == name, LeaveType.is_active == True).first()
    if not lt:
        raise ValidationError(f"Unknown or inactive leave type '{name}'")
    return lt


def _ensure_available(
    db: Session,
    employee_id: int,
    leave_type: str,
    year: int,
    days: int,
    already_counted: int = 0,
) -> None:
    # already_counted: days of this same request the ledger holds for (type, year)
    available = balance_ledger.available_days(db, employee_id, leave_type, year) + already_counted
    if available <= 0 or available < days:
        raise ValidationError(
            f"You have exhausted your available balance for {leave_type}. "
            f"Available: {available} days, Requested: {days} days."
        )


def _parse_decision(status: str) -> str:
    decision = _DECISIONS.get((status or "").strip().lower())
    if decision is None:
        raise ValidationError("Status must be either 'Approved' or 'Rejected'")
    return decision


def _both_pending(leave: LeaveRequest) -> bool:
    return leave.hod_status == GATE_PENDING and leave.admin_status == GATE_PENDING


def _other_gate(gate: str) -> str:
    return GATE_ADMIN if gate == GATE_HOD else GATE_HOD


def _resolve_hod_quietly(db: Session, employee: Person) -> Optional[Person]:
    try:
        hod = resolve_hod_for(db, employee)
    except HodResolutionError as e:
        logger.error(f"❌ HOD resolution failed for employee {employee.employee_id}: {e.message}")
        return None
    if hod is None:
        logger.warning(f"⚠️  No HOD found for employee {employee.employee_id}")
    return hod


def _approval_requests_for_admins(db, snap, requester_email: str, prior_decision: Optional[str] = None) -> list:
    return [
        ApprovalRequested(leave=snap, approver=admin, approver_role=GATE_ADMIN, prior_decision=prior_decision)
        for admin in resolve_admins(db)
        if admin.email and admin.email != requester_email
    ]


# ============================================================================
# READ SIDE
# ============================================================================

def check_leave_overlap(
    db: Session,
    actor: Person,
    start_date,
    end_date,
    exclude_request_id: Optional[int] = None,
) -> Tuple[bool, List[LeaveRequest]]:
    start, end = as_date(start_date), as_date(end_date)
    if start is None or end is None:
        raise ValidationError("start_date and end_date are required")
    if end < start:
        raise ValidationError("End date must be on or after start date")
    if actor.employee_id is None:
        raise NotFoundError("Employee profile not found")
    return check_overlap(db, actor.employee_id, start, end, exclude_request_id)


def count_working_days(start_date, end_date) -> Dict[str, Any]:
    """Calendar and Monday-Friday day counts for a date range, both inclusive."""
    start, end = as_date(start_date), as_date(end_date)
    if start is None or end is None:
        raise ValidationError("start_date and end_date are required")
    if end < start:
        raise ValidationError("End date must be on or after start date")

    working = working_day_count(start, end)
    if working == 0:
        raise ValidationError(
            "No working days found between the selected dates. "
            "Please check if dates include only weekends."
        )
    return {
        "start_date": start,
        "end_date": end,
        "calendar_days": inclusive_day_count(start, end),
        "working_days": working,
    }


def list_my_requests(db: Session, actor: Person) -> List[LeaveRequest]:
    if actor.employee_id is None:
        return []
    return (
        db.query(LeaveRequest)
        .filter(LeaveRequest.employee_id == actor.employee_id)
        .order_by(LeaveRequest.applied_at.desc(), LeaveRequest.id.desc())
        .all()
    )


def _hod_scope(db: Session, actor: Person) -> List[int]:
    return [
        p.employee_id
        for p in load_snapshot(db).people
        if p.employee_id is not None and p.employee_id != actor.employee_id and can_hod_act(actor, p)
    ]


def list_requests_for(db: Session, actor: Person, status: Optional[str] = None) -> List[LeaveRequest]:
    """Admins see everything; HODs see requests of employees they may approve for."""
    query = db.query(LeaveRequest)
    if is_admin(actor.role):
        pass
    elif is_hod(actor.role):
        query = query.filter(LeaveRequest.employee_id.in_(_hod_scope(db, actor)))
    else:
        raise ForbiddenError("Only HODs and admins can view leave applications of other employees")

    if status:
        query = query.filter(LeaveRequest.status == status)
    return query.order_by(LeaveRequest.applied_at.desc(), LeaveRequest.id.desc()).all()


def get_leave_request(db: Session, leave_id: int, actor: Person) -> LeaveRequest:
    leave = _get_leave(db, leave_id)
    if is_admin(actor.role) or leave.employee_id == actor.employee_id:
        return leave
    if is_hod(actor.role) and can_hod_act(actor, _employee_of(db, leave.employee_id)):
        return leave
    raise ForbiddenError("You are not allowed to view this leave application")


# ============================================================================
# CREATE
# ============================================================================

@_transactional
def create_leave_request(
    db: Session,
    applicant: Person,
    leave_type: str,
    start_date,
    end_date,
    reason: Optional[str] = None,
    number_of_days: Optional[int] = None,
    employee_id: Optional[int] = None,
) -> LeaveOutcome:
    """
    Apply for leave.

    Initial gates depend on who applies:
        employee -> both Pending
        hod      -> HOD gate Approved ("Autoapproved"), admin Pending
        admin    -> both Approved, balance credited immediately
    """
    employee_id = employee_id or applicant.employee_id
    if employee_id is None:
        raise NotFoundError("Employee profile not found")
    if employee_id != applicant.employee_id and not is_admin(applicant.role):
        raise ForbiddenError("You can only apply for leave for yourself")

    if not leave_type or not start_date or not end_date:
        raise ValidationError("leave_type, start_date and end_date are required")

    start, end = as_date(start_date), as_date(end_date)
    if start is None or end is None:
        raise ValidationError("Invalid start_date or end_date")
    if end < start:
        raise ValidationError("End date must be on or after start date")

    days = int(number_of_days) if number_of_days is not None else inclusive_day_count(start, end)
    if days <= 0:
        raise ValidationError("Number of days must be greater than zero")

    _active_leave_type(db, leave_type)
    employee = _employee_of(db, employee_id)

    has_overlap, conflicts = check_overlap(db, employee_id, start, end)
    if has_overlap:
        raise ConflictError(describe_conflict(conflicts[0]), details={"conflicts": [c.id for c in conflicts]})

    year = start.year
    _ensure_available(db, employee_id, leave_type, year, days)

    role = normalize_role(applicant.role)
    now = utc_now()
    leave = LeaveRequest(
        employee_id=employee_id,
        leave_type=leave_type,
        start_date=start,
        end_date=end,
        number_of_days=days,
        reason=reason,
        hod_status=GATE_PENDING,
        admin_status=GATE_PENDING,
        applied_at=now,
        updated_at=now,
    )
    if role in (GATE_HOD, GATE_ADMIN):
        leave.hod_status = APPROVED
        leave.hod_remark = AUTO_REMARK
        leave.approved_by_hod = applicant.employee_id
        leave.hod_approved_at = now
    if role == GATE_ADMIN:
        leave.admin_status = APPROVED
        leave.admin_remark = AUTO_REMARK
        leave.approved_by_admin = applicant.employee_id
        leave.admin_approved_at = now
        leave.balance_credited = True
    leave.status = derive_status(leave.hod_status, leave.admin_status)

    db.add(leave)
    db.flush()

    if leave.balance_credited:
        balance_ledger.credit_on_approval(db, employee_id, leave_type, year, days)

    db.commit()
    db.refresh(leave)
    logger.info(
        f"✅ Leave {leave.id} created for employee {employee_id} by {role}: "
        f"{leave_type} {start}..{end} ({days} days), hod={leave.hod_status}, admin={leave.admin_status}"
    )

    snap = snapshot_leave(leave)
    effects = []

    if role == GATE_ADMIN:
        effects.append(OrgWideNotice(
            leave=snap,
            approver_name=applicant.display_name,
            recipients=tuple(active_people_except(db, snap.employee_email)),
        ))
        effects.append(LiveEvent("new_leave", snap, role=GATE_ADMIN, message=f"Leave recorded for {snap.employee_name}"))
        return LeaveOutcome(leave, effects, "Leave application created and auto-approved")

    new_leave_msg = f"New leave application from {snap.employee_name}"
    if leave.hod_status == GATE_PENDING:
        hod = _resolve_hod_quietly(db, employee)
        if hod is not None:
            effects.append(ApprovalRequested(leave=snap, approver=hod, approver_role=GATE_HOD))
            if hod.user_id is not None:
                effects.append(LiveEvent("new_leave", snap, user_ids=(hod.user_id,), message=new_leave_msg))

    prior = f"{AUTO_REMARK} by HOD {applicant.display_name}" if role == GATE_HOD else None
    effects.extend(_approval_requests_for_admins(db, snap, snap.employee_email, prior))
    effects.append(LiveEvent("new_leave", snap, role=GATE_ADMIN, message=new_leave_msg))

    return LeaveOutcome(leave, effects, "Leave application submitted successfully")


# ============================================================================
# APPROVE / REJECT
# ============================================================================

_GATE_COLUMNS = {
    GATE_HOD: ("hod_status", "hod_remark", "approved_by_hod", "hod_approved_at"),
    GATE_ADMIN: ("admin_status", "admin_remark", "approved_by_admin", "admin_approved_at"),
}


def _authorize_gate(gate: str, actor: Person, employee: Person) -> None:
    if is_admin(actor.role):
        return
    if gate == GATE_ADMIN:
        raise ForbiddenError("Only admins can act on the admin approval")
    if not is_hod(actor.role) or not can_hod_act(actor, employee):
        raise ForbiddenError(
            "You are not authorized to approve leaves for this employee. "
            "Only the assigned HOD (by manager, department, or location) can approve."
        )


@_transactional
def decide_leave(
    db: Session,
    leave_id: int,
    gate: str,
    status: str,
    comment: Optional[str],
    actor: Person,
) -> LeaveOutcome:
    """
    Set one gate to Approved/Rejected and recompute the overall status.

    The gate write is conditional on both gate values still being what was
    read, so a concurrent decision on the same request raises ConflictError
    instead of being silently overwritten.
    """
    if gate not in GATES:
        raise ValidationError(f"Unknown approval gate '{gate}'")
    decision = _parse_decision(status)

    leave = _get_leave(db, leave_id)
    employee = _employee_of(db, leave.employee_id)
    _authorize_gate(gate, actor, employee)

    if gate == GATE_ADMIN and leave.hod_status == REJECTED and decision == APPROVED:
        raise ForbiddenError(
            "This leave was rejected by the HOD and cannot be approved. "
            "The employee must submit a new leave application."
        )

    old_hod, old_admin, old_status = leave.hod_status, leave.admin_status, leave.status
    new_hod = decision if gate == GATE_HOD else old_hod
    new_admin = decision if gate == GATE_ADMIN else old_admin
    new_status = derive_status(new_hod, new_admin)

    status_col, remark_col, by_col, at_col = _GATE_COLUMNS[gate]
    now = utc_now()
    updated = db.query(LeaveRequest).filter(
        LeaveRequest.id == leave.id,
        LeaveRequest.hod_status == old_hod,
        LeaveRequest.admin_status == old_admin,
    ).update(
        {
            status_col: decision,
            remark_col: comment,
            by_col: actor.employee_id,
            at_col: now,
            "status": new_status,
            "updated_at": now,
        },
        synchronize_session=False,
    )
    if updated != 1:
        db.rollback()
        raise ConflictError("Leave application was modified by someone else. Please reload and try again.")

    if decision == APPROVED:
        claimed = db.query(LeaveRequest).filter(
            LeaveRequest.id == leave.id,
            LeaveRequest.balance_credited == False,
        ).update({"balance_credited": True}, synchronize_session=False)
        if claimed == 1:
            balance_ledger.credit_on_approval(
                db, leave.employee_id, leave.leave_type, leave.start_date.year, leave.number_of_days
            )

    db.commit()
    db.refresh(leave)
    logger.info(
        f"Leave {leave.id}: {gate} {old_hod if gate == GATE_HOD else old_admin} -> {decision} "
        f"by user {actor.user_id}; status {old_status} -> {new_status}"
    )

    snap = snapshot_leave(leave)
    effects = []

    if new_status != old_status and new_status in (APPROVED, REJECTED):
        effects.append(DecisionNotice(snap, new_status, actor.display_name, comment))
        if new_status == APPROVED:
            effects.append(OrgWideNotice(
                leave=snap,
                approver_name=actor.display_name,
                recipients=tuple(active_people_except(db, snap.employee_email)),
            ))

    if snap.employee_user_id is not None:
        effects.append(LiveEvent(
            "leave_status_update", snap, user_ids=(snap.employee_user_id,),
            message=f"Your leave has been {decision.lower()} by {gate.upper()}",
        ))
    if actor.user_id is not None and actor.user_id != snap.employee_user_id:
        effects.append(LiveEvent(
            "leave_status_update", snap, user_ids=(actor.user_id,),
            message="Leave application status updated",
        ))

    other = _other_gate(gate)
    if leave.gate_status(other) == GATE_PENDING:
        effects.append(LiveEvent(
            "leave_status_update", snap, role=other,
            message="Leave application status updated",
        ))
        prior = f"{decision} by {gate.upper()} {actor.display_name}"
        if other == GATE_ADMIN:
            effects.extend(_approval_requests_for_admins(db, snap, snap.employee_email, prior))
        else:
            hod = _resolve_hod_quietly(db, employee)
            if hod is not None:
                effects.append(ApprovalRequested(snap, hod, GATE_HOD, prior_decision=prior))

    return LeaveOutcome(leave, effects, f"Leave application {decision.lower()} successfully")


def bulk_decide(
    db: Session,
    leave_ids: Iterable[int],
    gate: str,
    status: str,
    comment: Optional[str],
    actor: Person,
) -> BulkOutcome:
    """
    decide_leave for each id in turn. Each item commits on its own; a failure
    is recorded and the batch moves on.
    """
    leave_ids = list(leave_ids or [])
    if not leave_ids:
        raise ValidationError("leave_ids must be a non-empty list")
    _parse_decision(status)

    outcome = BulkOutcome()
    for leave_id in leave_ids:
        try:
            result = decide_leave(db, leave_id, gate, status, comment, actor)
        except LeaveServiceError as e:
            db.rollback()
            outcome.failed.append({"id": leave_id, "success": False, "error": e.message, "status": e.status_code})
            continue
        outcome.successful.append({"id": leave_id, "success": True, "data": result.leave})
        outcome.effects.extend(result.effects)

    logger.info(f"Bulk {gate} {status}: {outcome.message} ({len(outcome.failed)} failed)")
    return outcome


# ============================================================================
# UPDATE / DELETE
# ============================================================================

@_transactional
def update_leave_request(db: Session, leave_id: int, fields: Dict[str, Any], actor: Person) -> LeaveOutcome:
    """
    Partial edit. Admins may edit any request; the owner only while both
    gates are Pending. Overlap is not re-checked here.

    A change of type, dates or length is checked against the balance. If the
    request was already credited, the old days are moved off the ledger and
    the new ones credited in the same transaction.
    """
    changes = {k: v for k, v in (fields or {}).items() if k in _UPDATABLE_FIELDS}
    if not changes:
        raise ValidationError("No fields to update")

    leave = _get_leave(db, leave_id)
    if not is_admin(actor.role):
        if leave.employee_id != actor.employee_id:
            raise ForbiddenError("You can only edit your own leave applications")
        if not _both_pending(leave):
            raise ForbiddenError("Leave application can no longer be edited once an approver has acted on it")

    if "leave_type" in changes:
        if not changes["leave_type"]:
            raise ValidationError("leave_type cannot be empty")
        _active_leave_type(db, changes["leave_type"])

    start = as_date(changes["start_date"]) if "start_date" in changes else leave.start_date
    end = as_date(changes["end_date"]) if "end_date" in changes else leave.end_date
    if start is None or end is None:
        raise ValidationError("Invalid start_date or end_date")
    if end < start:
        raise ValidationError("End date must be on or after start date")

    if changes.get("number_of_days") is not None:
        days = int(changes["number_of_days"])
    elif "start_date" in changes or "end_date" in changes:
        days = inclusive_day_count(start, end)
    else:
        days = leave.number_of_days
    if days <= 0:
        raise ValidationError("Number of days must be greater than zero")

    old_type, old_year, old_days = leave.leave_type, leave.start_date.year, leave.number_of_days
    new_type, new_year = changes.get("leave_type") or old_type, start.year
    ledger_moved = (new_type, new_year, days) != (old_type, old_year, old_days)

    if ledger_moved:
        same_bucket = leave.balance_credited and (new_type, new_year) == (old_type, old_year)
        _ensure_available(
            db, leave.employee_id, new_type, new_year, days,
            already_counted=old_days if same_bucket else 0,
        )

    leave.leave_type = new_type
    leave.start_date = start
    leave.end_date = end
    leave.number_of_days = days
    if "reason" in changes:
        leave.reason = changes["reason"]
    leave.updated_at = utc_now()

    if ledger_moved and leave.balance_credited:
        balance_ledger.debit_on_deletion(db, leave.employee_id, old_type, old_year, old_days)
        balance_ledger.credit_on_approval(db, leave.employee_id, new_type, new_year, days)

    db.commit()
    db.refresh(leave)
    logger.info(f"Leave {leave.id} updated by user {actor.user_id}: {sorted(changes)}")

    snap = snapshot_leave(leave)
    effects = []
    if snap.employee_user_id is not None and snap.employee_user_id != actor.user_id:
        effects.append(LiveEvent(
            "leave_status_update", snap, user_ids=(snap.employee_user_id,),
            message="Your leave application was updated",
        ))
    return LeaveOutcome(leave, effects, "Leave application updated successfully")


@_transactional
def delete_leave_request(db: Session, leave_id: int, actor: Person) -> LeaveOutcome:
    """
    Admins may delete any request and restore credited days; the owner only
    while both gates are Pending.
    """
    leave = _get_leave(db, leave_id)
    if not is_admin(actor.role):
        if leave.employee_id != actor.employee_id:
            raise ForbiddenError("You can only delete your own leave applications")
        if not _both_pending(leave):
            raise ForbiddenError("Leave application can no longer be deleted once an approver has acted on it")

    snap = snapshot_leave(leave)

    if leave.balance_credited:
        balance_ledger.debit_on_deletion(
            db, leave.employee_id, leave.leave_type, leave.start_date.year, leave.number_of_days
        )

    db.delete(leave)
    db.commit()
    logger.info(f"🗑️  Leave {snap.id} ({snap.status}) deleted by user {actor.user_id}")

    effects = []
    if snap.employee_user_id is not None:
        effects.append(LiveEvent(
            "leave_deleted", snap, user_ids=(snap.employee_user_id,),
            message="Your leave application was deleted",
        ))
    return LeaveOutcome(None, effects, "Leave application deleted successfully")


# ============================================================================
# ONE-CLICK EMAIL ACTION
# ============================================================================

def handle_email_action(db: Session, token: str, action: str) -> LeaveOutcome:
    if not token:
        raise ValidationError("Approval token is required")
    action = (action or "").strip().lower()
    if action not in ("approve", "reject"):
        raise ValidationError("Action parameter is required and must be 'approve' or 'reject'")

    record = ApprovalTokenService.verify_and_consume(db, token)
    if record is None:
        raise ValidationError(
            "Invalid, expired, or already used approval token. "
            "This leave request may have already been processed."
        )

    leave = _get_leave(db, record.leave_id)
    gate = GATE_HOD if normalize_role(record.approver_role) == GATE_HOD else GATE_ADMIN
    current = leave.gate_status(gate)
    if current != GATE_PENDING:
        raise ValidationError(f"This leave request has already been {current.lower()}. Status cannot be changed.")

    approver = approver_by_email(db, record.approver_email)
    if approver is None:
        raise NotFoundError("Approver not found")
    if normalize_role(approver.role) != normalize_role(record.approver_role) and not is_admin(approver.role):
        raise ForbiddenError("You are not authorized to approve this leave request")

    decision = APPROVED if action == "approve" else REJECTED
    comment = "Approved via email" if decision == APPROVED else "Rejected via email"
    outcome = decide_leave(db, leave.id, gate, decision, comment, approver)
    outcome.message = f"Leave request has been {decision.lower()} successfully by {approver.display_name}"
    outcome.details = {"approver_name": approver.display_name, "action": decision}
    return outcome
