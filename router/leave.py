"""
Leave Router - Dual Approval Workflow
=====================================
Thin HTTP layer over services.leave_service. Each mutating route commits
through the service, then hands the returned effects to the notification
dispatcher as a background task so SMTP never delays the response.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from db import get_db
from dependencies import get_current_person, allow_admin, allow_hod_or_admin
from exceptions import LeaveServiceError
from schemas import (
    LeaveRequestCreate,
    LeaveRequestUpdate,
    LeaveRequestOut,
    LeaveDecisionRequest,
    BulkDecisionRequest,
    BulkDecisionOut,
    OverlapCheckRequest,
    OverlapCheckOut,
    WorkingDaysRequest,
    WorkingDaysOut,
    LeaveActionOut,
    EmailActionOut,
    LeaveBalanceOut,
)
from services import balance_ledger
from services.directory import Person, is_admin
from services.notification_service import NotificationDispatcher, get_dispatcher
from services.leave_service import (
    GATE_HOD,
    GATE_ADMIN,
    create_leave_request,
    check_leave_overlap,
    count_working_days,
    list_my_requests,
    list_requests_for,
    get_leave_request,
    decide_leave,
    bulk_decide,
    update_leave_request,
    delete_leave_request,
    handle_email_action,
)
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leave", tags=["Leave"])


def _http_error(e: LeaveServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


# ============================================================================
# APPLY / CHECK
# ============================================================================

@router.post("", response_model=LeaveActionOut, status_code=status.HTTP_201_CREATED)
def apply_leave(
    payload: LeaveRequestCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        outcome = create_leave_request(
            db,
            applicant=me,
            leave_type=payload.leave_type,
            start_date=payload.start_date,
            end_date=payload.end_date,
            reason=payload.reason,
            number_of_days=payload.number_of_days,
            employee_id=payload.employee_id,
        )
    except LeaveServiceError as e:
        raise _http_error(e)

    background_tasks.add_task(dispatcher.dispatch, outcome.effects)
    return {"message": outcome.message, "leave": outcome.leave}


@router.post("/check-overlap", response_model=OverlapCheckOut)
def check_overlap(
    payload: OverlapCheckRequest,
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
):
    """Pre-submission check; never rejects, just reports conflicts."""
    try:
        has_overlap, conflicts = check_leave_overlap(
            db, me, payload.start_date, payload.end_date, payload.exclude_request_id
        )
    except LeaveServiceError as e:
        raise _http_error(e)
    return {"has_overlap": has_overlap, "conflicts": conflicts}


@router.post("/working-days", response_model=WorkingDaysOut)
def working_days(payload: WorkingDaysRequest, me: Person = Depends(get_current_person)):
    """Weekdays in the range, for the apply form's day count. Weekends only, no holiday calendar."""
    try:
        return count_working_days(payload.start_date, payload.end_date)
    except LeaveServiceError as e:
        raise _http_error(e)


# ============================================================================
# READ
# ============================================================================

@router.get("/mine", response_model=List[LeaveRequestOut])
def my_leaves(db: Session = Depends(get_db), me: Person = Depends(get_current_person)):
    return list_my_requests(db, me)


@router.get("/all", response_model=List[LeaveRequestOut], dependencies=[Depends(allow_hod_or_admin)])
def all_leaves(
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
):
    """Admins: every request. HODs: requests of employees they approve for."""
    try:
        return list_requests_for(db, me, status_filter)
    except LeaveServiceError as e:
        raise _http_error(e)


@router.get("/balance", response_model=List[LeaveBalanceOut])
def leave_balance(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    employee_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
):
    target = employee_id or me.employee_id
    if target is None:
        raise HTTPException(status_code=404, detail="Employee profile not found")
    if target != me.employee_id and not is_admin(me.role):
        raise HTTPException(status_code=403, detail="Operation not permitted")
    return balance_ledger.get_balances(db, target, year)


@router.get("/email-action", response_model=EmailActionOut)
def email_action(
    background_tasks: BackgroundTasks,
    token: str = Query(...),
    action: str = Query(...),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """One-click approve/reject from an approval email. The token is the credential."""
    try:
        outcome = handle_email_action(db, token, action)
    except LeaveServiceError as e:
        logger.warning(f"⚠️  Email action '{action}' refused: {e.message}")
        raise _http_error(e)

    background_tasks.add_task(dispatcher.dispatch, outcome.effects)
    return {
        "message": outcome.message,
        "leave": outcome.leave,
        "approver_name": outcome.details["approver_name"],
        "action": outcome.details["action"],
        "token_used": True,
    }


# ============================================================================
# BULK
# ============================================================================

def _bulk(db, payload: BulkDecisionRequest, gate: str, me: Person, background_tasks, dispatcher):
    try:
        outcome = bulk_decide(db, payload.leave_ids, gate, payload.status, payload.comment, me)
    except LeaveServiceError as e:
        raise _http_error(e)

    background_tasks.add_task(dispatcher.dispatch, outcome.effects)
    return {
        "message": outcome.message,
        "successful": [
            {"id": item["id"], "success": True, "data": LeaveRequestOut.model_validate(item["data"])}
            for item in outcome.successful
        ],
        "failed": outcome.failed,
        "total": outcome.total,
        "succeeded": len(outcome.successful),
        "failed_count": len(outcome.failed),
    }


@router.post("/bulk-approve-hod", response_model=BulkDecisionOut, dependencies=[Depends(allow_hod_or_admin)])
def bulk_approve_hod(
    payload: BulkDecisionRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return _bulk(db, payload, GATE_HOD, me, background_tasks, dispatcher)


@router.post("/bulk-approve-admin", response_model=BulkDecisionOut, dependencies=[Depends(allow_admin)])
def bulk_approve_admin(
    payload: BulkDecisionRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return _bulk(db, payload, GATE_ADMIN, me, background_tasks, dispatcher)


# ============================================================================
# SINGLE REQUEST
# ============================================================================

@router.get("/{leave_id}", response_model=LeaveRequestOut)
def get_leave(
    leave_id: int = Path(...),
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
):
    try:
        return get_leave_request(db, leave_id, me)
    except LeaveServiceError as e:
        raise _http_error(e)


def _decide(db, leave_id: int, gate: str, payload: LeaveDecisionRequest, me: Person, background_tasks, dispatcher):
    try:
        outcome = decide_leave(db, leave_id, gate, payload.status, payload.comment, me)
    except LeaveServiceError as e:
        raise _http_error(e)

    background_tasks.add_task(dispatcher.dispatch, outcome.effects)
    return {"message": outcome.message, "leave": outcome.leave}


@router.patch("/{leave_id}/approve-hod", response_model=LeaveActionOut, dependencies=[Depends(allow_hod_or_admin)])
def approve_hod(
    payload: LeaveDecisionRequest,
    background_tasks: BackgroundTasks,
    leave_id: int = Path(...),
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return _decide(db, leave_id, GATE_HOD, payload, me, background_tasks, dispatcher)


@router.patch("/{leave_id}/approve-admin", response_model=LeaveActionOut, dependencies=[Depends(allow_admin)])
def approve_admin(
    payload: LeaveDecisionRequest,
    background_tasks: BackgroundTasks,
    leave_id: int = Path(...),
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return _decide(db, leave_id, GATE_ADMIN, payload, me, background_tasks, dispatcher)


@router.patch("/{leave_id}", response_model=LeaveActionOut)
def edit_leave(
    payload: LeaveRequestUpdate,
    background_tasks: BackgroundTasks,
    leave_id: int = Path(...),
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        outcome = update_leave_request(db, leave_id, payload.model_dump(exclude_unset=True), me)
    except LeaveServiceError as e:
        raise _http_error(e)

    background_tasks.add_task(dispatcher.dispatch, outcome.effects)
    return {"message": outcome.message, "leave": outcome.leave}


@router.delete("/{leave_id}", response_model=LeaveActionOut)
def remove_leave(
    background_tasks: BackgroundTasks,
    leave_id: int = Path(...),
    db: Session = Depends(get_db),
    me: Person = Depends(get_current_person),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        outcome = delete_leave_request(db, leave_id, me)
    except LeaveServiceError as e:
        raise _http_error(e)

    background_tasks.add_task(dispatcher.dispatch, outcome.effects)
    return {"message": outcome.message, "leave": None}
