"""
Overlap checks for leave date ranges.

A request takes part in overlap detection unless it has been rejected at
both gates. Ranges are inclusive calendar dates.
"""

from datetime import date
from typing import List, Optional, Tuple
import logging

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from models import LeaveRequest

logger = logging.getLogger(__name__)

LIVE_GATE_VALUES = ("Pending", "Approved")


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    return a_start <= b_end and b_start <= a_end


def find_overlapping_requests(
    db: Session,
    employee_id: int,
    start_date: date,
    end_date: date,
    exclude_request_id: Optional[int] = None,
) -> List[LeaveRequest]:
    query = db.query(LeaveRequest).filter(
        LeaveRequest.employee_id == employee_id,
        or_(
            LeaveRequest.hod_status.in_(LIVE_GATE_VALUES),
            LeaveRequest.admin_status.in_(LIVE_GATE_VALUES),
        ),
        or_(
            and_(LeaveRequest.start_date <= start_date, LeaveRequest.end_date >= start_date),
            and_(LeaveRequest.start_date <= end_date, LeaveRequest.end_date >= end_date),
            and_(LeaveRequest.start_date >= start_date, LeaveRequest.end_date <= end_date),
        ),
    )
    if exclude_request_id is not None:
        query = query.filter(LeaveRequest.id != exclude_request_id)
    return query.order_by(LeaveRequest.start_date).all()


def check_overlap(
    db: Session,
    employee_id: int,
    start_date: date,
    end_date: date,
    exclude_request_id: Optional[int] = None,
) -> Tuple[bool, List[LeaveRequest]]:
    conflicts = find_overlapping_requests(db, employee_id, start_date, end_date, exclude_request_id)
    if conflicts:
        logger.info(
            f"Overlap for employee {employee_id} {start_date}..{end_date}: "
            f"{[c.id for c in conflicts]}"
        )
    return bool(conflicts), conflicts


def describe_conflict(leave: LeaveRequest) -> str:
    state = "approved" if leave.status == "Approved" else "pending"
    return (
        f"You already have a {state} {leave.leave_type} request from "
        f"{leave.start_date.isoformat()} to {leave.end_date.isoformat()} that overlaps these dates"
    )
