from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import LeaveBalance, LeaveType
from utils import utc_now

logger = logging.getLogger(__name__)


def _default_allowance(db: Session, leave_type: str) -> int:
    lt = db.query(LeaveType).filter(LeaveType.name == leave_type).first()
    return int(lt.max_days or 0) if lt else 0


def _row_filter(db: Session, employee_id: int, leave_type: str, year: int):
    return db.query(LeaveBalance).filter(
        LeaveBalance.employee_id == employee_id,
        LeaveBalance.leave_type == leave_type,
        LeaveBalance.year == year,
    )


def _increment_used(db: Session, employee_id: int, leave_type: str, year: int, days: int) -> int:
    return _row_filter(db, employee_id, leave_type, year).update(
        {
            LeaveBalance.used_balance: LeaveBalance.used_balance + days,
            LeaveBalance.updated_at: utc_now(),
        },
        synchronize_session=False,
    )


def _credit(db: Session, employee_id: int, leave_type: str, year: int, days: int) -> None:
    if _row_filter(db, employee_id, leave_type, year).first() is None:
        try:
            with db.begin_nested():
                db.add(LeaveBalance(
                    employee_id=employee_id,
                    leave_type=leave_type,
                    year=year,
                    total_balance=_default_allowance(db, leave_type),
                    used_balance=days,
                    updated_at=utc_now(),
                ))
                db.flush()
            return
        except IntegrityError:
            # Another writer created the row first; fall through to the increment
            logger.info(f"Balance row for emp={employee_id} {leave_type}/{year} created concurrently")

    _increment_used(db, employee_id, leave_type, year, days)


def credit_on_approval(db: Session, employee_id: int, leave_type: str, year: int, days: int) -> bool:
    """
    Add `days` to used_balance for (employee, type, year), creating the row on
    first use. The caller decides whether crediting is due; this function
    does not check for double credit.

    Runs in a SAVEPOINT. Returns False (and logs) on failure without
    aborting the caller's transaction.
    """
    try:
        with db.begin_nested():
            _credit(db, employee_id, leave_type, year, days)
        logger.info(f"💰 Credited {days} day(s) of {leave_type} to employee {employee_id} for {year}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Balance credit failed for employee {employee_id} ({leave_type}/{year}): {e}")
        return False


def debit_on_deletion(db: Session, employee_id: int, leave_type: str, year: int, days: int) -> bool:
    """Subtract `days` from used_balance, floored at zero."""
    try:
        with db.begin_nested():
            updated = _row_filter(db, employee_id, leave_type, year).update(
                {
                    LeaveBalance.used_balance: case(
                        (LeaveBalance.used_balance > days, LeaveBalance.used_balance - days),
                        else_=0,
                    ),
                    LeaveBalance.updated_at: utc_now(),
                },
                synchronize_session=False,
            )
        if not updated:
            logger.warning(f"No balance row to restore for employee {employee_id} ({leave_type}/{year})")
            return False
        logger.info(f"↩️  Restored {days} day(s) of {leave_type} to employee {employee_id} for {year}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Balance restore failed for employee {employee_id} ({leave_type}/{year}): {e}")
        return False


def get_balance_row(db: Session, employee_id: int, leave_type: str, year: int) -> Optional[LeaveBalance]:
    return _row_filter(db, employee_id, leave_type, year).first()


def available_days(db: Session, employee_id: int, leave_type: str, year: int) -> int:
    """Remaining days for the type/year; the type's yearly allowance if no row exists yet."""
    row = get_balance_row(db, employee_id, leave_type, year)
    if row is not None:
        return row.remaining_balance
    return _default_allowance(db, leave_type)


def get_balances(db: Session, employee_id: int, year: Optional[int] = None) -> list[dict]:
    """One entry per active leave type, merged with any ledger rows for the year."""
    year = year or datetime.now().year
    rows = {
        r.leave_type: r
        for r in db.query(LeaveBalance).filter(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.year == year,
        ).all()
    }
    types = db.query(LeaveType).filter(LeaveType.is_active == True).order_by(LeaveType.name).all()

    result = []
    for lt in types:
        row = rows.pop(lt.name, None)
        total = row.total_balance if row else int(lt.max_days or 0)
        used = row.used_balance if row else 0
        result.append({
            "leave_type": lt.name,
            "year": year,
            "total_balance": total,
            "used_balance": used,
            "remaining_balance": max(0, total - used),
        })
    # Rows for types that were retired from the catalog
    for name, row in sorted(rows.items()):
        result.append({
            "leave_type": name,
            "year": year,
            "total_balance": row.total_balance,
            "used_balance": row.used_balance,
            "remaining_balance": row.remaining_balance,
        })
    return result
