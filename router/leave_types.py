"""
Leave Types Router - Leave type catalog
=======================================
The catalog leave requests are validated against. `max_days` is the yearly
allowance a balance row starts from.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path
from sqlalchemy.orm import Session
from typing import List

from models import LeaveType
from schemas import LeaveTypeCreate, LeaveTypeUpdate, LeaveTypeOut
from db import get_db
from dependencies import allow_admin, get_current_user

router = APIRouter(prefix="/leave-types", tags=["Leave Types"])


@router.post("", response_model=LeaveTypeOut, status_code=status.HTTP_201_CREATED, dependencies=[Depends(allow_admin)])
def create_leave_type(
    leave_type: LeaveTypeCreate,
    db: Session = Depends(get_db)
):
    existing = db.query(LeaveType).filter(LeaveType.name == leave_type.name).first()
    if existing:
        raise HTTPException(
            status_code=400,
            detail=f"Leave type '{leave_type.name}' already exists"
        )

    db_leave_type = LeaveType(
        name=leave_type.name,
        code=leave_type.code,
        description=leave_type.description,
        max_days=leave_type.max_days,
        is_active=True,
    )
    db.add(db_leave_type)
    db.commit()
    db.refresh(db_leave_type)
    return db_leave_type


@router.get("", response_model=List[LeaveTypeOut], dependencies=[Depends(get_current_user)])
def get_leave_types(
    include_inactive: bool = False,
    db: Session = Depends(get_db)
):
    """Active leave types by default."""
    query = db.query(LeaveType)
    if not include_inactive:
        query = query.filter(LeaveType.is_active == True)
    return query.order_by(LeaveType.name).all()


@router.patch("/{leave_type_id}", response_model=LeaveTypeOut, dependencies=[Depends(allow_admin)])
def update_leave_type(
    leave_type_id: int = Path(...),
    updates: LeaveTypeUpdate = ...,
    db: Session = Depends(get_db)
):
    leave_type = db.query(LeaveType).filter(LeaveType.id == leave_type_id).first()
    if not leave_type:
        raise HTTPException(status_code=404, detail="Leave type not found")

    for field, value in updates.model_dump(exclude_unset=True).items():
        setattr(leave_type, field, value)

    db.commit()
    db.refresh(leave_type)
    return leave_type


@router.delete("/{leave_type_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(allow_admin)])
def deactivate_leave_type(
    leave_type_id: int = Path(...),
    db: Session = Depends(get_db)
):
    """
    Soft delete: existing requests keep referring to the type by name, new
    requests for it are rejected.
    """
    leave_type = db.query(LeaveType).filter(LeaveType.id == leave_type_id).first()
    if not leave_type:
        raise HTTPException(status_code=404, detail="Leave type not found")

    leave_type.is_active = False
    db.commit()
    return None
