from pydantic import BaseModel, Field, EmailStr, field_serializer, field_validator
from typing import Optional, List
from datetime import datetime, date
from utils import to_ist


# User schemas
class UserOut(BaseModel):
    id: int
    username: str
    email: EmailStr
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str


# ============================================================================
# LEAVE REQUESTS
# ============================================================================

class LeaveRequestCreate(BaseModel):
    """
    Apply for leave. number_of_days defaults to the inclusive day count.
    employee_id is only honoured for admins applying on someone's behalf.
    """
    leave_type: str = Field(..., min_length=1, description="Leave type name (Annual Leave, Sick Leave, ...)")
    start_date: date
    end_date: date
    number_of_days: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=1000)
    employee_id: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "leave_type": "Annual Leave",
                "start_date": "2024-06-10",
                "end_date": "2024-06-12",
                "reason": "Family trip",
            }
        }


class LeaveRequestUpdate(BaseModel):
    leave_type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    number_of_days: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=1000)


class LeaveRequestOut(BaseModel):
    id: int
    employee_id: int
    leave_type: str
    start_date: date
    end_date: date
    number_of_days: int
    reason: Optional[str] = None

    status: str

    hod_status: str
    hod_remark: Optional[str] = None
    approved_by_hod: Optional[int] = None
    hod_approved_at: Optional[datetime] = None

    admin_status: str
    admin_remark: Optional[str] = None
    approved_by_admin: Optional[int] = None
    admin_approved_at: Optional[datetime] = None

    applied_at: datetime
    updated_at: datetime

    @field_serializer("hod_approved_at", "admin_approved_at", "applied_at", "updated_at")
    def serialize_dates(self, value):
        return to_ist(value) if value else None

    class Config:
        from_attributes = True


class LeaveDecisionRequest(BaseModel):
    status: str = Field(..., description="Approved or Rejected")
    comment: Optional[str] = Field(None, max_length=1000)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v.strip().lower() not in ("approved", "rejected"):
            raise ValueError("status must be 'Approved' or 'Rejected'")
        return v.strip().capitalize()


class BulkDecisionRequest(LeaveDecisionRequest):
    leave_ids: List[int]


class OverlapCheckRequest(BaseModel):
    start_date: date
    end_date: date
    exclude_request_id: Optional[int] = None


class WorkingDaysRequest(BaseModel):
    start_date: date
    end_date: date


class WorkingDaysOut(BaseModel):
    start_date: date
    end_date: date
    calendar_days: int
    working_days: int


class OverlapCheckOut(BaseModel):
    has_overlap: bool
    conflicts: List[LeaveRequestOut]


class LeaveActionOut(BaseModel):
    message: str
    leave: Optional[LeaveRequestOut] = None


class BulkSuccessItem(BaseModel):
    id: int
    success: bool = True
    data: LeaveRequestOut


class BulkFailureItem(BaseModel):
    id: int
    success: bool = False
    error: str
    status: int


class BulkDecisionOut(BaseModel):
    message: str
    successful: List[BulkSuccessItem]
    failed: List[BulkFailureItem]
    total: int
    succeeded: int
    failed_count: int


class EmailActionOut(BaseModel):
    message: str
    leave: LeaveRequestOut
    approver_name: str
    action: str
    token_used: bool = True


# ============================================================================
# BALANCES
# ============================================================================

class LeaveBalanceOut(BaseModel):
    leave_type: str
    year: int
    total_balance: int
    used_balance: int
    remaining_balance: int


# ============================================================================
# LEAVE TYPES
# ============================================================================

class LeaveTypeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    code: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    max_days: int = Field(0, ge=0)


class LeaveTypeUpdate(BaseModel):
    code: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    max_days: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class LeaveTypeOut(BaseModel):
    id: int
    name: str
    code: Optional[str] = None
    description: Optional[str] = None
    max_days: int
    is_active: bool

    class Config:
        from_attributes = True
