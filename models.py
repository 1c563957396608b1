from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.orm import relationship, DeclarativeBase
from datetime import datetime, timezone

# STORAGE NOTES:
# =================================
# - Leave start/end are calendar dates (no time component)
# - ALL DateTime fields store UTC time as naive datetime
# - Gate statuses use "Pending" / "Approved" / "Rejected"; the aggregate
#   status uses lowercase "pending" while undecided (see services.leave_service)


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntId = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


# ============================================================================
# USER / EMPLOYEE DIRECTORY
# ============================================================================

class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    hashed_password = Column(String, nullable=True)

    role = Column(String(20), nullable=False, default="employee")  # employee | hod | admin
    status = Column(String(20), nullable=False, default="Active")
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    employee = relationship("Employee", back_populates="user", uselist=False)

    @property
    def role_name(self) -> str:
        return (self.role or "employee").strip().lower()

    @property
    def full_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p).strip()
        return name or self.email

    def __repr__(self):
        return f"<User {self.username} ({self.role_name})>"


class Employee(Base):
    __tablename__ = 'employees'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False)
    emp_code = Column(String(50), nullable=True)
    department = Column(String(100), nullable=True, index=True)
    location = Column(String(100), nullable=True, index=True)

    # Assigned HOD; authoritative over department/location lookup when set
    manager_id = Column(Integer, ForeignKey("employees.id"), nullable=True)

    user = relationship("User", back_populates="employee")
    manager = relationship("Employee", remote_side=[id], backref="direct_reports", foreign_keys=[manager_id])
    leave_requests = relationship("LeaveRequest", back_populates="employee", foreign_keys="LeaveRequest.employee_id")

    __table_args__ = (UniqueConstraint('user_id', name='_employee_user_id_uc'),)

    def __repr__(self):
        return f"<Employee {self.id} (user_id={self.user_id}, emp_code={self.emp_code})>"


# ============================================================================
# LEAVE TYPE CATALOG
# ============================================================================

class LeaveType(Base):
    __tablename__ = "leave_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    code = Column(String(50), unique=True, nullable=True)
    description = Column(String(500), nullable=True)

    # Default yearly allowance, used when a balance row is first created
    max_days = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=_utcnow)

    def __repr__(self):
        return f"<LeaveType {self.name} (max_days={self.max_days})>"


# ============================================================================
# LEAVE REQUEST (dual approval gate)
# ============================================================================

class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id = Column(BigIntId, primary_key=True, index=True, autoincrement=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)

    leave_type = Column(String(100), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    number_of_days = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)

    # Aggregate status, recomputed after every gate transition
    status = Column(String(20), nullable=False, default="pending")

    # HOD gate
    hod_status = Column(String(20), nullable=False, default="Pending")
    hod_remark = Column(Text, nullable=True)
    approved_by_hod = Column(Integer, ForeignKey("employees.id"), nullable=True)
    hod_approved_at = Column(DateTime, nullable=True)

    # Admin gate
    admin_status = Column(String(20), nullable=False, default="Pending")
    admin_remark = Column(Text, nullable=True)
    approved_by_admin = Column(Integer, ForeignKey("employees.id"), nullable=True)
    admin_approved_at = Column(DateTime, nullable=True)

    # Flipped once, by a conditional UPDATE, when the balance is credited
    balance_credited = Column(Boolean, nullable=False, default=False)

    applied_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)

    employee = relationship("Employee", foreign_keys=[employee_id], back_populates="leave_requests")
    approval_tokens = relationship("ApprovalToken", back_populates="leave_request", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("number_of_days > 0", name="CHK_leave_days_positive"),
        CheckConstraint("end_date >= start_date", name="CHK_leave_date_order"),
        Index("idx_leave_requests_employee_dates", "employee_id", "start_date", "end_date"),
    )

    def gate_status(self, gate: str) -> str:
        return self.hod_status if gate == "hod" else self.admin_status

    def __repr__(self):
        return (
            f"<LeaveRequest(id={self.id}, emp_id={self.employee_id}, days={self.number_of_days}, "
            f"hod={self.hod_status}, admin={self.admin_status}, status={self.status})>"
        )


# ============================================================================
# LEAVE BALANCE LEDGER
# ============================================================================

class LeaveBalance(Base):
    __tablename__ = "leave_balance"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    leave_type = Column(String(100), nullable=False)
    year = Column(Integer, nullable=False)

    total_balance = Column(Integer, nullable=False, default=0)
    used_balance = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("employee_id", "leave_type", "year", name="uq_leave_balance_emp_type_year"),
    )

    @property
    def remaining_balance(self) -> int:
        return max(0, (self.total_balance or 0) - (self.used_balance or 0))

    def __repr__(self):
        return f"<LeaveBalance emp={self.employee_id} {self.leave_type}/{self.year} used={self.used_balance}/{self.total_balance}>"


# ============================================================================
# ONE-TIME EMAIL APPROVAL TOKENS
# ============================================================================

class ApprovalToken(Base):
    __tablename__ = "approval_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(128), unique=True, nullable=False, index=True)
    leave_id = Column(BigIntId, ForeignKey("leave_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    approver_email = Column(String(255), nullable=False)
    approver_role = Column(String(20), nullable=False)   # hod | admin
    action = Column(String(20), nullable=False)          # approve | reject

    used = Column(Boolean, nullable=False, default=False, index=True)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)

    leave_request = relationship("LeaveRequest", back_populates="approval_tokens")

    def __repr__(self):
        return f"<ApprovalToken leave_id={self.leave_id} role={self.approver_role} action={self.action} used={self.used}>"
