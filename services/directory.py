"""
Directory lookups
=================
Who is an approver for whom.

HOD resolution is a pure function over a DirectorySnapshot so the
three-tier priority can be tested without a database:

    1. the employee's assigned manager, if that manager is an HOD
    2. an HOD in the same department (only when no manager is assigned)
    3. an HOD at the same location (only when no manager is assigned)

An assigned manager that is not an HOD is an error, not a reason to fall
back to department/location.
"""

from dataclasses import dataclass, field
from typing import Optional, List
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from exceptions import HodResolutionError
from models import User, Employee

logger = logging.getLogger(__name__)

ROLE_EMPLOYEE = "employee"
ROLE_HOD = "hod"
ROLE_ADMIN = "admin"
ADMIN_ROLES = {"admin", "super_admin"}


def normalize_role(role: Optional[str]) -> str:
    value = (role or ROLE_EMPLOYEE).strip().lower()
    return ROLE_ADMIN if value in ADMIN_ROLES else value


def is_admin(role: Optional[str]) -> bool:
    return normalize_role(role) == ROLE_ADMIN


def is_hod(role: Optional[str]) -> bool:
    return normalize_role(role) == ROLE_HOD


@dataclass(frozen=True)
class Person:
    user_id: Optional[int]
    employee_id: Optional[int]
    email: str
    display_name: str
    role: str = ROLE_EMPLOYEE
    department: Optional[str] = None
    location: Optional[str] = None
    manager_id: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class DirectorySnapshot:
    people: tuple = field(default_factory=tuple)

    def by_employee_id(self, employee_id: Optional[int]) -> Optional[Person]:
        if employee_id is None:
            return None
        for p in self.people:
            if p.employee_id == employee_id:
                return p
        return None

    def with_role(self, role: str) -> List[Person]:
        role = normalize_role(role)
        return sorted(
            (p for p in self.people if normalize_role(p.role) == role and p.is_active),
            key=lambda p: (p.employee_id is None, p.employee_id or 0, p.user_id or 0),
        )


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


def resolve_hod(employee: Person, snapshot: DirectorySnapshot) -> Optional[Person]:
    """
    Resolve the HOD who approves for `employee`.

    Returns None when no manager is assigned and nobody matches by department
    or location. Raises HodResolutionError when a manager is assigned but is
    not an HOD.
    """
    if employee.manager_id is not None:
        manager = snapshot.by_employee_id(employee.manager_id)
        if manager is not None and is_hod(manager.role) and manager.is_active:
            return manager
        raise HodResolutionError(
            f"Employee {employee.email} has manager_id {employee.manager_id} but that manager is not an active HOD"
        )

    hods = [h for h in snapshot.with_role(ROLE_HOD) if h.employee_id != employee.employee_id]

    for hod in hods:
        if _same(hod.department, employee.department):
            return hod

    for hod in hods:
        if _same(hod.location, employee.location):
            return hod

    return None


def can_hod_act(approver: Person, employee: Person) -> bool:
    """Assigned manager, or an HOD sharing the employee's department or location. Never oneself."""
    if approver.employee_id is not None and approver.employee_id == employee.employee_id:
        return False
    if employee.manager_id is not None and approver.employee_id is not None \
            and employee.manager_id == approver.employee_id:
        return True
    if not is_hod(approver.role):
        return False
    if _same(approver.department, employee.department):
        return True
    if _same(approver.location, employee.location):
        return True
    return False


# ============================================================================
# DB-BACKED LOOKUPS
# ============================================================================

def _to_person(user: User, emp: Optional[Employee]) -> Person:
    return Person(
        user_id=user.id,
        employee_id=emp.id if emp else None,
        email=(user.email or "").strip().lower(),
        display_name=user.full_name,
        role=normalize_role(user.role),
        department=emp.department if emp else None,
        location=emp.location if emp else None,
        manager_id=emp.manager_id if emp else None,
        is_active=(user.status or "Active").lower() == "active",
    )


def _people_query(db: Session):
    return db.query(User, Employee).outerjoin(Employee, Employee.user_id == User.id)


def person_for_user(db: Session, user_id: int) -> Optional[Person]:
    row = _people_query(db).filter(User.id == user_id).first()
    return _to_person(*row) if row else None


def person_for_employee(db: Session, employee_id: int) -> Optional[Person]:
    row = _people_query(db).filter(Employee.id == employee_id).first()
    return _to_person(*row) if row else None


def approver_by_email(db: Session, email: str) -> Optional[Person]:
    row = _people_query(db).filter(func.lower(User.email) == (email or "").strip().lower()).first()
    return _to_person(*row) if row else None


def load_snapshot(db: Session) -> DirectorySnapshot:
    rows = _people_query(db).all()
    return DirectorySnapshot(people=tuple(_to_person(u, e) for u, e in rows))


def resolve_admins(db: Session) -> List[Person]:
    return load_snapshot(db).with_role(ROLE_ADMIN)


def resolve_hod_for(db: Session, employee: Person) -> Optional[Person]:
    """Load the directory and run resolve_hod. HodResolutionError propagates."""
    return resolve_hod(employee, load_snapshot(db))


def active_people_except(db: Session, email: str) -> List[Person]:
    """Everyone with an email who is active, minus `email`. Used for org-wide notices."""
    skip = (email or "").strip().lower()
    return [
        p for p in load_snapshot(db).people
        if p.is_active and p.email and p.email != skip
    ]
