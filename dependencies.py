from fastapi.security import OAuth2PasswordBearer
from fastapi import Depends, HTTPException, status, APIRouter
from sqlalchemy.orm import Session
from db import get_db
from models import User
from auth import decode_access_token
from schemas import UserOut
from services.directory import Person, person_for_user, normalize_role
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def user_from_token(token: str, db: Session) -> User:
    """
    Resolve a bearer token to its active user. Raises 401 on any mismatch.

    Shared by the HTTP dependency and the live-events WebSocket, which
    receives its token as a query parameter.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_access_token(token)
    username: str = payload.get("sub")
    role: str = payload.get("role")
    if username is None or role is None:
        logger.warning("Invalid token payload: missing sub or role")
        raise credentials_exception

    user = db.query(User).filter(User.username == username).first()
    if user is None:
        logger.warning(f"User not found: {username}")
        raise credentials_exception

    # Role changes invalidate outstanding tokens
    if normalize_role(user.role) != normalize_role(role):
        logger.warning(f"Role mismatch for user {username}: token={role}, db={user.role_name}")
        raise credentials_exception

    if (user.status or "Active").lower() != "active":
        logger.warning(f"Inactive user {username} attempted access")
        raise credentials_exception

    return user


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    user = user_from_token(token, db)
    logger.debug(f"✅ Authentication successful: {user.username} ({user.role_name})")
    return user


def get_current_person(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Person:
    """The current user as a directory Person (role, employee id, department, location)."""
    person = person_for_user(db, current_user.id)
    if person is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
    return person


class RoleChecker:
    def __init__(self, allowed_roles):
        self.allowed_roles = set(allowed_roles)

    def __call__(self, user: User = Depends(get_current_user)):
        if user.role_name not in self.allowed_roles:
            logger.warning(f"Unauthorized access attempt: {user.username} tried to access role={self.allowed_roles}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted",
            )
        return True


allow_admin = RoleChecker(["admin", "super_admin"])
allow_hod_or_admin = RoleChecker(["hod", "admin", "super_admin"])

router = APIRouter()


@router.get("/users/me", response_model=UserOut)
def read_users_me(current_user: User = Depends(get_current_user)):
    """Get current user's profile"""
    return current_user


@router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
