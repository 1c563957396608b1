from fastapi import APIRouter, FastAPI, Depends, HTTPException
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from contextlib import asynccontextmanager
from datetime import timedelta
from dotenv import load_dotenv
from pytz import timezone as pytz_timezone
import os
import logging

from db import get_db, engine, SessionLocal
from models import Base, User
from schemas import Token
from auth import verify_password, create_access_token, ACCESS_TOKEN_EXPIRE_MINUTES
from dependencies import router as dependencies_router
from router import leave, leave_types, live
from services.approval_tokens import ApprovalTokenService

load_dotenv()

SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "Asia/Kolkata")
tz = pytz_timezone(SCHEDULER_TIMEZONE)

scheduler = BackgroundScheduler(timezone=tz)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("scheduler")


def purge_expired_approval_tokens():
    db = SessionLocal()
    try:
        deleted = ApprovalTokenService.purge_expired(db)
        logger.info(f"✅ Approval token cleanup done. deleted={deleted}")
    except Exception as e:
        db.rollback()
        logger.exception("Approval token cleanup failed: %s", e)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler.add_job(
        purge_expired_approval_tokens,
        CronTrigger(hour=2, minute=30, timezone=tz),
        id='purge_approval_tokens',
        name='Delete expired one-click approval tokens',
        replace_existing=True
    )
    scheduler.start()
    try:
        yield
    finally:
        scheduler.shutdown()


app = FastAPI(
    title="Leave Workflow API",
    version="1.0.0",
    lifespan=lifespan
)

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter()


@router.post("/token", response_model=Token)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    user = db.query(User).filter(User.username == form_data.username).first()
    if not user:
        raise HTTPException(status_code=400, detail="User is not registered")
    if not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Incorrect username or password")
    if (user.status or "Active").lower() != "active":
        raise HTTPException(status_code=403, detail="User account is inactive")
    access_token = create_access_token(
        data={"sub": user.username, "role": user.role_name},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return {"access_token": access_token, "token_type": "bearer"}


app.include_router(router)
app.include_router(dependencies_router)
app.include_router(leave.router)
app.include_router(leave_types.router)
app.include_router(live.router)

# No migration tool; missing tables are created at import
Base.metadata.create_all(bind=engine)
