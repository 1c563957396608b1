import os
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set in .env file")

IS_SQLITE = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=1800,         # Recycle connections after 30 minutes
    echo=os.getenv("SQL_ECHO", "false").lower() == "true",
    # Sessions are handed to the threadpool (sync routes, background dispatch)
    connect_args={"check_same_thread": False} if IS_SQLITE else {},
)

if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # approval_tokens.leave_id is ON DELETE CASCADE; SQLite ignores it without this
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """
    Request-scoped session for FastAPI Depends().
    Background notification work opens its own session via SessionLocal.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
