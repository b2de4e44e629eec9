from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from app.config import settings
from app.errors import Conflict

def _normalize_url(url: str) -> str:
    # SQLAlchemy 2.0 requires explicit driver specification
    if url.startswith("postgresql://") and "+psycopg2" not in url:
        return url.replace("postgresql://", "postgresql+psycopg2://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url

def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.STORE_TIMEOUT_SECONDS}
    timeout_ms = settings.STORE_TIMEOUT_SECONDS * 1000
    return {
        "connect_timeout": settings.STORE_TIMEOUT_SECONDS,
        "options": f"-c statement_timeout={timeout_ms}",
    }

database_url = _normalize_url(settings.DATABASE_URL)

# Use pool_pre_ping to handle connection issues gracefully
# pool_recycle to prevent stale connections
engine = create_engine(
    database_url,
    echo=False,
    pool_pre_ping=True,  # Verify connections before using them
    pool_recycle=3600,   # Recycle connections after 1 hour
    connect_args=_connect_args(database_url),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_session_factory():
    """Session factory for work that outlives the request (background tasks)."""
    return SessionLocal

def commit_or_conflict(db):
    """Commit, turning lost races and constraint violations into Conflict."""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise Conflict("concurrent_update") from e
    except IntegrityError as e:
        db.rollback()
        raise Conflict("constraint_violation") from e
