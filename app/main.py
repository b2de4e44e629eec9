from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from apscheduler.schedulers.background import BackgroundScheduler
from app.database import engine, Base, SessionLocal
from app.errors import register_exception_handlers
from app.routers import auth, leads, registrations, applications, loans, documents
from app.services.notifier import NotificationDispatcher
from app.config import settings
import logging

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Delivers queued student notifications in the background
scheduler = BackgroundScheduler()
dispatcher = NotificationDispatcher(SessionLocal)

def drain_notifications():
    try:
        sent = dispatcher.drain()
        if sent:
            logger.info(f"[SCHEDULER] Delivered {sent} notification(s)")
    except Exception as e:
        logger.error(f"[SCHEDULER] Notification drain error: {e}", exc_info=True)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Create database tables
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")

    scheduler.add_job(
        drain_notifications, 'interval',
        seconds=settings.NOTIFICATION_DRAIN_SECONDS,
        id='notification_drain_job',
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"[STARTUP] Notification scheduler started (every {settings.NOTIFICATION_DRAIN_SECONDS}s)")
    yield
    if scheduler.running:
        scheduler.shutdown()
    logger.info("[SHUTDOWN] Notification scheduler stopped")

app = FastAPI(
    title="JV Overseas CRM",
    description="Lead, registration, admission and loan lifecycle for an education consultancy",
    version="1.0.0",
    lifespan=lifespan
)

register_exception_handlers(app)

# CORS middleware
allowed_origins = [origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",") if origin.strip()]
logger.info(f"CORS allowed origins: {allowed_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins if allowed_origins else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(leads.router, prefix="/api/leads", tags=["leads"])
app.include_router(registrations.router, prefix="/api/registrations", tags=["registrations"])
app.include_router(applications.router, prefix="/api/applications", tags=["applications"])
app.include_router(loans.router, prefix="/api/loans", tags=["loans"])
app.include_router(documents.router, prefix="/api/documents", tags=["documents"])

@app.get("/")
async def root():
    return {"message": "JV Overseas CRM API", "status": "running"}

@app.get("/health")
async def health():
    return {"status": "healthy"}
