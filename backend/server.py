from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import auth, admin, companies, projects, master_status, customers, associate_users, realtime
from services.connection_registry import ConnectionRegistry
from services.notification_service import NotificationService
from utils.errors import CRMError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# In-memory job store: the only job is an idempotent purge re-registered on every start
scheduler = AsyncIOScheduler()

LINK_CLEANUP_INTERVAL_MINUTES = int(os.environ.get("LINK_CLEANUP_INTERVAL_MINUTES", "60"))

from job_runner import run_expired_link_cleanup

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Channel Partner CRM API")
    await database.connect()

    registry = ConnectionRegistry()
    await registry.start()
    app.state.notifier = NotificationService(registry)

    run_scheduler = not os.environ.get("PYTEST_RUNNING")
    if run_scheduler:
        # Expired registration links, hourly by default
        scheduler.add_job(
            run_expired_link_cleanup,
            IntervalTrigger(minutes=LINK_CLEANUP_INTERVAL_MINUTES),
            id="expired_link_cleanup",
            name="Expired Registration Link Cleanup",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Channel Partner CRM API")
    if run_scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await app.state.notifier.drain()
    await registry.stop()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Channel Partner CRM API",
    description="Lead distribution for agents and channel partners",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.admin_router)
app.include_router(auth.user_router)
app.include_router(admin.router)
app.include_router(companies.router)
app.include_router(projects.router)
app.include_router(master_status.router)
app.include_router(customers.router)
app.include_router(associate_users.router)
app.include_router(realtime.router)

# Health check
@app.get("/api/v1/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Domain errors: stable error_code plus a human-readable message
@app.exception_handler(CRMError)
async def crm_exception_handler(request: Request, exc: CRMError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )

# Validation error handler: log request_id + error locations
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e["loc"], e["msg"]) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
