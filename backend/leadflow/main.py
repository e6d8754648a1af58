import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadflow.api.generation import router as generation_router
from leadflow.api.jobs import router as jobs_router
from leadflow.api.whatsapp import router as whatsapp_router
from leadflow.db.init import close_db, get_database, init_db
from leadflow.runtime import build_services

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    logger.info("Initializing database...")
    try:
        database = await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
    app.state.services = build_services(database)
    logger.info("Celery worker and beat should be running in a separate process.")
    logger.info("API endpoints available:")
    logger.info("  - /api/generation/callback: Audio generation callback")
    logger.info("  - /api/whatsapp/*: Inbound events, status and operator sends")
    logger.info("  - /api/jobs/{job_id}/retry: Operator retry of parked jobs")
    logger.info("  - /api/media/{filename}: Stored audio")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")
    close_db()
    logger.info("=== APPLICATION SHUTDOWN COMPLETE ===")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "Leadflow API"}


@app.get("/health")
async def health_check():
    """Database and messaging session status"""
    try:
        db = get_database()
        await db.command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    services = getattr(app.state, "services", None)
    whatsapp = await services.transport.status() if services else {"connected": False}

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "whatsapp": whatsapp,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# Include API routers
app.include_router(generation_router, prefix="/api", tags=["generation"])
app.include_router(whatsapp_router, prefix="/api", tags=["whatsapp"])
app.include_router(jobs_router, prefix="/api", tags=["jobs"])
