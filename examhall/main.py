import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from examhall.config import settings
from examhall.database import SessionLocal, init_db
from examhall.errors import ExamHallError
from examhall.services.session_lifecycle import SessionLifecycleManager
from examhall.services.sweeper import ExpiredSessionSweeper, run_periodic_sweeps
from examhall.storage import SQLSessionStore

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ExamHallError)
async def exam_error_handler(request: Request, exc: ExamHallError):
    if exc.cause is not None:
        logger.error("%s %s failed: %s (cause: %r)", request.method, request.url.path, exc.message, exc.cause)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _make_sweeper():
    db = SessionLocal()
    store = SQLSessionStore(db)
    return ExpiredSessionSweeper(store, SessionLifecycleManager(store)), db.close


@app.on_event("startup")
async def startup_event():
    """Initialize database and start the expired-session sweeper"""
    init_db()

    logger.info("%s is starting...", settings.app_name)
    logger.info("Database: %s", settings.database_url)

    if settings.sweep_interval_seconds > 0:
        app.state.sweeper_task = asyncio.create_task(
            run_periodic_sweeps(_make_sweeper, settings.sweep_interval_seconds)
        )


@app.on_event("shutdown")
async def shutdown_event():
    task = getattr(app.state, "sweeper_task", None)
    if task is not None:
        task.cancel()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.api_version,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


# Import and include routers
from examhall.routes import sessions, grading  # noqa: E402

app.include_router(sessions.router, prefix="/api", tags=["Sessions"])
app.include_router(grading.router, prefix="/api", tags=["Grading"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("examhall.main:app", host=settings.host, port=settings.port)
