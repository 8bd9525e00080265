"""
FastAPI Backend - Application Entry Point

Serves the screening workflow:
- Records: import, stage queues, manual decisions, duplicate review
- AI screening: Gemini batch runs with API key rotation, progress polling
- Results: screening funnel and export of included literature

Run with: uvicorn backend.main:app --reload --port 8000
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from contextlib import asynccontextmanager
import logging
import time
from pathlib import Path
from dotenv import load_dotenv

# Optional local overrides (GEMINI_MODEL, DATABASE_URL, ...)
env_path = Path(__file__).parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path)

from backend.api import records, screening, results
from backend.core.screening_state import InvalidTransitionError
from backend.db import check_db_health, get_db_info, init_db
from backend.db.record_store import IdentifierCollisionError, RecordNotFoundError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request"""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"❌ {request.method} {request.url.path} failed: {str(e)}", exc_info=True)
            raise

        logger.info(
            f"📨 {request.method} {request.url.path} -> {response.status_code} "
            f"({time.time() - started:.3f}s)"
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup"""
    logger.info("🚀 Starting Literature Review Screening Backend")
    init_db()
    logger.info("✅ Server startup complete - ready to accept requests")

    yield

    logger.info("🛑 Shutting down server...")


app = FastAPI(
    title="Literature Review Screening API",
    description="Deduplication and AI-assisted title/abstract screening for literature reviews",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===== Domain error mapping =====

@app.exception_handler(RecordNotFoundError)
async def record_not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(IdentifierCollisionError)
async def identifier_collision_handler(request: Request, exc: IdentifierCollisionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ===== Health =====

@app.get("/")
async def root():
    return {
        "status": "healthy",
        "service": "Literature Review Screening Backend",
        "version": app.version
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.get("/health/detailed")
async def health_check_detailed():
    """Database reachability and table overview"""
    if not check_db_health():
        return {"status": "degraded", "database": "unavailable"}
    return {"status": "healthy", "database": get_db_info()}


app.include_router(records.router, prefix="/api/records", tags=["Records"])
app.include_router(screening.router, prefix="/api/screening", tags=["AI Screening"])
app.include_router(results.router, prefix="/api/results", tags=["Results"])


if __name__ == "__main__":
    import uvicorn
    from shared.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "backend.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=True,
        log_level="info"
    )
