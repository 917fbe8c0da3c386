"""FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app.config import settings
from app.db.database import engine, init_db
from app.exceptions import QuestionPoolException
from app.middleware import RequestIDMiddleware, limiter
from app.routes import diagnostic
from app.utils.error_utils import error_body

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

IS_PRODUCTION = settings.environment.lower() == "production"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    logger.info("Starting Question Pool API...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Vector DB at {settings.vector_db_path} ({settings.vector_collection_name})")
    if not settings.openai_api_key:
        # Stored questions can still be served; generation raises ConfigurationException
        logger.warning("OPENAI_API_KEY is not set; generation and embeddings are unavailable")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise

    yield
    await engine.dispose()
    logger.info("Shutting down Question Pool API...")


# Create FastAPI application
app = FastAPI(
    title="Question Pool Service",
    description="Assembles unique diagnostic question batches from stored and generated questions",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Configure CORS
cors_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins if cors_origins else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Request id + request/response logging
app.add_middleware(RequestIDMiddleware)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Exception handlers
@app.exception_handler(QuestionPoolException)
async def custom_exception_handler(request: Request, exc: QuestionPoolException):
    """Handle application exceptions using each exception's status code."""
    request_id = getattr(request.state, "request_id", "unknown")
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application error [{request_id}]: {exc.message}",
        extra={"request_id": request_id, "details": exc.details},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(
            exc.__class__.__name__,
            exc.message,
            request_id,
            details=exc.details,
            is_production=IS_PRODUCTION,
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        f"Validation error [{request_id}]: {exc.errors()}",
        extra={"request_id": request_id},
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(
            "ValidationError",
            "Request validation failed",
            request_id,
            details=[
                {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
                for err in exc.errors()
            ],
        ),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.exception(
        f"Unexpected error [{request_id}]: {str(exc)}",
        extra={"request_id": request_id},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("InternalServerError", "An unexpected error occurred", request_id),
    )


# Include routers
app.include_router(diagnostic.router)


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns:
        Overall status plus database, OpenAI key and vector DB checks
    """
    checks = {}
    overall_status = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {str(e)[:50]}"
        overall_status = "degraded"
        logger.warning(f"Database health check failed: {e}")

    if settings.openai_api_key:
        checks["openai_api"] = "ok"
    else:
        checks["openai_api"] = "not configured"
        overall_status = "degraded"

    checks["vector_db"] = "ok" if settings.vector_db_path.parent.exists() else "missing"
    if checks["vector_db"] != "ok":
        overall_status = "degraded"

    return {
        "status": overall_status,
        "version": "0.1.0",
        "service": "question-pool-service",
        "checks": checks,
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Question Pool API",
        "version": "0.1.0",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
