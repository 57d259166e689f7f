"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from drknowsit.config import settings
from drknowsit.database import engine
from drknowsit.errors import ApiError, api_error_handler
from drknowsit.routes import chat, conversations, doctor_notes, health_records, patients, topics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events for startup/shutdown."""
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    logger.info("DrKnowsIt API starting (chat model=%s)", settings.chat_model)

    yield  # Application runs here

    # Shutdown: release pooled connections
    await engine.dispose()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "geolocation=(), microphone=(), camera=()"
        )
        return response


app = FastAPI(
    title="DrKnowsIt",
    description="Patient-facing health chat: context assembly, LLM dispatch and diagnosis extraction",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(ApiError, api_error_handler)

# Security headers middleware (applied to all responses)
app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware for the single-page app
# Parse comma-separated origins from config
_cors_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["Retry-After"],
)

# Include API routers
app.include_router(chat.router, prefix="/api")
app.include_router(topics.router, prefix="/api")
app.include_router(patients.router, prefix="/api")
app.include_router(conversations.router, prefix="/api")
app.include_router(doctor_notes.router, prefix="/api")
app.include_router(health_records.router, prefix="/api")


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": "DrKnowsIt API",
        "version": "0.1.0",
        "docs": "/docs",
    }
