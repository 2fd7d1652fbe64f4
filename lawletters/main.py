"""
Talk to My Lawyer - FastAPI Application

Main entry point for the letter generation backend.

Flow:
- Customer submits a letter -> submitted / received
- Staff review or AI drafting -> in_review / under_review -> generating
- AI text stored -> completed / posted
- Checkout or processor webhook -> subscription (+ referral commission)
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .database import init_db
from .errors import DomainError
from .routers import (
    auth_router,
    letters_router,
    coupons_router,
    subscriptions_router,
    webhooks_router,
    admin_router,
    events_router,
)

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Talk to My Lawyer",
    description="""
    Talk to My Lawyer - Legal Letter Generation API

    ## Roles
    - **user**: submits letters, buys plans
    - **employee**: reviews letters, earns referral commission
    - **admin**: everything, plus user and coupon management

    ## Letter tracks
    - `status`: draft → submitted → in_review → approved → completed (cancelled from any open state)
    - `timeline_status`: received → under_review → generating → posted
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map service-layer errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    content = {"detail": exc.message, "error": type(exc).__name__}
    if exc.retryable:
        content["retryable"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


# Include routers
app.include_router(auth_router)
app.include_router(letters_router)
app.include_router(coupons_router)
app.include_router(subscriptions_router)
app.include_router(webhooks_router)
app.include_router(admin_router)
app.include_router(events_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Talk to My Lawyer",
        "version": "1.0.0",
        "description": "Legal Letter Generation API",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m lawletters.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
