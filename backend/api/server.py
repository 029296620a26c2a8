"""
Trainer Ledger Server
=====================
FastAPI server with:
- Stripe webhook endpoint (verify -> dedupe -> route -> ledger)
- Trainer review API (bearer auth, transactional rating aggregate)
- Admin ledger reconciliation report
- Health monitoring

Collaborators (store, gateway, review service) are built by create_app()
and live on app.state; nothing is a process-wide singleton.

pip install fastapi uvicorn pydantic stripe structlog asyncpg python-jose
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pipeline.balance import reconcile_trainer
from pipeline.errors import EventDeferred, SignatureInvalid
from pipeline.ledger_writer import BillingIntervalResolver, StripeBillingIntervalResolver
from pipeline.payment_gateway import WebhookGateway
from pipeline.webhook_verifier import WebhookVerifier
from services.auth import TokenAuthenticator
from services.errors import ServiceError
from services.reviews import DEFAULT_PAGE_SIZE, ReviewService
from storage.document_store import DocumentStore, InMemoryDocumentStore

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment (keyword overrides win)"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

    # Storage: "postgres" or "memory"
    STORE_BACKEND = os.getenv("STORE_BACKEND", "postgres")

    # Auth
    AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
    AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")

    def __init__(self, **overrides: Any):
        for name, value in overrides.items():
            if not hasattr(type(self), name):
                raise AttributeError(f"Unknown server setting: {name}")
            setattr(self, name, value)

    @property
    def DEBUG(self) -> bool:
        return self.ENV == "development"


config = ServerConfig()


# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True) if config.DEBUG else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class ReviewRequest(BaseModel):
    """Review submission; rating is validated by the review service"""
    rating: Any = None
    comment: Optional[str] = Field(default=None)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    store_backend: str
    store_connected: bool
    supported_events: list


# =============================================================================
# WIRING
# =============================================================================

def _wire(
    app: FastAPI,
    store: DocumentStore,
    settings: ServerConfig,
    interval_resolver: Optional[BillingIntervalResolver],
) -> None:
    """Build every collaborator around one store handle"""
    verifier = WebhookVerifier(settings.STRIPE_WEBHOOK_SECRET, settings.WEBHOOK_TOLERANCE_SECONDS)
    resolver = interval_resolver or StripeBillingIntervalResolver(api_key=settings.STRIPE_SECRET_KEY)

    app.state.store = store
    app.state.gateway = WebhookGateway(store, verifier, resolver)
    app.state.reviews = ReviewService(store)
    app.state.authenticator = TokenAuthenticator(
        store, secret=settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM
    )


async def _open_store(settings: ServerConfig) -> DocumentStore:
    if settings.STORE_BACKEND == "memory":
        logger.warning("store_in_memory", note="data is lost on restart")
        return InMemoryDocumentStore()
    if settings.STORE_BACKEND == "postgres":
        from database import PostgresDocumentStore
        return await PostgresDocumentStore.connect()
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_gateway(request: Request) -> WebhookGateway:
    return request.app.state.gateway


def get_reviews(request: Request) -> ReviewService:
    return request.app.state.reviews


def get_authenticator(request: Request) -> TokenAuthenticator:
    return request.app.state.authenticator


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    store: Optional[DocumentStore] = None,
    interval_resolver: Optional[BillingIntervalResolver] = None,
    settings: Optional[ServerConfig] = None,
) -> FastAPI:
    """
    Build the application.

    With an explicit store everything is wired immediately (tests, embedding);
    otherwise the lifespan opens the configured backend and closes it again.
    """
    settings = settings or config
    start_time = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=settings.ENV, store_backend=settings.STORE_BACKEND)

        owned_store = None
        if app.state.store is None:
            owned_store = await _open_store(settings)
            _wire(app, owned_store, settings, interval_resolver)

        yield

        logger.info("server_shutting_down")
        if owned_store is not None:
            await owned_store.close()

    app = FastAPI(
        title="Trainer Ledger",
        description="Stripe webhook ledger reconciliation and trainer reviews",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = None
    if store is not None:
        _wire(app, store, settings, interval_resolver)

    # -------------------------------------------------------------------------
    # MIDDLEWARE
    # -------------------------------------------------------------------------

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})

    # -------------------------------------------------------------------------
    # HEALTH ENDPOINTS
    # -------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        store = request.app.state.store
        gateway = getattr(request.app.state, "gateway", None)
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(datetime.now(timezone.utc) - start_time).total_seconds(),
            store_backend=type(store).__name__ if store is not None else settings.STORE_BACKEND,
            store_connected=store is not None,
            supported_events=gateway.router.supported_events if gateway else [],
        )

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Kubernetes readiness check"""
        return {"ready": request.app.state.store is not None}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness check"""
        return {"live": True}

    # -------------------------------------------------------------------------
    # STRIPE WEBHOOK
    # -------------------------------------------------------------------------

    @app.post("/webhook")
    async def stripe_webhook(request: Request, gateway: WebhookGateway = Depends(get_gateway)):
        """
        Stripe webhook handler.
        400 on a bad signature, 503 when a referent has not been recorded
        yet and 500 on a transient failure (Stripe redelivers both).
        """
        payload = await request.body()
        signature = request.headers.get("stripe-signature")

        try:
            return await gateway.process(payload, signature)
        except SignatureInvalid as e:
            return JSONResponse(status_code=400, content={"error": f"Webhook Error: {e}"})
        except EventDeferred as e:
            return JSONResponse(status_code=503, content={"error": "Webhook deferred", "detail": e.detail})
        except Exception as e:
            logger.error("stripe_webhook_error", error=str(e), error_type=type(e).__name__)
            return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})

    # -------------------------------------------------------------------------
    # REVIEWS
    # -------------------------------------------------------------------------

    @app.post("/trainers/{trainer_id}/reviews")
    async def submit_review(
        trainer_id: str,
        body: ReviewRequest,
        request: Request,
        reviews: ReviewService = Depends(get_reviews),
        authenticator: TokenAuthenticator = Depends(get_authenticator),
    ):
        """Create or update the caller's review of a trainer"""
        auth = await authenticator.authenticate(request.headers.get("authorization"))
        result = await reviews.submit_review(auth, trainer_id, body.rating, body.comment)
        return JSONResponse(
            status_code=201 if result.created else 200,
            content={"id": result.id, "createdAt": result.created_at.isoformat()},
        )

    @app.get("/trainers/{trainer_id}/reviews")
    async def list_reviews(
        trainer_id: str,
        limit: int = Query(default=DEFAULT_PAGE_SIZE),
        offset: int = Query(default=0),
        reviews: ReviewService = Depends(get_reviews),
    ):
        """Public, newest first"""
        return await reviews.list_reviews(trainer_id, limit=limit, offset=offset)

    # -------------------------------------------------------------------------
    # ADMIN
    # -------------------------------------------------------------------------

    @app.get("/admin/trainers/{trainer_id}/reconciliation")
    async def trainer_reconciliation(
        trainer_id: str,
        request: Request,
        store: DocumentStore = Depends(get_store),
        authenticator: TokenAuthenticator = Depends(get_authenticator),
    ):
        """Σ ledger netAmount vs financial.totalEarnings for one trainer"""
        await authenticator.require_role(request.headers.get("authorization"), "admin")
        report = await reconcile_trainer(store, trainer_id)
        if report is None:
            return JSONResponse(status_code=404, content={"error": "Trainer not found", "code": "TRAINER_NOT_FOUND"})
        return report.model_dump(mode="json")

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
