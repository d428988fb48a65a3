"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
a lifespan that builds the sync components and stores them on app.state,
the health router, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.enrollsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.enrollsync.api.v1 import health
from src.enrollsync.api.v1.router import router as v1_router
from src.enrollsync.config import Settings, get_settings
from src.enrollsync.core.database import close_db, get_session, init_db
from src.enrollsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.enrollsync.sync.contacts import ContactResolver
from src.enrollsync.sync.crm.hubspot import HubSpotClient
from src.enrollsync.sync.crm.token import HubSpotOAuth, TokenHolder
from src.enrollsync.sync.deals import DealSynthesizer
from src.enrollsync.sync.errors import SyncError
from src.enrollsync.sync.external.axcelerate import AxcelerateClient
from src.enrollsync.sync.ledger import SyncLedger
from src.enrollsync.sync.normalizer import WebhookNormalizer
from src.enrollsync.sync.repository import ContactMappingRepository, SyncRecordRepository
from src.enrollsync.sync.schemas import TokenSet
from src.enrollsync.sync.status_bridge import StatusBridge, StatusMapping
from src.enrollsync.sync.workflow import EnrollmentSyncWorkflow


async def build_components(app: FastAPI, settings: Settings, session_factory=get_session) -> None:
    """Wire the sync components and attach them to app.state."""
    log = structlog.get_logger(__name__)

    records = SyncRecordRepository(session_factory=session_factory)
    mappings = ContactMappingRepository(session_factory=session_factory)
    ledger = SyncLedger(records, stale_after_seconds=settings.SYNC_STALE_PENDING_SECONDS)

    oauth = HubSpotOAuth(
        client_id=settings.HUBSPOT_CLIENT_ID,
        client_secret=settings.HUBSPOT_CLIENT_SECRET,
        redirect_uri=settings.HUBSPOT_REDIRECT_URI,
        scopes=settings.HUBSPOT_OAUTH_SCOPES,
        authorize_url=settings.HUBSPOT_AUTHORIZE_URL,
        api_base=settings.HUBSPOT_API_BASE,
    )
    initial = TokenSet(access_token=settings.HUBSPOT_ACCESS_TOKEN) if settings.HUBSPOT_ACCESS_TOKEN else None
    tokens = TokenHolder(oauth=oauth, store=ledger, token=initial)
    await tokens.load()

    gateway = HubSpotClient(tokens, base_url=settings.HUBSPOT_API_BASE)
    axcelerate = AxcelerateClient(
        base_url=settings.AXCELERATE_API_BASE,
        api_token=settings.AXCELERATE_API_TOKEN,
        ws_token=settings.AXCELERATE_WS_TOKEN,
    )

    workflow = EnrollmentSyncWorkflow(
        normalizer=WebhookNormalizer(allow_synthetic_id=settings.ALLOW_SYNTHETIC_ENROLLMENT_ID),
        ledger=ledger,
        contacts=ContactResolver(gateway, mappings),
        deals=DealSynthesizer(
            gateway,
            pipeline=settings.HUBSPOT_DEAL_PIPELINE,
            stage=settings.HUBSPOT_DEAL_STAGE,
            send_enrollment_properties=settings.HUBSPOT_SEND_ENROLLMENT_PROPERTIES,
        ),
    )
    bridge = StatusBridge(
        mapping=StatusMapping(path=settings.STATUS_MAPPING_PATH or None),
        ledger=ledger,
        gateway=gateway,
        external=axcelerate,
        status_property=settings.HUBSPOT_STATUS_PROPERTY,
    )

    app.state.sync_ledger = ledger
    app.state.contact_mapping_repository = mappings
    app.state.hubspot_oauth = oauth
    app.state.token_holder = tokens
    app.state.crm_gateway = gateway
    app.state.sync_workflow = workflow
    app.state.status_bridge = bridge

    log.info(
        "startup.components_initialized",
        hubspot_connected=tokens.token is not None,
        axcelerate_configured=axcelerate.configured,
        synthetic_ids=settings.ALLOW_SYNTHETIC_ENROLLMENT_ID,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and components on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    if settings.CREATE_TABLES_ON_STARTUP:
        await init_db()

    await build_components(app, settings)

    yield

    await close_db()


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    """Fallback for SyncErrors not translated by a route."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Enrollment CRM Sync",
        version="0.1.0",
        description="Axcelerate enrollment webhooks to HubSpot deals, with status reconciliation",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(SyncError, sync_error_handler)

    app.include_router(health.router)
    app.include_router(v1_router)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        """Service banner listing the main endpoints."""
        return {
            "service": "enrollment-crm-sync",
            "endpoints": {
                "webhook": "POST /api/v1/hubspot/webhook",
                "mapping": "POST /api/v1/hubspot/mapping",
                "crm_status": "POST /api/v1/hubspot/status/crm",
                "external_status": "POST /api/v1/hubspot/status/external",
                "oauth": "GET /api/v1/hubspot/oauth/authorize",
                "test_connection": "GET /api/v1/hubspot/test-connection",
                "health": "GET /health",
            },
        }

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
