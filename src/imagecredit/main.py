from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from imagecredit.config import settings
from imagecredit.api.auth import router as auth_router
from imagecredit.api.credits import router as credits_router
from imagecredit.api.generations import router as generations_router
from imagecredit.api.payments import router as payments_router
from imagecredit.api.users import router as users_router
from imagecredit.api.webhooks import router as webhooks_router
from imagecredit.integrations.chains import build_networks
from imagecredit.middleware.rate_limit import RateLimitMiddleware
from imagecredit.middleware.security import SecurityHeadersMiddleware
from imagecredit.services.payment_verifier import PaymentVerifier

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        (
            structlog.dev.ConsoleRenderer()
            if settings.APP_ENV == "development"
            else structlog.processors.JSONRenderer()
        ),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup -- refuse to serve payments with a half-configured production env
    settings.validate_for_production()
    log.info("starting_up", env=settings.APP_ENV)

    networks = build_networks(settings)
    unconfigured = [name for name, network in networks.items() if not network.is_configured]
    if unconfigured:
        log.warning("chains_not_configured", chains=unconfigured)
    app.state.verifier = PaymentVerifier(networks)

    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await redis.ping()
        log.info("redis_connected", url=settings.REDIS_URL)
    except Exception as e:
        log.warning("redis_connection_failed", error=str(e))
    app.state.redis = redis

    yield

    # Shutdown
    log.info("shutting_down")
    await redis.close()


app = FastAPI(
    title="ImageCredit",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Security headers (outermost -- runs last on request, first on response)
app.add_middleware(SecurityHeadersMiddleware)

# Rate limiting (runs after security headers are already queued)
app.add_middleware(RateLimitMiddleware)


app.include_router(auth_router)
app.include_router(users_router)
app.include_router(payments_router)
app.include_router(credits_router)
app.include_router(generations_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
