import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ledger_sync.core.config import settings
from ledger_sync.core.database import engine
from ledger_sync.core.rate_limit import limiter
from ledger_sync.routers import accounts, plaid
from ledger_sync.services.aggregator import AggregatorClient
from ledger_sync.services.webhook_verifier import WebhookVerifier

logging.basicConfig(
    level=getattr(logging, settings.api_log_level.upper()),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Security headers middleware ───────────────────────────────────────────────
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.environment != "development":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One Plaid client for the whole process, shared through dependencies
    if settings.plaid_client_id and settings.plaid_secret:
        client = AggregatorClient.from_settings(settings)
        app.state.aggregator = client
        app.state.webhook_verifier = WebhookVerifier.from_settings(client, settings)
        logger.info("Plaid client ready (%s)", settings.plaid_env)
    else:
        app.state.aggregator = None
        app.state.webhook_verifier = None
        logger.warning("PLAID_CLIENT_ID / PLAID_SECRET not set, sync endpoints will return 503")
    yield
    await engine.dispose()


app = FastAPI(
    title="Ledger Sync API",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# ─── CORS ──────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=(
        ["http://localhost:3000", "http://localhost", f"http://{settings.domain}"]
        if settings.environment == "development"
        else [f"https://{settings.domain}"]
    ),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "Origin", "X-Requested-With"],
)

# ─── Routers ──────────────────────────────────
app.include_router(accounts.router, prefix="/api/v1")
app.include_router(plaid.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ledger_sync.main:app", host=settings.api_host, port=settings.api_port, log_level=settings.api_log_level)
