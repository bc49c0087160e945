import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from src.config.logging import configure_logging
from src.config.settings import settings
from src.database.client import close_db, init_db
from src.features.auth.router import router as auth_router
from src.features.clients.router import admin_router as clients_admin_router
from src.features.clients.router import router as clients_router
from src.features.consent.router import router as consent_router
from src.features.oauth.exceptions import OAuthException
from src.features.oauth.keys import get_key_manager
from src.features.oauth.maintenance import start_cleanup_task
from src.features.oauth.router import router as oauth_router
from src.features.oauth.router import well_known_router
from src.features.user.router import router as user_router
from src.shared.rate_limit.limiter import limiter, rate_limit_handler

configure_logging()
logger = logging.getLogger(__name__)


async def oauth_exception_handler(request: Request, exc: OAuthException) -> JSONResponse:
    """Render protocol errors as ``{"error", "error_description"}``."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    await init_db(create_schema=settings.database_create_schema)
    logger.info(f"OAuth issuer {settings.oauth_issuer}, signing key {get_key_manager().kid}")
    cleanup_task = start_cleanup_task()
    yield
    # Shutdown
    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
    await close_db()


app = FastAPI(
    title="Campus OpenID Provider",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Add rate limiting middleware
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_exception_handler(OAuthException, oauth_exception_handler)
app.add_middleware(SlowAPIMiddleware)

# Router Registration
api_routers: list[APIRouter] = [
    auth_router,
    user_router,
    clients_router,
    clients_admin_router,
    consent_router,
    oauth_router,
]

for router in api_routers:
    app.include_router(router, prefix=settings.api_prefix)

# Discovery lives at the issuer root
app.include_router(well_known_router)


@app.get("/")
async def root():
    return {"message": "Campus OpenID Provider", "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
