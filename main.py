from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from portier.core.config import settings
from portier.core.database import init_db
from portier.core.i18n import I18nMiddleware, load_catalogs
from portier.core.logging_config import setup_logging
from portier.core.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from portier.web.errors import register_exception_handlers
from portier.web.routes import account, admin, auth, health

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize app on startup."""
    await init_db()
    load_catalogs()
    yield


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Identifier-first sign-in service",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.CLIENT_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Accept-Language", "X-Request-ID"],
)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
# Internationalization middleware - pins the request language
app.add_middleware(I18nMiddleware)

register_exception_handlers(app)

# Include routers
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(account.router, prefix="/api/auth", tags=["account"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])
app.include_router(health.router, tags=["health"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
