from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.api import forms, health
from app.core.config import settings, logger
from app.core.exceptions import register_exception_handlers
from app.core.middleware import RequestContextMiddleware
from app.db.database import create_tables
from app.integrations.identity import IdentityClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await create_tables()
    app.state.identity = IdentityClient(
        settings.IDENTITY_API_URL,
        settings.IDENTITY_API_KEY,
        timeout=settings.IDENTITY_TIMEOUT_SECONDS,
    )
    logger.info(f"{settings.APP_NAME} started (env={settings.APP_ENV}, atomic_writes={settings.FORMS_ATOMIC_WRITES})")
    yield
    # Shutdown
    identity = getattr(app.state, "identity", None)
    if identity is not None:
        await identity.aclose()


app = FastAPI(
    title="formdesk API",
    description="Multi-tenant form builder: form definitions, submissions and exports",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)

register_exception_handlers(app)

app.include_router(forms.router)
app.include_router(health.router, prefix="", tags=["Health"])
